"""infra-reconcile plan action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
from typing import Any, cast

from . import common
from .format import PrintFormatter, struct_formatter

_LOGGER = logging.getLogger(__name__)


class PlanAction:
    """Print the resources of a plan in the order they are reconciled."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "plan",
                help="Validate a plan and print the resolved order",
                description=(
                    "Read and validate a plan, then print its resources in "
                    "dependency order without contacting any provider."
                ),
            ),
        )
        common.add_plan_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        plan: pathlib.Path,
        output: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> int:
        """Async Action implementation."""
        resource_plan = await common.load_plan(plan)
        rows: list[dict[str, Any]] = []
        for index, spec in enumerate(resource_plan, start=1):
            rows.append(
                {
                    "order": index,
                    "id": spec.id,
                    "kind": str(spec.kind),
                    "provider": spec.provider,
                    "dependsOn": list(spec.depends_on),
                    "requiredReady": spec.is_required_ready,
                }
            )
        if output != common.OUTPUT_TEXT:
            struct_formatter(output).print(
                {"name": resource_plan.name, "resources": rows}
            )
            return 0
        for row in rows:
            row["dependsOn"] = ",".join(row["dependsOn"])
            row["requiredReady"] = "yes" if row["requiredReady"] else "no"
        PrintFormatter().print(rows)
        return 0
