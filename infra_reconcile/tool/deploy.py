"""infra-reconcile deploy action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
from typing import cast

from . import common

_LOGGER = logging.getLogger(__name__)


class DeployAction:
    """Converge every resource in a plan to its desired state."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "deploy",
                help="Create or update the resources in a plan",
                description=(
                    "Observe each resource in dependency order and create or "
                    "update it when it is absent or differs from the plan. "
                    "Resources that already match are skipped, so deploy may be "
                    "re-run safely after a partial failure."
                ),
            ),
        )
        common.add_plan_flags(args)
        common.add_run_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        plan: pathlib.Path,
        output: str,
        provider: str,
        kube_context: str | None,
        max_workers: int,
        skip_preflight: bool,
        show_secrets: bool,
        azure_subscription: str | None = None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> int:
        """Async Action implementation."""
        resource_plan = await common.load_plan(plan)
        reconciler = common.build_reconciler(
            provider, max_workers, skip_preflight, kube_context, azure_subscription
        )
        with common.cancel_on_interrupt(reconciler):
            report = await reconciler.reconcile(resource_plan)
        common.print_report(report, resource_plan, output, show_secrets)
        return report.exit_code
