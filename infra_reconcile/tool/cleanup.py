"""infra-reconcile cleanup action."""

import asyncio
import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
import sys
from typing import cast

from . import common

_LOGGER = logging.getLogger(__name__)

CONFIRMATION = "yes"


class CleanupAction:
    """Delete every resource in a plan, dependents first."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "cleanup",
                help="Delete the resources in a plan",
                description=(
                    "Delete the resources in reverse dependency order. Resources "
                    "that are already gone are reported as absent."
                ),
            ),
        )
        common.add_plan_flags(args)
        common.add_run_flags(args)
        args.add_argument(
            "--yes",
            "-y",
            default=False,
            action="store_true",
            help="Do not ask for confirmation",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        plan: pathlib.Path,
        output: str,
        provider: str,
        kube_context: str | None,
        skip_preflight: bool,
        show_secrets: bool,
        yes: bool,
        azure_subscription: str | None = None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> int:
        """Async Action implementation."""
        resource_plan = await common.load_plan(plan)
        if not yes:
            print(
                f"This deletes {len(resource_plan)} resources of plan "
                f"{resource_plan.name}."
            )
            answer = await asyncio.get_running_loop().run_in_executor(
                None, input, f"Are you sure? ({CONFIRMATION}/no): "
            )
            if answer.strip().lower() != CONFIRMATION:
                print("Cleanup cancelled", file=sys.stderr)
                return 0
        reconciler = common.build_reconciler(
            provider, 1, skip_preflight, kube_context, azure_subscription
        )
        with common.cancel_on_interrupt(reconciler):
            report = await reconciler.cleanup(resource_plan)
        common.print_report(report, resource_plan, output, show_secrets)
        return report.exit_code
