"""Command line tool for deploying and tearing down the resources of a plan."""

import argparse
import asyncio
import logging
import sys
import traceback
from typing import Any

import yaml

from infra_reconcile.exceptions import ReconcileException
from . import cleanup, deploy, help as help_action, plan

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="infra-reconcile",
        description=(
            "Idempotently deploy the resources of a plan, in dependency order."
        ),
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="WARNING",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    deploy.DeployAction.register(subparsers)
    cleanup.CleanupAction.register(subparsers)
    plan.PlanAction.register(subparsers)
    help_action.HelpAction.register(subparsers, parser)
    return parser


def main(argv: list[str] | None = None) -> None:
    """infra-reconcile command line tool main entry point."""

    def str_presenter(dumper: yaml.Dumper, data: Any) -> Any:
        """Represent multi-line yaml strings, such as error output, as blocks."""
        return dumper.represent_scalar(
            "tag:yaml.org,2002:str", data, style="|" if data.count("\n") > 0 else None
        )

    yaml.add_representer(str, str_presenter)

    parser = _make_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    action = args.cls()
    try:
        exit_code = asyncio.run(action.run(**vars(args)))
    except ReconcileException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("infra-reconcile error: ", err, file=sys.stderr)
        sys.exit(1)
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
