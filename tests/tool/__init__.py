"""Test helpers for infra-reconcile tools."""

from infra_reconcile.command import Command, run

INFRA_RECONCILE_BIN = "infra-reconcile"

DEMO_PLAN = "tests/testdata/plans/demo.yaml"


async def run_command(args: list[str], env: dict[str, str] | None = None) -> str:
    return await run(Command([INFRA_RECONCILE_BIN] + args, env=env))
