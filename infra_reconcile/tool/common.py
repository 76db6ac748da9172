"""Flags and helpers shared by the infra-reconcile actions."""

from argparse import ArgumentParser, BooleanOptionalAction
import asyncio
from collections.abc import Generator
from contextlib import contextmanager
import logging
import os
import pathlib
import signal
from typing import Any, TextIO

from infra_reconcile.plan import Plan, read_plan
from infra_reconcile.providers import (
    InMemoryProvider,
    ProviderRegistry,
    cli_registry,
    in_memory_registry,
)
from infra_reconcile.reconciler import Reconciler, ReconcilerConfig
from infra_reconcile.report import Report

from .format import PrintFormatter, format_duration, struct_formatter

_LOGGER = logging.getLogger(__name__)

PROVIDER_CLI = "cli"
PROVIDER_IN_MEMORY = "in-memory"

OUTPUT_TEXT = "text"
OUTPUT_YAML = "yaml"
OUTPUT_JSON = "json"


def add_plan_flags(args: ArgumentParser) -> None:
    """Add the flags for selecting and loading a plan."""
    args.add_argument(
        "plan",
        type=pathlib.Path,
        help="Path to the plan file describing the resources",
    )
    args.add_argument(
        "--output",
        "-o",
        choices=[OUTPUT_TEXT, OUTPUT_YAML, OUTPUT_JSON],
        default=OUTPUT_TEXT,
        help="Output format of the command",
    )


def add_run_flags(args: ArgumentParser) -> None:
    """Add the flags for running the reconciler against providers."""
    args.add_argument(
        "--provider",
        choices=[PROVIDER_CLI, PROVIDER_IN_MEMORY],
        default=PROVIDER_CLI,
        help=(
            "Providers to use. 'cli' shells out to eksctl, aws, az, kubectl "
            "and helm; 'in-memory' simulates every resource for a dry run"
        ),
    )
    args.add_argument(
        "--kube-context",
        type=str,
        default=None,
        help="The kubeconfig context for kubectl and helm",
    )
    args.add_argument(
        "--azure-subscription",
        type=str,
        default=None,
        help="The Azure subscription for the az providers, or the CLI default",
    )
    args.add_argument(
        "--max-workers",
        type=int,
        default=1,
        help="Number of independent resources reconciled concurrently",
    )
    args.add_argument(
        "--skip-preflight",
        default=False,
        action="store_true",
        help="Do not check provider credentials before the first resource",
    )
    args.add_argument(
        "--show-secrets",
        default=False,
        action=BooleanOptionalAction,
        help="Print sensitive outputs such as generated passwords in full",
    )


def build_registry(
    provider: str,
    kube_context: str | None = None,
    azure_subscription: str | None = None,
) -> ProviderRegistry:
    """Return the provider registry for the --provider flag."""
    if provider == PROVIDER_IN_MEMORY:
        return in_memory_registry(InMemoryProvider())
    return cli_registry(kube_context=kube_context, subscription=azure_subscription)


def build_reconciler(
    provider: str,
    max_workers: int,
    skip_preflight: bool,
    kube_context: str | None = None,
    azure_subscription: str | None = None,
) -> Reconciler:
    """Return a reconciler configured from the command line flags."""
    return Reconciler(
        build_registry(provider, kube_context, azure_subscription),
        ReconcilerConfig(max_workers=max_workers, preflight=not skip_preflight),
    )


async def load_plan(plan: pathlib.Path) -> Plan:
    """Read the plan, expanding variables from the environment."""
    return await read_plan(plan, dict(os.environ))


@contextmanager
def cancel_on_interrupt(reconciler: Reconciler) -> Generator[None, None, None]:
    """Cancel the run, rather than killing it, on the first Ctrl-C."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, reconciler.cancel)
    except NotImplementedError:
        _LOGGER.debug("Signal handlers are not supported on this platform")
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def print_report(
    report: Report,
    plan: Plan,
    output: str,
    show_secrets: bool = False,
    file: TextIO | None = None,
) -> None:
    """Print the report in the requested format."""
    if output != OUTPUT_TEXT:
        data = report.to_dict(show_secrets=show_secrets)
        if report.operation == "deploy" and plan.summary:
            data["summary"] = {
                line.label: line.value
                for line in report.summary(plan.summary, show_secrets=show_secrets)
            }
        struct_formatter(output).print(data, file=file)
        return

    rows: list[dict[str, Any]] = []
    for result in report.results:
        kind = plan.get(result.spec_id).kind if result.spec_id in plan else None
        rows.append(
            {
                "resource": result.spec_id,
                "kind": kind,
                "action": result.action,
                "duration": format_duration(result.duration),
                "error": result.error,
            }
        )
    PrintFormatter().print(rows, file=file)

    counts = ", ".join(f"{action}={count}" for action, count in report.counts.items())
    print(file=file)
    print(
        f"Status: {report.status} ({len(rows)} resources in "
        f"{format_duration(report.duration)}: {counts or 'none'})",
        file=file,
    )
    sections = (("Failures", report.failures), ("Warnings", report.warnings))
    for title, results in sections:
        if not results:
            continue
        print(f"\n{title}:", file=file)
        for result in results:
            print(f"  {result.spec_id}: {result.error}: {result.message}", file=file)
            if hint := result.hint:
                print(f"    hint: {hint}", file=file)

    if report.operation == "deploy" and plan.summary:
        lines = report.summary(plan.summary, show_secrets=show_secrets)
        width = max(len(line.label) for line in lines) + 1
        print("\nSummary:", file=file)
        for line in lines:
            print(f"  {line.label + ':':<{width}} {line.value}", file=file)
        if any(line.sensitive for line in lines) and not show_secrets:
            print("\nSensitive values are masked, use --show-secrets.", file=file)
