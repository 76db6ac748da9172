"""Base class for providers that shell out to a command line tool."""

import json
import logging
from typing import Any, ClassVar

import yaml

from infra_reconcile import command
from infra_reconcile.exceptions import (
    CommandFailedError,
    MissingConfigurationError,
    ReconcileException,
)

from .base import ResourceProvider, RetryPolicy

__all__ = ["CommandProvider"]

_LOGGER = logging.getLogger(__name__)


class CommandProvider(ResourceProvider):
    """A provider that manages resources by invoking a command line tool.

    The runner is injectable so providers can be exercised without the tools
    installed.
    """

    version_args: ClassVar[list[str]] = []
    """Arguments that print the version of the tool, run by the preflight."""

    def __init__(
        self,
        runner: command.CommandRunner | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the provider."""
        super().__init__(retry_policy)
        self._runner = runner or command.run

    async def preflight(self) -> None:
        """Check that the command line tool is installed."""
        await self.check_installed()

    async def check_installed(self) -> None:
        """Run the version command, raising if the tool cannot be run."""
        if not self.version_args:
            return
        try:
            out = await self._run(self.version_args)
        except ReconcileException as err:
            raise MissingConfigurationError(
                f"{self.version_args[0]} is not installed or cannot be run: {err}"
            ) from err
        _LOGGER.debug("%s version: %s", self.version_args[0], out.strip())

    async def _run(
        self,
        args: list[str],
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> str:
        cmd = command.Command(args)
        if timeout is not None:
            cmd.timeout = timeout
        return await self._runner(cmd, stdin.encode("utf-8") if stdin else None)

    async def _run_json(self, args: list[str], stdin: str | None = None) -> Any:
        """Run a command and decode its JSON output."""
        out = await self._run(args, stdin=stdin)
        if not out.strip():
            return None
        try:
            return json.loads(out)
        except json.JSONDecodeError as err:
            raise CommandFailedError(
                f"Command '{' '.join(args)}' returned invalid JSON: {err}"
            ) from err

    async def _apply_documents(
        self, args: list[str], docs: list[dict[str, Any]]
    ) -> str:
        """Run a command reading YAML documents from stdin."""
        content = yaml.dump_all(docs, sort_keys=False, explicit_start=True)
        _LOGGER.debug("Applying %d documents with %s", len(docs), args[0])
        return await self._run(args, stdin=content)
