"""Test helpers for providers that shell out to command line tools."""

import json
from typing import Any

from infra_reconcile.command import Command


class FakeRunner:
    """Returns canned output for commands, matched by their leading arguments.

    When several results are registered for a command they are returned in
    order, repeating the last one. Exceptions are raised.
    """

    def __init__(self) -> None:
        self.commands: list[Command] = []
        self.stdin: list[str | None] = []
        self._responses: list[tuple[list[str], list[Any]]] = []

    def add(self, prefix: list[str], *results: Any) -> None:
        """Register the results for commands starting with the prefix."""
        self._responses.insert(0, (prefix, list(results)))

    async def __call__(self, cmd: Command, stdin: bytes | None = None) -> str:
        self.commands.append(cmd)
        self.stdin.append(stdin.decode("utf-8") if stdin else None)
        for prefix, results in self._responses:
            if cmd.cmd[: len(prefix)] != prefix:
                continue
            result = results.pop(0) if len(results) > 1 else results[0]
            if isinstance(result, Exception):
                raise result
            if isinstance(result, (dict, list)):
                return json.dumps(result)
            return str(result)
        return ""

    def calls(self, *prefix: str) -> list[list[str]]:
        """Return the arguments of every command starting with the prefix."""
        return [
            cmd.cmd for cmd in self.commands if cmd.cmd[: len(prefix)] == list(prefix)
        ]
