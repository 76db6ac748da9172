"""Rendering of tables and documents printed by the actions.

Every printer takes an optional `file`, resolved to the current `sys.stdout`
when the call is made so that redirected output is respected.
"""

from collections.abc import Iterator
import json
import sys
from typing import Any, TextIO

import yaml

PADDING = 4
MISSING = "-"


def format_columns(headers: list[str], rows: list[list[str]]) -> Iterator[str]:
    """Yield the header and rows aligned in columns padded to the widest value."""
    if not headers:
        return
    table = [headers, *rows]
    widths = [max(len(value) for value in column) for column in zip(*table)]
    for row in table:
        cells = [f"{value:{width + PADDING}}" for value, width in zip(row, widths)]
        yield "".join(cells).rstrip()


def format_duration(seconds: float) -> str:
    """Render a duration for humans, e.g. `4m12s` or `3.2s`."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    return f"{minutes}m{secs:02d}s"


class PrintFormatter:
    """Prints rows of a report or plan as a human readable table."""

    def __init__(self, keys: list[str] | None = None):
        """Initialize the PrintFormatter with optional keys to print."""
        self._keys = keys

    def format(self, data: list[dict[str, Any]]) -> Iterator[str]:
        """Yield the lines of the table, empty values shown as a dash."""
        if not data:
            return
        keys = self._keys if self._keys is not None else list(data[0])
        rows = [[str(row.get(key) or MISSING) for key in keys] for row in data]
        yield from format_columns([key.upper() for key in keys], rows)

    def print(self, data: list[dict[str, Any]], file: TextIO | None = None) -> None:
        """Print the table."""
        for line in self.format(data):
            print(line, file=file or sys.stdout)


class YamlFormatter:
    """Prints a document as yaml."""

    def print(self, data: Any, file: TextIO | None = None) -> None:
        """Print the document."""
        content = yaml.dump(data, sort_keys=False, explicit_start=True)
        print(content, end="", file=file or sys.stdout)


class JsonFormatter:
    """Prints a document as indented json."""

    def print(self, data: Any, file: TextIO | None = None) -> None:
        """Print the document."""
        print(json.dumps(data, indent=4), file=file or sys.stdout)


def struct_formatter(output: str) -> YamlFormatter | JsonFormatter:
    """Return the formatter for a structured output format name."""
    if output == "json":
        return JsonFormatter()
    return YamlFormatter()
