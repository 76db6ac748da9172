"""Library for issuing commands using asyncio and returning the result.

Failures are classified from the command output into the exception for the
matching error kind, so that CLI backed providers can treat a missing object
as absence and retry transient errors.
"""

import asyncio
from collections.abc import Awaitable, Callable
import contextlib
import logging
import os
import re
import shlex
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .exceptions import (
    CommandFailedError,
    MissingConfigurationError,
    NotAuthenticatedError,
    ObjectNotFoundError,
    ProviderUnavailableError,
    ReconcileException,
    ResourceConflictError,
)

_LOGGER = logging.getLogger(__name__)

_CONCURRENCY = 20
_SEM = asyncio.Semaphore(_CONCURRENCY)
_TIMEOUT = 120.0

__all__ = ["Command", "CommandRunner", "classify", "run"]


# Checked in order, the first match wins.
_CLASSIFIERS: list[tuple[re.Pattern[str], type[ReconcileException]]] = [
    (
        re.compile(
            r"command not found|executable file not found"
            r"|^\S*sh: (?:\d+: )?\S+: not found",
            re.I | re.M,
        ),
        MissingConfigurationError,
    ),
    (
        re.compile(
            r"Unable to locate credentials|ExpiredToken|InvalidClientTokenId"
            r"|UnrecognizedClientException|AccessDenied|Unauthorized"
            r"|You must be logged in|az login|AuthFailure",
            re.I,
        ),
        NotAuthenticatedError,
    ),
    (
        re.compile(
            r"\(NotFound\)|not found|does not exist|ResourceNotFoundException"
            r"|RepositoryNotFoundException|No cluster found"
            r"|ResourceNotFound|ResourceGroupNotFound|could not be found",
            re.I,
        ),
        ObjectNotFoundError,
    ),
    (
        re.compile(
            r"already exists|AlreadyExists|cannot re-use a name that is still in use",
            re.I,
        ),
        ResourceConflictError,
    ),
    (
        re.compile(
            r"timed out|timeout|deadline exceeded|connection refused"
            r"|connection reset|Throttling|TooManyRequests|Rate exceeded"
            r"|ServiceUnavailable|InternalError|the server is currently unable",
            re.I,
        ),
        ProviderUnavailableError,
    ),
]


def classify(output: str) -> type[ReconcileException]:
    """Return the exception class for a failed command's output."""
    for pattern, exc in _CLASSIFIERS:
        if pattern.search(output):
            return exc
    return CommandFailedError


def format_path(path: Path) -> str:
    """Format path for debugging."""
    if path.is_absolute():
        cwd = Path.cwd()
        if path.is_relative_to(cwd):
            rel_path = str(path.relative_to(cwd))
            return f"{rel_path} (abs)"
    return str(path)


@dataclass
class Command:
    """An instance of a command to run."""

    cmd: list[str]
    """Array of command line arguments."""

    cwd: Path | None = None
    """Current working directory."""

    retcodes: list[int] | None = None
    """Non-zero error codes that are allowed to indicate success."""

    env: dict[str, str] | None = None
    """Environment variables for the subprocess."""

    timeout: float = _TIMEOUT
    """Seconds before the command is considered hung."""

    @property
    def string(self) -> str:
        """Render the command as a single string."""
        return " ".join([shlex.quote(arg) for arg in self.cmd])

    def __str__(self) -> str:
        """Render as a debug string."""
        cwd: str = ""
        if self.cwd:
            cwd = f"({format_path(self.cwd)}) "
        return f"{cwd}{self.string}"

    async def run(self, stdin: bytes | None = None) -> bytes:
        """Run the command, returning stdout.

        Sensitive values must be passed on stdin, never as arguments, since
        the arguments are logged.
        The command runs in its own process group, which is killed when the
        call is cancelled or times out.
        """
        _LOGGER.debug("Running command: %s", self)
        env = {
            **os.environ,
            **(self.env if self.env else {}),
        }
        proc = await asyncio.create_subprocess_shell(
            self.string,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=self.cwd,
            env=env,
            start_new_session=True,
        )
        try:
            out, err = await proc.communicate(stdin)
        except asyncio.CancelledError:
            _LOGGER.debug("Killing cancelled command: %s", self)
            with contextlib.suppress(ProcessLookupError):
                os.killpg(proc.pid, signal.SIGKILL)
            await proc.wait()
            raise
        if proc.returncode:
            if self.retcodes and proc.returncode in self.retcodes:
                return out
            stderr = err.decode("utf-8") if err else ""
            errors = [f"Command '{self}' failed with return code {proc.returncode}"]
            if stderr:
                errors.append(stderr.strip())
            _LOGGER.debug("\n".join(errors))
            raise classify(stderr or out.decode("utf-8"))("\n".join(errors))
        return out


CommandRunner = Callable[[Command, bytes | None], Awaitable[str]]


async def run(cmd: Command, stdin: bytes | None = None) -> str:
    """Run the specified command and return stdout."""
    async with _SEM:
        try:
            out = await asyncio.wait_for(cmd.run(stdin), cmd.timeout)
        except asyncio.exceptions.TimeoutError as err:
            raise ProviderUnavailableError(f"Command '{cmd}' timed out") from err
    return out.decode("utf-8") if out else ""
