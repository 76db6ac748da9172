"""Tests for command library."""

import asyncio
from pathlib import Path

import pytest

from infra_reconcile.command import Command, classify, run
from infra_reconcile.exceptions import (
    CommandException,
    CommandFailedError,
    MissingConfigurationError,
    NotAuthenticatedError,
    ObjectNotFoundError,
    ProviderUnavailableError,
    ResourceConflictError,
)


async def test_command() -> None:
    """Test stdout parsing of a command."""
    result = await run(Command(["echo", "Hello"]))
    assert result == "Hello\n"


async def test_command_stdin() -> None:
    """Test passing input on stdin."""
    result = await run(Command(["cat"]), b"password: s3cret\n")
    assert result == "password: s3cret\n"


async def test_command_env_and_cwd(tmp_path: Path) -> None:
    """Test the environment and working directory of a command."""
    (tmp_path / "marker.txt").write_text("")
    cmd = Command(["sh", "-c", "echo $GREETING; ls"], cwd=tmp_path)
    cmd.env = {"GREETING": "hi"}
    assert await run(cmd) == "hi\nmarker.txt\n"


async def test_failed_command() -> None:
    """Test a failing command."""
    with pytest.raises(CommandException, match="return code 1"):
        await run(Command(["/bin/false"]))


async def test_allowed_return_code() -> None:
    """Test a non-zero return code that indicates success."""
    assert await run(Command(["/bin/false"], retcodes=[1])) == ""


async def test_classified_failure() -> None:
    """Test that the error output selects the exception."""
    cmd = Command(["sh", "-c", 'echo \'namespaces "es" not found\' >&2; exit 1'])
    with pytest.raises(ObjectNotFoundError, match="not found"):
        await run(cmd)


async def test_command_timeout() -> None:
    """Test that a hung command is reported as unavailable."""
    with pytest.raises(ProviderUnavailableError, match="timed out"):
        await run(Command(["sleep", "5"], timeout=0.1))


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("sh: 1: eksctl: command not found", MissingConfigurationError),
        ("/bin/sh: 1: helm: not found", MissingConfigurationError),
        (
            "Unable to locate credentials. You can configure credentials by running "
            '"aws configure".',
            NotAuthenticatedError,
        ),
        (
            "An error occurred (ExpiredTokenException) when calling the "
            "GetCallerIdentity operation: ExpiredToken",
            NotAuthenticatedError,
        ),
        (
            "error: You must be logged in to the server (Unauthorized)",
            NotAuthenticatedError,
        ),
        (
            'Error from server (NotFound): namespaces "elasticsearch" not found',
            ObjectNotFoundError,
        ),
        (
            "An error occurred (RepositoryNotFoundException) when calling the "
            "DescribeRepositories operation",
            ObjectNotFoundError,
        ),
        (
            "Error: INSTALLATION FAILED: cannot re-use a name that is still in use",
            ResourceConflictError,
        ),
        (
            'Error from server (AlreadyExists): namespaces "es" already exists',
            ResourceConflictError,
        ),
        (
            "Unable to connect to the server: dial tcp: i/o timeout",
            ProviderUnavailableError,
        ),
        (
            "An error occurred (ThrottlingException): Rate exceeded",
            ProviderUnavailableError,
        ),
        ("Error: chart requires kubeVersion: >=1.25", CommandFailedError),
        ("", CommandFailedError),
    ],
)
def test_classify(output: str, expected: type) -> None:
    """Test classifying the output of failed commands."""
    assert classify(output) is expected


def test_command_string() -> None:
    """Test rendering a command for logs."""
    cmd = Command(["kubectl", "get", "ns", "my namespace"])
    assert str(cmd) == "kubectl get ns 'my namespace'"


async def test_timed_out_command_is_killed(tmp_path: Path) -> None:
    """Test that a command and its children stop once the timeout expires."""
    cmd = Command(["sh", "-c", "sleep 1; touch finished"], cwd=tmp_path, timeout=0.2)
    with pytest.raises(ProviderUnavailableError, match="timed out"):
        await run(cmd)
    await asyncio.sleep(1.5)
    assert not (tmp_path / "finished").exists()


async def test_missing_executable() -> None:
    """Test that a command that is not installed is a configuration error."""
    with pytest.raises(MissingConfigurationError):
        await run(Command(["infra-reconcile-no-such-tool", "version"]))
