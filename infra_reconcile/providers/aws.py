"""Providers for AWS account resources, managed with the `aws` CLI."""

import json
import logging
from typing import Any

from infra_reconcile.exceptions import (
    CommandFailedError,
    NotAuthenticatedError,
    ObjectNotFoundError,
    ProviderException,
)
from infra_reconcile.manifest import ObservedState, ReadyCondition, ResourceSpec
from infra_reconcile import command

from .cli import CommandProvider

__all__ = ["RegistryProvider", "check_identity"]

_LOGGER = logging.getLogger(__name__)


AWS_BIN = "aws"


async def check_identity(runner: command.CommandRunner) -> dict[str, Any]:
    """Return the caller identity, raising if there are no valid credentials."""
    cmd = command.Command([AWS_BIN, "sts", "get-caller-identity", "--output", "json"])
    try:
        out = await runner(cmd, None)
    except NotAuthenticatedError:
        raise
    except ProviderException as err:
        raise NotAuthenticatedError(
            f"AWS credentials are not configured, run 'aws configure': {err}"
        ) from err
    try:
        identity = json.loads(out)
    except json.JSONDecodeError as err:
        raise CommandFailedError(f"Invalid caller identity: {err}") from err
    _LOGGER.info("AWS account: %s", identity.get("Account"))
    return identity


class RegistryProvider(CommandProvider):
    """Manages an ECR container image repository.

    Parameters:
        name: The repository name.
        region: The AWS region.
        scanOnPush: Whether images are scanned when pushed, default true.
        encryption: The encryption type, default `AES256`.

    Outputs include the repository `uri` to push images to.
    """

    name = "aws-ecr"
    version_args = [AWS_BIN, "--version"]
    tracked_parameters = frozenset({"name", "region", "scanOnPush", "encryption"})
    immutable_parameters = frozenset({"name", "region", "encryption"})

    def _desired(self, spec: ResourceSpec) -> dict[str, Any]:
        return {
            "scanOnPush": spec.parameters.get("scanOnPush", True),
            "encryption": spec.parameters.get("encryption", "AES256"),
        }

    def desired_attributes(self, spec: ResourceSpec) -> dict[str, Any]:
        """Return the desired attributes with defaults applied."""
        return {**super().desired_attributes(spec), **self._desired(spec)}

    async def preflight(self) -> None:
        """Check that the aws CLI is installed and credentials are configured."""
        await self.check_installed()
        await check_identity(self._runner)

    async def _observe(self, spec: ResourceSpec) -> ObservedState:
        name = spec.require("name")
        region = spec.require("region")
        try:
            result = await self._run_json(
                [
                    AWS_BIN,
                    "ecr",
                    "describe-repositories",
                    "--repository-names",
                    name,
                    "--region",
                    region,
                    "--output",
                    "json",
                ]
            )
        except ObjectNotFoundError:
            return ObservedState.absent()
        repos = (result or {}).get("repositories") or []
        if not repos:
            return ObservedState.absent()
        repo = repos[0]
        scanning = repo.get("imageScanningConfiguration") or {}
        encryption = repo.get("encryptionConfiguration") or {}
        return ObservedState(
            exists=True,
            attributes={
                "name": repo.get("repositoryName", name),
                "region": region,
                "uri": repo.get("repositoryUri"),
                "arn": repo.get("repositoryArn"),
                "scanOnPush": scanning.get("scanOnPush", False),
                "encryption": encryption.get("encryptionType"),
            },
            ready_condition=ReadyCondition.READY,
        )

    async def _create(self, spec: ResourceSpec) -> None:
        desired = self._desired(spec)
        scan_on_push = str(desired["scanOnPush"]).lower()
        await self._run(
            [
                AWS_BIN,
                "ecr",
                "create-repository",
                "--repository-name",
                spec.require("name"),
                "--region",
                spec.require("region"),
                "--image-scanning-configuration",
                f"scanOnPush={scan_on_push}",
                "--encryption-configuration",
                f"encryptionType={desired['encryption']}",
                "--output",
                "json",
            ]
        )

    async def _update(
        self, spec: ResourceSpec, observed: ObservedState, changes: list[str]
    ) -> None:
        scan_on_push = str(self._desired(spec)["scanOnPush"]).lower()
        await self._run(
            [
                AWS_BIN,
                "ecr",
                "put-image-scanning-configuration",
                "--repository-name",
                spec.require("name"),
                "--region",
                spec.require("region"),
                "--image-scanning-configuration",
                f"scanOnPush={scan_on_push}",
            ]
        )

    async def _delete(self, spec: ResourceSpec) -> None:
        await self._run(
            [
                AWS_BIN,
                "ecr",
                "delete-repository",
                "--repository-name",
                spec.require("name"),
                "--region",
                spec.require("region"),
                "--force",
            ]
        )
