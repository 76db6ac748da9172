"""Provider for EKS clusters, managed with `eksctl`."""

import logging
from typing import Any

import yaml

from infra_reconcile import command
from infra_reconcile.exceptions import ObjectNotFoundError
from infra_reconcile.manifest import ObservedState, ReadyCondition, ResourceSpec
from infra_reconcile.wait import WaitPolicy

from .aws import check_identity
from .base import RetryPolicy, normalize
from .cli import CommandProvider

__all__ = ["ClusterProvider"]

_LOGGER = logging.getLogger(__name__)


EKSCTL_BIN = "eksctl"

CLUSTER_CONFIG_API_VERSION = "eksctl.io/v1alpha5"

# Creating a cluster with its node groups commonly takes 15-20 minutes
_CREATE_TIMEOUT = 45 * 60.0

_STATUS_CONDITIONS = {
    "ACTIVE": ReadyCondition.READY,
    "FAILED": ReadyCondition.FAILED,
}

_SCALE_FLAGS = {
    "desiredCapacity": "--nodes",
    "minSize": "--nodes-min",
    "maxSize": "--nodes-max",
}


def _field(obj: dict[str, Any], name: str) -> Any:
    """Return a field from eksctl output, which varies in capitalization."""
    if name in obj:
        return obj[name]
    return obj.get(name[0].lower() + name[1:])


def desired_node_groups(spec: ResourceSpec) -> dict[str, dict[str, Any]]:
    """Return the sizes set for each node group in the cluster config."""
    config = spec.parameters.get("config") or {}
    groups: dict[str, dict[str, Any]] = {}
    for section in ("managedNodeGroups", "nodeGroups"):
        for group in config.get(section) or []:
            sizes = {key: group[key] for key in _SCALE_FLAGS if key in group}
            if group.get("name") and sizes:
                groups[group["name"]] = sizes
    return groups


class ClusterProvider(CommandProvider):
    """Manages an EKS cluster.

    Parameters:
        name, region: Identify the cluster.
        version: The Kubernetes version. Changing it upgrades the control
            plane in place.
        config: Additional `ClusterConfig` sections (`iam`, `vpc`, `addons`,
            `managedNodeGroups`) used when the cluster is created.

    The sizes of the node groups in `config` are compared with the active
    cluster. A changed size scales the node group and a node group missing
    from the cluster is created.

    Outputs include `endpoint` and `vpcId`. Once the cluster is ready the
    kubeconfig is written so that later resources can reach it.
    """

    name = "eksctl"
    tracked_parameters = frozenset({"name", "region", "version"})
    immutable_parameters = frozenset({"name", "region"})
    asynchronous = True
    default_wait_policy = WaitPolicy(poll_interval=30.0, timeout=1800.0)
    version_args = [EKSCTL_BIN, "version"]

    def __init__(
        self,
        runner: command.CommandRunner | None = None,
        retry_policy: RetryPolicy | None = None,
        write_kubeconfig: bool = True,
    ) -> None:
        """Initialize the provider."""
        super().__init__(runner, retry_policy)
        self._write_kubeconfig = write_kubeconfig
        self._kubeconfig_written: set[str] = set()

    async def preflight(self) -> None:
        """Check that eksctl is installed and AWS credentials are configured."""
        await self.check_installed()
        await check_identity(self._runner)

    def desired_attributes(self, spec: ResourceSpec) -> dict[str, Any]:
        desired = super().desired_attributes(spec)
        if node_groups := desired_node_groups(spec):
            desired["nodeGroups"] = node_groups
        return desired

    def diff(self, spec: ResourceSpec, observed: ObservedState) -> list[str]:
        changes = super().diff(spec, observed)
        if not observed.ready:
            # Node groups are only listed once the control plane is active
            return [key for key in changes if key != "nodeGroups"]
        return changes

    async def _observe(self, spec: ResourceSpec) -> ObservedState:
        name = spec.require("name")
        region = spec.require("region")
        try:
            clusters = await self._run_json(
                [
                    EKSCTL_BIN,
                    "get",
                    "cluster",
                    "--name",
                    name,
                    "--region",
                    region,
                    "--output",
                    "json",
                ]
            )
        except ObjectNotFoundError:
            return ObservedState.absent()
        if isinstance(clusters, dict):
            clusters = [clusters]
        if not clusters:
            return ObservedState.absent()
        cluster = clusters[0]
        status = str(_field(cluster, "Status") or "").upper()
        vpc_config = _field(cluster, "ResourcesVpcConfig") or {}
        condition = _STATUS_CONDITIONS.get(status, ReadyCondition.PENDING)
        attributes = {
            "name": _field(cluster, "Name") or name,
            "region": region,
            "version": _field(cluster, "Version"),
            "status": status,
            "endpoint": _field(cluster, "Endpoint"),
            "arn": _field(cluster, "Arn"),
            "vpcId": _field(vpc_config, "VpcId"),
        }
        desired = desired_node_groups(spec)
        if desired and condition == ReadyCondition.READY:
            attributes["nodeGroups"] = await self._observe_node_groups(
                name, region, desired
            )
        return ObservedState(
            exists=True, attributes=attributes, ready_condition=condition
        )

    async def _observe_node_groups(
        self, name: str, region: str, desired: dict[str, dict[str, Any]]
    ) -> dict[str, dict[str, Any]]:
        """Return the sizes of the node groups named in the desired state."""
        try:
            groups = await self._run_json(
                [
                    EKSCTL_BIN,
                    "get",
                    "nodegroup",
                    "--cluster",
                    name,
                    "--region",
                    region,
                    "--output",
                    "json",
                ]
            )
        except ObjectNotFoundError:
            groups = []
        if isinstance(groups, dict):
            groups = [groups]
        observed: dict[str, dict[str, Any]] = {}
        for group in groups or []:
            group_name = _field(group, "Name")
            if group_name not in desired:
                continue
            observed[group_name] = {
                key: _field(group, key[0].upper() + key[1:])
                for key in desired[group_name]
            }
        return observed

    async def on_ready(self, spec: ResourceSpec, observed: ObservedState) -> None:
        """Write the kubeconfig for the cluster, once per run."""
        name = spec.require("name")
        if not self._write_kubeconfig or name in self._kubeconfig_written:
            return
        _LOGGER.info("Writing kubeconfig for cluster %s", name)
        await self._run(
            [
                EKSCTL_BIN,
                "utils",
                "write-kubeconfig",
                "--cluster",
                name,
                "--region",
                spec.require("region"),
            ]
        )
        self._kubeconfig_written.add(name)

    def cluster_config(self, spec: ResourceSpec) -> dict[str, Any]:
        """Return the eksctl ClusterConfig document for the cluster."""
        metadata: dict[str, Any] = {
            "name": spec.require("name"),
            "region": spec.require("region"),
        }
        if version := spec.parameters.get("version"):
            metadata["version"] = str(version)
        return {
            "apiVersion": CLUSTER_CONFIG_API_VERSION,
            "kind": "ClusterConfig",
            "metadata": metadata,
            **(spec.parameters.get("config") or {}),
        }

    async def _create(self, spec: ResourceSpec) -> None:
        _LOGGER.info("Creating EKS cluster %s, this may take a while", spec.id)
        await self._run(
            [EKSCTL_BIN, "create", "cluster", "-f", "-"],
            stdin=yaml.dump(self.cluster_config(spec), sort_keys=False),
            timeout=_CREATE_TIMEOUT,
        )

    async def _update(
        self, spec: ResourceSpec, observed: ObservedState, changes: list[str]
    ) -> None:
        if "version" in changes:
            await self._run(
                [
                    EKSCTL_BIN,
                    "upgrade",
                    "cluster",
                    "--name",
                    spec.require("name"),
                    "--region",
                    spec.require("region"),
                    "--version",
                    str(spec.require("version")),
                    "--approve",
                ],
                timeout=_CREATE_TIMEOUT,
            )
        if "nodeGroups" in changes:
            await self._update_node_groups(spec, observed)

    async def _update_node_groups(
        self, spec: ResourceSpec, observed: ObservedState
    ) -> None:
        name = spec.require("name")
        region = spec.require("region")
        current = observed.attributes.get("nodeGroups") or {}
        if missing := [
            group for group in desired_node_groups(spec) if group not in current
        ]:
            _LOGGER.info("Creating node groups %s of cluster %s", missing, name)
            await self._run(
                [
                    EKSCTL_BIN,
                    "create",
                    "nodegroup",
                    "-f",
                    "-",
                    "--include",
                    ",".join(missing),
                ],
                stdin=yaml.dump(self.cluster_config(spec), sort_keys=False),
                timeout=_CREATE_TIMEOUT,
            )
        for group, sizes in desired_node_groups(spec).items():
            if group in missing or normalize(sizes) == normalize(current[group]):
                continue
            _LOGGER.info("Scaling node group %s of cluster %s", group, name)
            args = [
                EKSCTL_BIN,
                "scale",
                "nodegroup",
                "--cluster",
                name,
                "--region",
                region,
                "--name",
                group,
            ]
            for key, flag in _SCALE_FLAGS.items():
                if key in sizes:
                    args.extend([flag, str(sizes[key])])
            await self._run(args, timeout=_CREATE_TIMEOUT)

    async def _delete(self, spec: ResourceSpec) -> None:
        await self._run(
            [
                EKSCTL_BIN,
                "delete",
                "cluster",
                "--name",
                spec.require("name"),
                "--region",
                spec.require("region"),
                "--wait",
            ],
            timeout=_CREATE_TIMEOUT,
        )
