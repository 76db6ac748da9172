"""Providers for Azure resources, managed with the `az` CLI.

The providers cover what an AKS deployment needs before anything is
installed in the cluster: a resource group, the resource provider
registrations of the subscription, a container registry, the cluster itself
and a static public IP for the ingress controller.

```yaml
- id: group
  kind: Manifest
  provider: az-group
  requiredReady: true
  parameters:
    name: search-rg
    location: centralus
- id: cluster
  kind: Cluster
  provider: az-aks
  dependsOn: [group]
  parameters:
    name: search-aks
    resourceGroup: $(group.name)
    version: "1.29"
    nodeCount: 3
```
"""

import json
import logging
from typing import Any

from infra_reconcile import command
from infra_reconcile.exceptions import (
    CommandFailedError,
    NotAuthenticatedError,
    ObjectNotFoundError,
    ProviderException,
)
from infra_reconcile.manifest import ObservedState, ReadyCondition, ResourceSpec
from infra_reconcile.wait import WaitPolicy

from .base import RetryPolicy
from .cli import CommandProvider

__all__ = [
    "AksClusterProvider",
    "ContainerRegistryProvider",
    "PublicIpProvider",
    "ResourceGroupProvider",
    "ResourceProviderRegistration",
    "check_login",
]

_LOGGER = logging.getLogger(__name__)


AZ_BIN = "az"

# Creating a cluster with zone redundant node pools takes 5-15 minutes
_CLUSTER_TIMEOUT = 30 * 60.0

_PROVISIONING_CONDITIONS = {
    "Succeeded": ReadyCondition.READY,
    "Failed": ReadyCondition.FAILED,
    "Canceled": ReadyCondition.FAILED,
}


async def check_login(
    runner: command.CommandRunner, subscription: str | None = None
) -> dict[str, Any]:
    """Return the active account, raising if the CLI is not logged in."""
    args = [AZ_BIN, "account", "show", "--output", "json"]
    if subscription:
        args.extend(["--subscription", subscription])
    try:
        out = await runner(command.Command(args), None)
    except NotAuthenticatedError:
        raise
    except ProviderException as err:
        raise NotAuthenticatedError(
            f"Azure CLI is not logged in, run 'az login': {err}"
        ) from err
    try:
        account = json.loads(out)
    except json.JSONDecodeError as err:
        raise CommandFailedError(f"Invalid account details: {err}") from err
    _LOGGER.info("Azure subscription: %s", account.get("name") or account.get("id"))
    return account


def _provisioning_condition(resource: dict[str, Any]) -> ReadyCondition:
    state = resource.get("provisioningState") or (
        resource.get("properties") or {}
    ).get("provisioningState")
    return _PROVISIONING_CONDITIONS.get(str(state), ReadyCondition.PENDING)


class AzureProvider(CommandProvider):
    """Base class for providers that manage resources with `az`."""

    version_args = [AZ_BIN, "version", "--output", "json"]

    def __init__(
        self,
        runner: command.CommandRunner | None = None,
        retry_policy: RetryPolicy | None = None,
        subscription: str | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            runner: Runs commands, defaults to a subprocess.
            retry_policy: Backoff for transient errors.
            subscription: The subscription to use, or the CLI default.
        """
        super().__init__(runner, retry_policy)
        self._subscription = subscription

    async def preflight(self) -> None:
        """Check that az is installed and logged in."""
        await self.check_installed()
        await check_login(self._runner, self._subscription)

    def _az(self, *args: str) -> list[str]:
        cmd = [AZ_BIN, *args]
        if self._subscription:
            cmd.extend(["--subscription", self._subscription])
        return cmd

    async def _show(self, *args: str) -> dict[str, Any] | None:
        """Return the resource shown by the command, or None if not found."""
        try:
            return await self._run_json(self._az(*args, "--output", "json"))
        except ObjectNotFoundError:
            return None


class ResourceGroupProvider(AzureProvider):
    """Manages a resource group.

    Deleting a resource group deletes everything in it, so it should be the
    first resource of a plan and everything else should depend on it.
    """

    name = "az-group"
    tracked_parameters = frozenset({"name", "location"})
    immutable_parameters = frozenset({"name", "location"})

    async def _observe(self, spec: ResourceSpec) -> ObservedState:
        group = await self._show("group", "show", "--name", spec.require("name"))
        if group is None:
            return ObservedState.absent()
        return ObservedState(
            exists=True,
            attributes={
                "name": group.get("name"),
                "location": group.get("location"),
                "id": group.get("id"),
            },
            ready_condition=_provisioning_condition(group),
        )

    async def _create(self, spec: ResourceSpec) -> None:
        await self._run(
            self._az(
                "group",
                "create",
                "--name",
                spec.require("name"),
                "--location",
                spec.require("location"),
                "--output",
                "none",
            )
        )

    async def _delete(self, spec: ResourceSpec) -> None:
        await self._run(
            self._az("group", "delete", "--name", spec.require("name"), "--yes"),
            timeout=_CLUSTER_TIMEOUT,
        )


class ResourceProviderRegistration(AzureProvider):
    """Registers a resource provider namespace with the subscription.

    Parameters:
        namespace: The provider namespace, such as
            `Microsoft.ContainerService`.

    Registration can take several minutes. A registration is subscription
    wide and shared, so it is never undone on cleanup.
    """

    name = "az-provider-registration"
    tracked_parameters = frozenset({"namespace"})
    supports_update = False
    asynchronous = True
    default_wait_policy = WaitPolicy(poll_interval=15.0, timeout=900.0)

    async def _observe(self, spec: ResourceSpec) -> ObservedState:
        namespace = spec.require("namespace")
        provider = await self._show("provider", "show", "--namespace", namespace)
        state = (provider or {}).get("registrationState")
        if state not in ("Registered", "Registering"):
            return ObservedState.absent()
        return ObservedState(
            exists=True,
            attributes={"namespace": namespace, "registrationState": state},
            ready_condition=(
                ReadyCondition.READY
                if state == "Registered"
                else ReadyCondition.PENDING
            ),
        )

    async def _create(self, spec: ResourceSpec) -> None:
        await self._run(
            self._az("provider", "register", "--namespace", spec.require("namespace"))
        )

    async def _delete(self, spec: ResourceSpec) -> None:
        raise NotImplementedError("Provider registrations are not removed")

    async def delete(self, spec: ResourceSpec) -> bool:
        """Leave the registration in place, it may be used by other resources."""
        _LOGGER.info(
            "Leaving resource provider %s registered", spec.parameters.get("namespace")
        )
        return False


class ContainerRegistryProvider(AzureProvider):
    """Manages an Azure container registry.

    Parameters:
        name: The registry name, globally unique.
        resourceGroup: The resource group of the registry.
        sku: `Basic`, `Standard` or `Premium`, default `Basic`. Can be changed
            in place.

    Outputs include the `loginServer` to push images to.
    """

    name = "az-acr"
    tracked_parameters = frozenset({"name", "resourceGroup", "sku"})
    immutable_parameters = frozenset({"name", "resourceGroup"})

    def desired_attributes(self, spec: ResourceSpec) -> dict[str, Any]:
        """Return the desired attributes with the default sku."""
        return {
            **super().desired_attributes(spec),
            "sku": spec.parameters.get("sku", "Basic"),
        }

    async def _observe(self, spec: ResourceSpec) -> ObservedState:
        registry = await self._show(
            "acr",
            "show",
            "--name",
            spec.require("name"),
            "--resource-group",
            spec.require("resourceGroup"),
        )
        if registry is None:
            return ObservedState.absent()
        return ObservedState(
            exists=True,
            attributes={
                "name": registry.get("name"),
                "resourceGroup": registry.get("resourceGroup"),
                "sku": (registry.get("sku") or {}).get("name"),
                "loginServer": registry.get("loginServer"),
                "id": registry.get("id"),
            },
            ready_condition=_provisioning_condition(registry),
        )

    async def _create(self, spec: ResourceSpec) -> None:
        await self._run(
            self._az(
                "acr",
                "create",
                "--name",
                spec.require("name"),
                "--resource-group",
                spec.require("resourceGroup"),
                "--sku",
                self.desired_attributes(spec)["sku"],
                "--output",
                "none",
            )
        )

    async def _update(
        self, spec: ResourceSpec, observed: ObservedState, changes: list[str]
    ) -> None:
        await self._run(
            self._az(
                "acr",
                "update",
                "--name",
                spec.require("name"),
                "--resource-group",
                spec.require("resourceGroup"),
                "--sku",
                self.desired_attributes(spec)["sku"],
                "--output",
                "none",
            )
        )

    async def _delete(self, spec: ResourceSpec) -> None:
        await self._run(
            self._az(
                "acr",
                "delete",
                "--name",
                spec.require("name"),
                "--resource-group",
                spec.require("resourceGroup"),
                "--yes",
            )
        )


class AksClusterProvider(AzureProvider):
    """Manages an AKS cluster.

    Parameters:
        name, resourceGroup: Identify the cluster.
        version: The Kubernetes version. Changing it upgrades the cluster in
            place.
        nodeCount, nodeVmSize, zones: The default node pool.
        minCount, maxCount: Enable the cluster autoscaler with these bounds.
        networkPlugin, networkPolicy: Cluster networking, e.g. `azure`.
        addons: Addons to enable, e.g. `[monitoring]`.
        attachAcr: Name of a container registry the nodes may pull from.

    Outputs include `fqdn` and `nodeResourceGroup`, where resources created
    for the cluster such as a static public IP must live. Once the cluster
    is ready its credentials are merged into the kubeconfig.
    """

    name = "az-aks"
    tracked_parameters = frozenset({"name", "resourceGroup", "version"})
    immutable_parameters = frozenset({"name", "resourceGroup"})
    asynchronous = True
    default_wait_policy = WaitPolicy(poll_interval=30.0, timeout=1800.0)

    def __init__(
        self,
        runner: command.CommandRunner | None = None,
        retry_policy: RetryPolicy | None = None,
        subscription: str | None = None,
        write_kubeconfig: bool = True,
    ) -> None:
        """Initialize the provider."""
        super().__init__(runner, retry_policy, subscription)
        self._write_kubeconfig = write_kubeconfig
        self._credentials_written: set[str] = set()

    def _cluster_args(self, spec: ResourceSpec) -> list[str]:
        return [
            "--name",
            spec.require("name"),
            "--resource-group",
            spec.require("resourceGroup"),
        ]

    async def _observe(self, spec: ResourceSpec) -> ObservedState:
        cluster = await self._show("aks", "show", *self._cluster_args(spec))
        if cluster is None:
            return ObservedState.absent()
        return ObservedState(
            exists=True,
            attributes={
                "name": cluster.get("name"),
                "resourceGroup": cluster.get("resourceGroup"),
                "version": cluster.get("currentKubernetesVersion")
                or cluster.get("kubernetesVersion"),
                "location": cluster.get("location"),
                "fqdn": cluster.get("fqdn"),
                "nodeResourceGroup": cluster.get("nodeResourceGroup"),
                "provisioningState": cluster.get("provisioningState"),
            },
            ready_condition=_provisioning_condition(cluster),
        )

    async def _create(self, spec: ResourceSpec) -> None:
        params = spec.parameters
        args = [
            "aks",
            "create",
            *self._cluster_args(spec),
            "--node-count",
            str(params.get("nodeCount", 3)),
            "--enable-managed-identity",
            "--generate-ssh-keys",
            "--no-wait",
            "--output",
            "none",
        ]
        for key, flag in (
            ("version", "--kubernetes-version"),
            ("nodeVmSize", "--node-vm-size"),
            ("networkPlugin", "--network-plugin"),
            ("networkPolicy", "--network-policy"),
            ("attachAcr", "--attach-acr"),
        ):
            if value := params.get(key):
                args.extend([flag, str(value)])
        if "minCount" in params or "maxCount" in params:
            args.extend(
                [
                    "--enable-cluster-autoscaler",
                    "--min-count",
                    str(params.get("minCount", params.get("nodeCount", 3))),
                    "--max-count",
                    str(params.get("maxCount", params.get("nodeCount", 3))),
                ]
            )
        if addons := params.get("addons"):
            args.extend(["--enable-addons", ",".join(addons)])
        if zones := params.get("zones"):
            args.extend(["--zones", *[str(zone) for zone in zones]])
        _LOGGER.info("Creating AKS cluster %s, this may take a while", spec.id)
        await self._run(self._az(*args), timeout=_CLUSTER_TIMEOUT)

    async def _update(
        self, spec: ResourceSpec, observed: ObservedState, changes: list[str]
    ) -> None:
        await self._run(
            self._az(
                "aks",
                "upgrade",
                *self._cluster_args(spec),
                "--kubernetes-version",
                str(spec.require("version")),
                "--yes",
                "--no-wait",
                "--output",
                "none",
            )
        )

    async def _delete(self, spec: ResourceSpec) -> None:
        await self._run(
            self._az("aks", "delete", *self._cluster_args(spec), "--yes"),
            timeout=_CLUSTER_TIMEOUT,
        )

    async def on_ready(self, spec: ResourceSpec, observed: ObservedState) -> None:
        """Merge the cluster credentials into the kubeconfig, once per run."""
        name = spec.require("name")
        if not self._write_kubeconfig or name in self._credentials_written:
            return
        _LOGGER.info("Getting credentials for cluster %s", name)
        await self._run(
            self._az(
                "aks",
                "get-credentials",
                *self._cluster_args(spec),
                "--overwrite-existing",
            )
        )
        self._credentials_written.add(name)


class PublicIpProvider(AzureProvider):
    """Manages a static public IP address.

    Parameters:
        name: The name of the address.
        resourceGroup: For an address used by a cluster load balancer, the
            `nodeResourceGroup` of the cluster.
        dnsLabel: The DNS label, giving `<label>.<location>.cloudapp.azure.com`.
            Can be changed in place.
        sku: Default `Standard`.
        zones: Availability zones of the address.

    Outputs include `ipAddress` and `fqdn`.
    """

    name = "az-public-ip"
    tracked_parameters = frozenset({"name", "resourceGroup", "dnsLabel", "sku"})
    immutable_parameters = frozenset({"name", "resourceGroup", "sku"})

    def _ip_args(self, spec: ResourceSpec) -> list[str]:
        return [
            "--name",
            spec.require("name"),
            "--resource-group",
            spec.require("resourceGroup"),
        ]

    async def _observe(self, spec: ResourceSpec) -> ObservedState:
        address = await self._show("network", "public-ip", "show", *self._ip_args(spec))
        if address is None:
            return ObservedState.absent()
        dns = address.get("dnsSettings") or {}
        condition = _provisioning_condition(address)
        if condition == ReadyCondition.READY and not address.get("ipAddress"):
            condition = ReadyCondition.PENDING
        return ObservedState(
            exists=True,
            attributes={
                "name": address.get("name"),
                "resourceGroup": address.get("resourceGroup"),
                "sku": (address.get("sku") or {}).get("name"),
                "dnsLabel": dns.get("domainNameLabel"),
                "ipAddress": address.get("ipAddress"),
                "fqdn": dns.get("fqdn"),
            },
            ready_condition=condition,
        )

    async def _create(self, spec: ResourceSpec) -> None:
        args = [
            "network",
            "public-ip",
            "create",
            *self._ip_args(spec),
            "--sku",
            str(spec.parameters.get("sku", "Standard")),
            "--allocation-method",
            "Static",
            "--output",
            "none",
        ]
        if dns_label := spec.parameters.get("dnsLabel"):
            args.extend(["--dns-name", str(dns_label)])
        if zones := spec.parameters.get("zones"):
            args.extend(["--zone", *[str(zone) for zone in zones]])
        await self._run(self._az(*args))

    async def _update(
        self, spec: ResourceSpec, observed: ObservedState, changes: list[str]
    ) -> None:
        await self._run(
            self._az(
                "network",
                "public-ip",
                "update",
                *self._ip_args(spec),
                "--dns-name",
                str(spec.require("dnsLabel")),
                "--output",
                "none",
            )
        )

    async def _delete(self, spec: ResourceSpec) -> None:
        await self._run(
            self._az("network", "public-ip", "delete", *self._ip_args(spec))
        )
