"""Resource providers for infra-reconcile.

A provider converges resources in one external system. Providers are looked
up in a `ProviderRegistry`, either by the name set on a resource or by the
default provider for the resource kind.
"""

from infra_reconcile import command
from infra_reconcile.manifest import ResourceKind

from .aws import RegistryProvider
from .az import (
    AksClusterProvider,
    ContainerRegistryProvider,
    PublicIpProvider,
    ResourceGroupProvider,
    ResourceProviderRegistration,
)
from .base import ResourceProvider, RetryPolicy
from .eksctl import ClusterProvider
from .helm import HelmReleaseProvider
from .in_memory import InMemoryProvider
from .kubectl import ManifestProvider, NamespaceProvider, SecretProvider
from .registry import ProviderRegistry

__all__ = [
    "ResourceProvider",
    "RetryPolicy",
    "ProviderRegistry",
    "InMemoryProvider",
    "cli_registry",
    "in_memory_registry",
]


def cli_registry(
    runner: command.CommandRunner | None = None,
    kube_context: str | None = None,
    subscription: str | None = None,
) -> ProviderRegistry:
    """Return a registry of the providers that shell out to CLI tools.

    The AWS providers are the defaults for their kinds. The Azure providers
    are selected by name with the `provider` field of a resource.
    """
    registry = ProviderRegistry()
    registry.register(ClusterProvider(runner), kinds=[ResourceKind.CLUSTER])
    registry.register(RegistryProvider(runner), kinds=[ResourceKind.REGISTRY])
    registry.register(
        NamespaceProvider(runner, context=kube_context),
        kinds=[ResourceKind.NAMESPACE],
    )
    registry.register(
        SecretProvider(runner, context=kube_context), kinds=[ResourceKind.SECRET]
    )
    registry.register(
        HelmReleaseProvider(runner, kube_context=kube_context),
        kinds=[ResourceKind.RELEASE],
    )
    registry.register(
        ManifestProvider(runner, context=kube_context),
        kinds=[
            ResourceKind.NETWORK,
            ResourceKind.CERTIFICATE,
            ResourceKind.MANIFEST,
        ],
    )
    for azure_provider in (
        ResourceGroupProvider(runner, subscription=subscription),
        ResourceProviderRegistration(runner, subscription=subscription),
        ContainerRegistryProvider(runner, subscription=subscription),
        AksClusterProvider(runner, subscription=subscription),
        PublicIpProvider(runner, subscription=subscription),
    ):
        registry.register(azure_provider)
    return registry


def in_memory_registry(provider: InMemoryProvider | None = None) -> ProviderRegistry:
    """Return a registry that simulates every resource in memory.

    The provider is also registered under the names of the CLI providers so
    that plans selecting a provider by name can be dry run.
    """
    provider = provider or InMemoryProvider()
    registry = ProviderRegistry()
    registry.register(provider, kinds=list(ResourceKind))
    for name in cli_registry().names:
        registry.register(provider, name=name)
    return registry
