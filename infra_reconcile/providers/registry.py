"""Registry mapping resource specs to the provider that manages them."""

from collections.abc import Iterable
import logging

from infra_reconcile.exceptions import MissingConfigurationError
from infra_reconcile.manifest import ResourceKind, ResourceSpec

from .base import ResourceProvider

__all__ = ["ProviderRegistry"]

_LOGGER = logging.getLogger(__name__)


class ProviderRegistry:
    """Providers registered by name, with a default provider per kind."""

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._providers: dict[str, ResourceProvider] = {}
        self._defaults: dict[ResourceKind, str] = {}

    def register(
        self,
        provider: ResourceProvider,
        kinds: Iterable[ResourceKind] = (),
        name: str | None = None,
    ) -> None:
        """Register a provider, making it the default for the given kinds."""
        name = name or provider.name
        if name in self._providers:
            raise ValueError(f"Provider '{name}' is already registered")
        self._providers[name] = provider
        for kind in kinds:
            _LOGGER.debug("Default provider for %s is %s", kind, name)
            self._defaults[kind] = name

    def get(self, name: str) -> ResourceProvider:
        """Return the provider registered under the name."""
        if (provider := self._providers.get(name)) is None:
            raise MissingConfigurationError(
                f"No provider named '{name}', expected one of {sorted(self._providers)}"
            )
        return provider

    def resolve(self, spec: ResourceSpec) -> ResourceProvider:
        """Return the provider for a spec, by name or the default for its kind."""
        if spec.provider:
            return self.get(spec.provider)
        if (name := self._defaults.get(spec.kind)) is None:
            raise MissingConfigurationError(
                f"Resource {spec.id} has no provider and there is no default "
                f"provider for kind {spec.kind}"
            )
        return self._providers[name]

    @property
    def names(self) -> list[str]:
        """Return the names of all registered providers."""
        return sorted(self._providers)
