"""Fixtures shared by the infra-reconcile tests."""

from collections.abc import Callable

import pytest

from infra_reconcile.manifest import ResourceKind
from infra_reconcile.plan import Plan
from infra_reconcile.providers import (
    InMemoryProvider,
    ProviderRegistry,
    in_memory_registry,
)
from infra_reconcile.reconciler import Reconciler, ReconcilerConfig
from infra_reconcile.wait import WaitPolicy

from . import make_spec


@pytest.fixture(name="provider")
def mock_provider() -> InMemoryProvider:
    """Return an in-memory provider with fast polling."""
    return InMemoryProvider(
        wait_policy=WaitPolicy(poll_interval=0.01, timeout=0.2),
    )


@pytest.fixture(name="registry")
def mock_registry(provider: InMemoryProvider) -> ProviderRegistry:
    """Return a registry using the in-memory provider for every kind."""
    return in_memory_registry(provider)


@pytest.fixture(name="reconciler_factory")
def mock_reconciler_factory(
    registry: ProviderRegistry,
) -> Callable[..., Reconciler]:
    """Return a factory for reconcilers sharing the in-memory provider."""

    def factory(max_workers: int = 1) -> Reconciler:
        return Reconciler(registry, ReconcilerConfig(max_workers=max_workers))

    return factory


@pytest.fixture(name="reconciler")
def mock_reconciler(reconciler_factory: Callable[..., Reconciler]) -> Reconciler:
    """Return a sequential reconciler."""
    return reconciler_factory()


@pytest.fixture(name="scenario_plan")
def mock_scenario_plan() -> Plan:
    """A cluster, namespace, two releases and an ingress depending on both."""
    return Plan(
        [
            make_spec("c1", ResourceKind.CLUSTER),
            make_spec("n1", ResourceKind.NAMESPACE, ["c1"]),
            make_spec("r1", ResourceKind.RELEASE, ["n1"]),
            make_spec("r2", ResourceKind.RELEASE, ["n1"]),
            make_spec("i1", ResourceKind.NETWORK, ["r1", "r2"]),
        ],
        name="scenario",
    )
