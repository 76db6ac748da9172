"""Provider that simulates external resources in memory.

Used for dry runs of a plan (`--provider in-memory`) and as a test double.
Resources become ready after a configurable number of observations, and
failures can be injected per resource and operation.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
import logging
import secrets
from typing import Any, DefaultDict

from infra_reconcile.exceptions import ProviderException
from infra_reconcile.manifest import (
    ObservedState,
    ReadyCondition,
    ResourceKind,
    ResourceSpec,
)
from infra_reconcile.wait import WaitPolicy

from .base import ResourceProvider, RetryPolicy

__all__ = ["InMemoryProvider", "SimulatedResource"]

_LOGGER = logging.getLogger(__name__)

ASYNCHRONOUS_KINDS = frozenset(
    {
        ResourceKind.CLUSTER,
        ResourceKind.RELEASE,
        ResourceKind.CERTIFICATE,
        ResourceKind.NETWORK,
    }
)


@dataclass
class SimulatedResource:
    """A resource held by the in-memory provider."""

    parameters: dict[str, Any]
    polls_until_ready: int = 0
    condition: ReadyCondition = ReadyCondition.PENDING
    outputs: dict[str, Any] = field(default_factory=dict)


def simulated_outputs(spec: ResourceSpec) -> dict[str, Any]:
    """Return plausible generated attributes for a newly created resource."""
    if spec.kind == ResourceKind.NETWORK:
        return {"hostname": f"{spec.id}.lb.example.internal"}
    if spec.kind == ResourceKind.SECRET:
        return {
            "username": spec.parameters.get("username", "elastic"),
            "password": secrets.token_urlsafe(18),
        }
    return {}


class InMemoryProvider(ResourceProvider):
    """Simulates every resource kind without touching external systems."""

    name = "in-memory"
    sensitive_attributes = frozenset({"password", "values"})

    def __init__(
        self,
        *,
        ready_after: int = 0,
        latency: float = 0.0,
        asynchronous_kinds: frozenset[ResourceKind] = ASYNCHRONOUS_KINDS,
        immutable_parameters: frozenset[str] = frozenset(),
        wait_policy: WaitPolicy | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            ready_after: Number of observations after creation before a
                resource reports Ready.
            latency: Seconds each call takes, to exercise concurrency.
            asynchronous_kinds: Kinds that must be awaited for readiness.
            immutable_parameters: Parameters that cannot be updated in place.
            wait_policy: Default wait policy for asynchronous resources.
            retry_policy: Backoff for injected transient failures.
        """
        super().__init__(
            retry_policy or RetryPolicy(attempts=3, initial_backoff=0.0)
        )
        self.ready_after = ready_after
        self.latency = latency
        self.asynchronous_kinds = asynchronous_kinds
        self.immutable_parameters = immutable_parameters
        self.default_wait_policy = wait_policy or WaitPolicy(
            poll_interval=0.01, timeout=1.0
        )
        self.resources: dict[str, SimulatedResource] = {}
        self.calls: list[tuple[str, str]] = []
        self.never_ready: set[str] = set()
        self.fail_ready: set[str] = set()
        self.active = 0
        self.max_active = 0
        self._failures: DefaultDict[tuple[str, str], list[ProviderException]] = (
            defaultdict(list)
        )

    def seed(
        self,
        spec_id: str,
        parameters: dict[str, Any],
        condition: ReadyCondition = ReadyCondition.READY,
        outputs: dict[str, Any] | None = None,
    ) -> None:
        """Add a resource as if it already existed before the run."""
        self.resources[spec_id] = SimulatedResource(
            parameters=dict(parameters),
            condition=condition,
            outputs=dict(outputs or {}),
        )

    def fail(
        self,
        spec_id: str,
        error: ProviderException,
        operation: str = "create",
        times: int = 1,
    ) -> None:
        """Inject an error raised by the next calls of an operation on a resource."""
        self._failures[(operation, spec_id)].extend([error] * times)

    def operations(self, operation: str) -> list[str]:
        """Return the ids of resources the operation was called on, in order."""
        return [spec_id for op, spec_id in self.calls if op == operation]

    def is_asynchronous(self, spec: ResourceSpec) -> bool:
        """Return True for kinds configured as asynchronous."""
        return spec.kind in self.asynchronous_kinds

    async def _call(self, operation: str, spec: ResourceSpec) -> None:
        """Record a call, simulate latency, and raise any injected failure."""
        self.calls.append((operation, spec.id))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
        finally:
            self.active -= 1
        if pending := self._failures.get((operation, spec.id)):
            raise pending.pop(0)

    async def _observe(self, spec: ResourceSpec) -> ObservedState:
        await self._call("observe", spec)
        if (resource := self.resources.get(spec.id)) is None:
            return ObservedState.absent()
        if resource.condition == ReadyCondition.PENDING:
            if spec.id in self.fail_ready:
                resource.condition = ReadyCondition.FAILED
            elif spec.id not in self.never_ready:
                if resource.polls_until_ready <= 0:
                    resource.condition = ReadyCondition.READY
                else:
                    resource.polls_until_ready -= 1
        return ObservedState(
            exists=True,
            attributes={**resource.parameters, **resource.outputs},
            ready_condition=resource.condition,
        )

    async def _create(self, spec: ResourceSpec) -> None:
        await self._call("create", spec)
        self.resources[spec.id] = SimulatedResource(
            parameters=dict(spec.parameters),
            polls_until_ready=self.ready_after,
            condition=(
                ReadyCondition.PENDING
                if self.is_asynchronous(spec)
                else ReadyCondition.READY
            ),
            outputs=simulated_outputs(spec),
        )

    async def _update(
        self, spec: ResourceSpec, observed: ObservedState, changes: list[str]
    ) -> None:
        await self._call("update", spec)
        resource = self.resources[spec.id]
        resource.parameters.update({key: spec.parameters[key] for key in changes})
        if self.is_asynchronous(spec):
            resource.condition = ReadyCondition.PENDING
            resource.polls_until_ready = self.ready_after

    async def on_ready(self, spec: ResourceSpec, observed: ObservedState) -> None:
        await self._call("ready", spec)

    async def _delete(self, spec: ResourceSpec) -> None:
        await self._call("delete", spec)
        self.resources.pop(spec.id, None)
