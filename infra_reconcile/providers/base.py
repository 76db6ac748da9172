"""Base class for resource providers.

A provider is a client for one external system (cloud account, cluster API,
package release manager, certificate authority) that knows how to observe,
create, update and delete resources of one or more kinds.

The public methods implement the reconciliation contract once for every
provider:

- `observe` never fails because a resource does not exist; absence is a
  normal observed state.
- `apply` is a no-op returning Skipped when the resource already matches the
  desired parameters. A difference in a parameter the provider cannot change
  in place is an `ImmutableFieldConflictError`, never a silent recreate.
- `ProviderUnavailableError` from any call is retried with bounded backoff.

Subclasses implement the `_observe`, `_create`, `_update` and `_delete` hooks.
"""

from abc import ABC, abstractmethod
import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
from time import perf_counter
from typing import Any, ClassVar, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_any,
    wait_exponential,
)

from infra_reconcile.context import cancel_event
from infra_reconcile.exceptions import (
    ImmutableFieldConflictError,
    ProviderException,
    ProviderUnavailableError,
)
from infra_reconcile.manifest import ObservedState, ResourceSpec
from infra_reconcile.report import Action, ReconcileResult
from infra_reconcile.wait import (
    WaitPolicy,
    WaitResult,
    sleep_or_cancel,
    wait_until_ready,
)

__all__ = [
    "ResourceProvider",
    "RetryPolicy",
    "normalize",
]

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient provider errors."""

    attempts: int = 3
    initial_backoff: float = 2.0
    multiplier: float = 2.0
    max_backoff: float = 30.0

    def wait(self) -> wait_exponential:
        """Return the delay strategy, growing from the initial backoff."""
        return wait_exponential(
            multiplier=self.initial_backoff,
            exp_base=self.multiplier,
            max=self.max_backoff,
        )


def normalize(value: Any) -> Any:
    """Normalize a parameter value for comparison with an observed attribute.

    Plan substitution produces strings, while providers report native types,
    so scalars are compared by their string form.
    """
    if isinstance(value, dict):
        return {str(k): normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize(v) for v in value]
    if isinstance(value, bool):
        return str(value).lower()
    if value is None:
        return None
    return str(value)


class ResourceProvider(ABC):
    """A client that converges resources in one external system."""

    name: ClassVar[str] = "provider"
    """The name used to select the provider from a plan."""

    tracked_parameters: frozenset[str] | None = None
    """Parameters compared with observed attributes, or None for all."""

    immutable_parameters: frozenset[str] = frozenset()
    """Parameters that cannot be changed on an existing resource."""

    supports_update: bool = True
    """Whether divergent resources can be updated in place at all."""

    sensitive_attributes: frozenset[str] = frozenset()
    """Observed attributes that must never be logged or printed in full."""

    asynchronous: bool = False
    """Whether resources need to be awaited before dependents may use them."""

    default_wait_policy: WaitPolicy = WaitPolicy()
    """Polling parameters used when the resource does not override them."""

    def __init__(self, retry_policy: RetryPolicy | None = None) -> None:
        """Initialize the provider."""
        self._retry_policy = retry_policy or RetryPolicy()

    @abstractmethod
    async def _observe(self, spec: ResourceSpec) -> ObservedState:
        """Return the current state, ObservedState.absent() when not found."""

    @abstractmethod
    async def _create(self, spec: ResourceSpec) -> None:
        """Issue the call that creates the resource."""

    async def _update(
        self, spec: ResourceSpec, observed: ObservedState, changes: list[str]
    ) -> None:
        """Issue the call that updates the changed parameters in place."""
        raise ImmutableFieldConflictError(spec.id, changes)

    @abstractmethod
    async def _delete(self, spec: ResourceSpec) -> None:
        """Issue the call that deletes the resource."""

    async def preflight(self) -> None:
        """Check that the external system is reachable with valid credentials.

        Called once per run before the first resource of the provider is
        observed. Raises a `ProviderException`, typically
        `NotAuthenticatedError`, when the provider cannot be used.
        """

    async def on_ready(self, spec: ResourceSpec, observed: ObservedState) -> None:
        """Run local follow up work once the resource is confirmed ready.

        Called by the reconciler after a resource was created, updated or found
        ready, never by `observe`, which stays free of side effects.
        """

    def is_asynchronous(self, spec: ResourceSpec) -> bool:
        """Return True if the resource must be awaited before dependents run."""
        return self.asynchronous

    def wait_policy(self, spec: ResourceSpec) -> WaitPolicy:
        """Return the wait policy for the resource."""
        return self.default_wait_policy.with_overrides(spec.wait)

    def sensitive(self, spec: ResourceSpec) -> set[str]:
        """Return the names of outputs of the resource that are sensitive."""
        return set(self.sensitive_attributes) | set(spec.sensitive)

    def desired_attributes(self, spec: ResourceSpec) -> dict[str, Any]:
        """Return the desired values of the attributes compared on observe."""
        if self.tracked_parameters is None:
            return dict(spec.parameters)
        return {
            key: value
            for key, value in spec.parameters.items()
            if key in self.tracked_parameters
        }

    def diff(self, spec: ResourceSpec, observed: ObservedState) -> list[str]:
        """Return the sorted names of parameters that differ from observed."""
        return sorted(
            key
            for key, value in self.desired_attributes(spec).items()
            if normalize(observed.attributes.get(key)) != normalize(value)
        )

    async def _retry(
        self,
        spec: ResourceSpec,
        description: str,
        call: Callable[[], Awaitable[_T]],
    ) -> _T:
        """Run the call, retrying transient errors with bounded backoff.

        Retries stop early, and the backoff sleep ends, when the run is
        cancelled.
        """
        policy = self._retry_policy
        cancel = cancel_event.get()

        def cancelled(_: RetryCallState) -> bool:
            return cancel is not None and cancel.is_set()

        async def sleep(delay: float) -> None:
            await sleep_or_cancel(delay, cancel)

        def log_retry(state: RetryCallState) -> None:
            _LOGGER.info(
                "%s of %s failed (attempt %d/%d), retrying in %.1fs: %s",
                description,
                spec.id,
                state.attempt_number,
                policy.attempts,
                state.next_action.sleep if state.next_action else 0.0,
                state.outcome.exception() if state.outcome else None,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(ProviderUnavailableError),
            stop=stop_any(stop_after_attempt(policy.attempts), cancelled),
            wait=policy.wait(),
            sleep=sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            return await retrying(call)
        except ProviderUnavailableError as err:
            _LOGGER.error(
                "%s of %s failed after %d attempts: %s",
                description,
                spec.id,
                retrying.statistics.get("attempt_number", policy.attempts),
                err,
            )
            raise

    async def observe(self, spec: ResourceSpec) -> ObservedState:
        """Return the current state of the resource without side effects."""
        return await self._retry(spec, "Observe", lambda: self._observe(spec))

    async def apply(
        self, spec: ResourceSpec, observed: ObservedState
    ) -> ReconcileResult:
        """Converge the resource to the desired parameters.

        Returns a Failed result, rather than raising, for provider errors.
        """
        start = perf_counter()
        try:
            action = await self._apply(spec, observed)
        except ProviderException as err:
            return ReconcileResult(
                spec_id=spec.id,
                action=Action.FAILED,
                error=err.kind,
                message=str(err),
                duration=perf_counter() - start,
                required_ready=spec.is_required_ready,
            )
        return ReconcileResult(
            spec_id=spec.id,
            action=action,
            duration=perf_counter() - start,
            required_ready=spec.is_required_ready,
        )

    async def _apply(self, spec: ResourceSpec, observed: ObservedState) -> Action:
        if not observed.exists:
            await self._create_once(spec)
            return Action.CREATED
        if not (changes := self.diff(spec, observed)):
            _LOGGER.debug("Resource %s matches desired parameters", spec.id)
            return Action.SKIPPED
        _LOGGER.info("Resource %s differs in %s", spec.id, changes)
        if not self.supports_update:
            raise ImmutableFieldConflictError(spec.id, changes)
        if immutable := [key for key in changes if key in self.immutable_parameters]:
            raise ImmutableFieldConflictError(spec.id, immutable)
        await self._retry(spec, "Update", lambda: self._update(spec, observed, changes))
        return Action.UPDATED

    async def _create_once(self, spec: ResourceSpec) -> None:
        """Create the resource, re-observing before a retry.

        A create that failed with a transient error may have gone through on
        the server side, so it is only retried if the resource is still absent.
        """
        first = True

        async def create() -> None:
            nonlocal first
            if not first and (await self._observe(spec)).exists:
                _LOGGER.info("Resource %s exists after a failed create", spec.id)
                return
            first = False
            await self._create(spec)

        _LOGGER.info("Creating %s", spec)
        await self._retry(spec, "Create", create)

    async def await_ready(
        self,
        spec: ResourceSpec,
        policy: WaitPolicy | None = None,
        cancel: asyncio.Event | None = None,
    ) -> WaitResult:
        """Poll the resource until it is ready or the policy gives up."""
        return await wait_until_ready(
            lambda: self.observe(spec),
            policy or self.wait_policy(spec),
            cancel=cancel,
            description=str(spec),
        )

    async def delete(self, spec: ResourceSpec) -> bool:
        """Delete the resource, returning False if it was already absent."""
        observed = await self.observe(spec)
        if not observed.exists:
            _LOGGER.info("Resource %s is already absent", spec.id)
            return False
        _LOGGER.info("Deleting %s", spec)
        await self._retry(spec, "Delete", lambda: self._delete(spec))
        return True
