"""Poll an external resource until it is ready, fails, or time runs out.

Asynchronous provisioning (a cluster becoming active, a load balancer being
assigned a hostname, a certificate being issued, pods becoming ready) is
handled by repeatedly observing the resource under a `WaitPolicy`. The loop is
bounded by the policy timeout, stops on the cancellation signal between
checks, and bounds each check by the remaining budget so that a hanging call
cannot block the run indefinitely.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum
import logging

from .exceptions import MissingConfigurationError
from .manifest import ObservedState, ReadyCondition, WaitConfig

__all__ = [
    "WaitPolicy",
    "WaitOutcome",
    "WaitResult",
    "sleep_or_cancel",
    "wait_until_ready",
]

_LOGGER = logging.getLogger(__name__)

Check = Callable[[], Awaitable[ObservedState]]


def is_ready(observed: ObservedState) -> bool:
    """Default readiness predicate."""
    return observed.ready


class WaitOutcome(StrEnum):
    """How a wait loop ended."""

    READY = "Ready"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class WaitPolicy:
    """Parameters of a bounded polling loop.

    Attributes:
        poll_interval: Seconds between checks.
        timeout: Total seconds allowed, including the initial delay.
        initial_delay: Seconds to wait before the first check, for resources
            that are not observable at all right after creation.
        ready_predicate: Returns True when the observed state is ready.
    """

    poll_interval: float = 10.0
    timeout: float = 300.0
    initial_delay: float = 0.0
    ready_predicate: Callable[[ObservedState], bool] = field(
        default=is_ready, compare=False
    )

    def __post_init__(self) -> None:
        """Validate the policy parameters."""
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive: {self.poll_interval}")
        if self.timeout < 0:
            raise ValueError(f"timeout must not be negative: {self.timeout}")
        if not 0 <= self.initial_delay <= self.timeout:
            raise ValueError(
                f"initial_delay must be between 0 and timeout: {self.initial_delay}"
            )

    def with_overrides(self, config: WaitConfig | None) -> "WaitPolicy":
        """Return a copy with any values set in the resource wait config."""
        if config is None:
            return self
        timeout = config.timeout if config.timeout is not None else self.timeout
        initial_delay = (
            config.initial_delay
            if config.initial_delay is not None
            else min(self.initial_delay, timeout)
        )
        try:
            return replace(
                self,
                poll_interval=config.poll_interval or self.poll_interval,
                timeout=timeout,
                initial_delay=initial_delay,
            )
        except ValueError as err:
            raise MissingConfigurationError(
                f"Invalid wait configuration: {err}"
            ) from err


@dataclass
class WaitResult:
    """The outcome of a wait loop and the last observed state."""

    outcome: WaitOutcome
    observed: ObservedState | None = None
    attempts: int = 0
    elapsed: float = 0.0

    @property
    def condition(self) -> ReadyCondition:
        """Return the ready condition the wait ended with."""
        if self.outcome == WaitOutcome.READY:
            return ReadyCondition.READY
        if self.outcome == WaitOutcome.FAILED:
            return ReadyCondition.FAILED
        if self.observed is not None and self.observed.exists:
            return self.observed.ready_condition
        return ReadyCondition.UNKNOWN


async def sleep_or_cancel(delay: float, cancel: asyncio.Event | None) -> bool:
    """Sleep for the delay, returning True early if cancellation was signalled."""
    if cancel is None:
        await asyncio.sleep(delay)
        return False
    try:
        async with asyncio.timeout(delay):
            await cancel.wait()
    except TimeoutError:
        return False
    return True


async def wait_until_ready(
    check: Check,
    policy: WaitPolicy,
    cancel: asyncio.Event | None = None,
    description: str = "resource",
) -> WaitResult:
    """Poll the check until the policy predicate holds or the loop ends.

    Args:
        check: Returns the current observed state of the resource.
        policy: The polling parameters.
        cancel: Run-scoped cancellation signal, looked at before every check.
        description: Name of the resource for log messages.

    Returns:
        The outcome with the last observed state. A timeout is reported as a
        result and not raised; the caller decides whether it is fatal.
    """
    loop = asyncio.get_running_loop()
    start = loop.time()
    deadline = start + policy.timeout

    def result(
        outcome: WaitOutcome, observed: ObservedState | None, attempts: int
    ) -> WaitResult:
        return WaitResult(
            outcome=outcome,
            observed=observed,
            attempts=attempts,
            elapsed=loop.time() - start,
        )

    if cancel is not None and cancel.is_set():
        return result(WaitOutcome.CANCELLED, None, 0)

    if policy.initial_delay:
        _LOGGER.info(
            "Waiting %.0fs before checking %s", policy.initial_delay, description
        )
        if await sleep_or_cancel(policy.initial_delay, cancel):
            return result(WaitOutcome.CANCELLED, None, 0)

    observed: ObservedState | None = None
    attempts = 0
    while True:
        attempts += 1
        remaining = deadline - loop.time()
        try:
            async with asyncio.timeout(max(remaining, policy.poll_interval)):
                observed = await check()
        except TimeoutError:
            _LOGGER.warning("Check of %s did not return in time", description)
            return result(WaitOutcome.TIMED_OUT, observed, attempts)

        if policy.ready_predicate(observed):
            _LOGGER.info("%s is ready after %d checks", description, attempts)
            return result(WaitOutcome.READY, observed, attempts)
        if observed.exists and observed.ready_condition == ReadyCondition.FAILED:
            _LOGGER.warning("%s reported a failed condition", description)
            return result(WaitOutcome.FAILED, observed, attempts)

        remaining = deadline - loop.time()
        if remaining <= 0:
            _LOGGER.warning(
                "%s not ready after %d checks (%.0fs)",
                description,
                attempts,
                policy.timeout,
            )
            return result(WaitOutcome.TIMED_OUT, observed, attempts)

        _LOGGER.info(
            "Waiting for %s (%s, check %d)...",
            description,
            observed.ready_condition if observed.exists else "absent",
            attempts,
        )
        if await sleep_or_cancel(min(policy.poll_interval, remaining), cancel):
            _LOGGER.info("Wait for %s cancelled", description)
            return result(WaitOutcome.CANCELLED, observed, attempts)
