"""Lifecycle state of a resource during a run."""

from enum import StrEnum
from dataclasses import dataclass


class SpecState(StrEnum):
    """Processing state for a resource spec within one run."""

    PENDING = "Pending"
    OBSERVING = "Observing"
    SKIPPING = "Skipping"
    APPLYING = "Applying"
    AWAITING_READY = "AwaitingReady"
    DONE = "Done"
    FAILED = "Failed"
    ABORTED = "Aborted"

    @property
    def terminal(self) -> bool:
        """Return True if no further transitions are possible."""
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({SpecState.DONE, SpecState.FAILED, SpecState.ABORTED})

TRANSITIONS: dict[SpecState, frozenset[SpecState]] = {
    SpecState.PENDING: frozenset(
        {SpecState.OBSERVING, SpecState.FAILED, SpecState.ABORTED}
    ),
    SpecState.OBSERVING: frozenset(
        {
            SpecState.SKIPPING,
            SpecState.APPLYING,
            SpecState.AWAITING_READY,
            SpecState.FAILED,
        }
    ),
    SpecState.SKIPPING: frozenset(
        {SpecState.AWAITING_READY, SpecState.DONE, SpecState.FAILED}
    ),
    SpecState.APPLYING: frozenset(
        {SpecState.AWAITING_READY, SpecState.DONE, SpecState.FAILED}
    ),
    SpecState.AWAITING_READY: frozenset(
        {SpecState.DONE, SpecState.FAILED, SpecState.ABORTED}
    ),
    SpecState.DONE: frozenset(),
    SpecState.FAILED: frozenset(),
    SpecState.ABORTED: frozenset(),
}


@dataclass
class StateInfo:
    """Processing state and optional error message for a resource."""

    state: SpecState
    error: str | None = None

    def __str__(self) -> str:
        """Return a string representation of the state."""
        if self.error:
            return f"{self.state}: {self.error}"
        return str(self.state)
