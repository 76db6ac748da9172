"""Store module for holding the state of a run while reconciling resources."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any

from .status import SpecState, StateInfo


class StoreEvent(str, Enum):
    """Enum for store events."""

    STATE_UPDATED = "state_updated"


class Store(ABC):
    """Abstract base class for the per-run state store with listener support."""

    @abstractmethod
    def update_state(
        self, spec_id: str, state: SpecState, error: str | None = None
    ) -> None:
        """Transition a resource to a new state with an optional error message.

        Raises:
            ValueError: If the transition is not allowed from the current state.
        """

    @abstractmethod
    def get_state(self, spec_id: str) -> StateInfo | None:
        """Retrieve the processing state for a resource."""

    @abstractmethod
    def set_outputs(self, spec_id: str, outputs: dict[str, Any]) -> None:
        """Record the observed attributes of a resource for use by dependents."""

    @abstractmethod
    def get_outputs(self, spec_id: str) -> dict[str, Any] | None:
        """Retrieve the recorded outputs of a resource."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[str, Any], None],
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        Returns a callable that can be called to remove the listener.
        """

    @abstractmethod
    async def watch_done(self, spec_id: str) -> StateInfo:
        """Wait for the specified resource to reach a terminal state.

        If the resource is already DONE, returns its StateInfo immediately.

        Raises:
            ResourceFailedError: If the resource is or becomes FAILED or ABORTED.
            asyncio.CancelledError: If the watch is cancelled.
        """
