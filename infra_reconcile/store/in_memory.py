"""Module for in memory run state store."""

import asyncio
from collections import defaultdict
from collections.abc import Callable
import logging
from typing import Any, DefaultDict

from infra_reconcile.exceptions import ResourceFailedError

from .status import SpecState, StateInfo, TRANSITIONS
from .store import Store, StoreEvent


_LOGGER = logging.getLogger(__name__)


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Stores the state and outputs of each spec keyed by spec id. Supports event
    listeners for state and output changes.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._states: dict[str, StateInfo] = {}
        self._outputs: dict[str, dict[str, Any]] = {}
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def update_state(
        self, spec_id: str, state: SpecState, error: str | None = None
    ) -> None:
        """Transition a resource to a new state with an optional error message."""
        current = self._states.get(spec_id)
        previous = current.state if current else SpecState.PENDING
        if current is not None and state not in TRANSITIONS[previous]:
            raise ValueError(
                f"Resource {spec_id} cannot transition from {previous} to {state}"
            )
        if state == SpecState.FAILED:
            _LOGGER.error("Resource %s state %s with error: %s", spec_id, state, error)
        else:
            _LOGGER.debug(
                "Updating state for resource %s from %s to %s", spec_id, previous, state
            )
        self._states[spec_id] = StateInfo(state=state, error=error)
        self._fire_event(StoreEvent.STATE_UPDATED, spec_id, self._states[spec_id])

    def get_state(self, spec_id: str) -> StateInfo | None:
        """Retrieve the processing state for a resource."""
        return self._states.get(spec_id)

    def set_outputs(self, spec_id: str, outputs: dict[str, Any]) -> None:
        """Record the observed attributes of a resource for use by dependents."""
        self._outputs[spec_id] = dict(outputs)

    def get_outputs(self, spec_id: str) -> dict[str, Any] | None:
        """Retrieve the recorded outputs of a resource."""
        return self._outputs.get(spec_id)

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[str, Any], None],
    ) -> Callable[[], None]:
        """Register a callback for a specific event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)
        return remove

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):  # Iterate over a copy for safe removal
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)

    @staticmethod
    def _check_terminal(spec_id: str, info: StateInfo) -> StateInfo | None:
        """Return the info if DONE, raise if FAILED or ABORTED, else None."""
        if info.state == SpecState.DONE:
            return info
        if info.state in (SpecState.FAILED, SpecState.ABORTED):
            raise ResourceFailedError(
                spec_id, info.error or f"Resource is {info.state}"
            )
        return None

    async def watch_done(self, spec_id: str) -> StateInfo:
        """Wait for the specified resource to reach a terminal state.

        If the resource is already DONE, returns its StateInfo immediately.
        If the resource is FAILED or ABORTED or transitions to either, raises
        ResourceFailedError.
        """
        if (current := self._states.get(spec_id)) is not None:
            if (done := self._check_terminal(spec_id, current)) is not None:
                return done

        event_fired = asyncio.Event()
        result_holder: list[StateInfo] = []

        def callback(fired_spec_id: str, info: StateInfo) -> None:
            if fired_spec_id == spec_id and info.state.terminal:
                result_holder.append(info)
                event_fired.set()

        remove_listener = self.add_listener(StoreEvent.STATE_UPDATED, callback)
        try:
            await event_fired.wait()
            if (done := self._check_terminal(spec_id, result_holder[0])) is not None:
                return done
            raise RuntimeError(
                f"watch_done for {spec_id} ended unexpectedly without resolution."
            )
        except asyncio.CancelledError:
            _LOGGER.debug("watch_done for %s cancelled.", spec_id)
            raise
        finally:
            remove_listener()
