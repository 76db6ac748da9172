"""
The store module tracks the lifecycle state and outputs of every resource spec
during a single reconciliation run.

- Uses the spec id as the key for all entries.
- Enforces the per-spec state machine (Pending, Observing, Skipping or
  Applying, AwaitingReady, then Done, Failed or Aborted).
- Lets dependents wait for their dependencies to reach a terminal state.

Nothing in the store survives a run; observed state is re-queried every time.
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore
from .status import SpecState, StateInfo

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
    "SpecState",
    "StateInfo",
]
