"""Utilities for context tracing."""

import asyncio
import contextvars
from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

__all__ = ["Timer", "cancel_event", "trace_context"]


trace: contextvars.ContextVar[list[str]] = contextvars.ContextVar("trace")

cancel_event: contextvars.ContextVar[asyncio.Event | None] = contextvars.ContextVar(
    "cancel_event", default=None
)
"""Cancellation signal of the run in progress, checked by provider retries."""


@dataclass
class Timer:
    """Wall clock duration of a traced block."""

    start: float = field(default_factory=perf_counter)
    end: float | None = None

    @property
    def elapsed(self) -> float:
        """Return the seconds elapsed, so far if the block is still running."""
        return (self.end if self.end is not None else perf_counter()) - self.start


@contextmanager
def trace_context(name: str) -> Generator[Timer, None, None]:
    stack = trace.get([])
    token = trace.set(stack + [name])
    label = " > ".join(stack + [name])
    timer = Timer()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield timer
    finally:
        timer.end = perf_counter()
        trace.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, timer.elapsed)
