"""Task tracking service for infra-reconcile.

This service tracks the asyncio tasks of a run and bounds how many of them
may talk to providers at the same time.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import partial
import logging
from typing import Any, Coroutine, Set
from abc import ABC, abstractmethod

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []


class TaskService(ABC):
    """Service for tracking and waiting for asynchronous tasks."""

    @abstractmethod
    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task.

        Args:
            coro: The coroutine to run as a task
            name: Optional name of the task for debugging

        Returns:
            The created task
        """

    @abstractmethod
    def worker_slot(self) -> Any:
        """Return an async context manager holding one of the worker slots.

        Tasks may wait on other tasks without holding a slot; only the work
        itself is bounded.
        """

    @abstractmethod
    async def block_till_done(self) -> None:
        """Wait for all active tasks to complete.

        This method creates a copy of the current active tasks and waits
        for them to complete. It's safe to call even if new tasks are created
        while waiting.
        """

    @abstractmethod
    async def cancel_all(self) -> None:
        """Cancel all active tasks and wait for them to finish."""

    @abstractmethod
    def get_num_active_tasks(self) -> int:
        """Get the number of active tasks."""


class TaskServiceImpl(TaskService):
    """Task service with a bounded pool of worker slots."""

    def __init__(self, max_workers: int = 4) -> None:
        """Initialize the task service.

        Args:
            max_workers: Maximum number of tasks holding a worker slot at once.
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1: {max_workers}")
        self._active_tasks: Set[asyncio.Task[Any]] = set()
        self._slots = asyncio.Semaphore(max_workers)
        self._max_workers = max_workers

    @property
    def max_workers(self) -> int:
        """Return the size of the worker pool."""
        return self._max_workers

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task."""
        task = asyncio.create_task(coro, name=name)
        self._active_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._active_tasks))
        return task

    @asynccontextmanager
    async def worker_slot(self) -> AsyncIterator[None]:
        """Hold one of the worker slots for the duration of the block."""
        async with self._slots:
            yield

    def _task_done(
        self, task_set: Set[asyncio.Task[Any]], task: asyncio.Task[Any]
    ) -> None:
        """Callback when a task is done.

        Args:
            task: The completed task
        """
        try:
            # This will raise any exception that occurred in the task
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            _LOGGER.error("Task %s failed: %s", task.get_name(), e)
        finally:
            task_set.discard(task)

    async def block_till_done(self) -> None:
        """Wait for all active tasks to complete."""
        while active_tasks := list(self._active_tasks):
            _LOGGER.debug("Waiting for %d tasks to complete", len(active_tasks))
            await asyncio.gather(*active_tasks, return_exceptions=True)

    async def cancel_all(self) -> None:
        """Cancel all active tasks and wait for them to finish."""
        tasks = list(self._active_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            _LOGGER.debug("Cancelled %d tasks", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_num_active_tasks(self) -> int:
        """Get the number of active tasks."""
        return len(self._active_tasks)
