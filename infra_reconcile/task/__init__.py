"""Task tracking module for infra-reconcile.

This module provides a task tracking service that lets the reconciler run
independent resources concurrently in a bounded pool of workers and wait for
all of them to finish.
"""

from .service import TaskService, TaskServiceImpl

__all__ = ["TaskService", "TaskServiceImpl"]
