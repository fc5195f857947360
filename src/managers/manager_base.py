"""
ManagerBase - shared lifecycle and context-manager helpers for session managers.

Every manager in the coordinator owns a set of scheduler tasks and a few
collaborators. This base class:
- Records scheduler task handles so ``shutdown()`` can cancel them all.
- Implements ``__enter__`` / ``__exit__`` so managers can be used as context managers.

Subclasses override ``shutdown()`` to release their own state and call
``super().shutdown()`` to cancel tracked tasks.
"""

from core.scheduler import Scheduler, TaskHandle


class ManagerBase:
    """Base class for managers with encapsulated task lifecycle."""

    def __init__(self, scheduler: Scheduler | None = None) -> None:
        self.scheduler = scheduler or Scheduler.instance()
        self._scheduled_handles: list[TaskHandle] = []
        self._initialized = True

    def _track_task_handle(self, handle: TaskHandle) -> TaskHandle:
        """Record scheduler task handles for automatic cancellation."""
        self._scheduled_handles.append(handle)
        return handle

    def shutdown(self) -> None:
        """
        Cancel every tracked task.

        Idempotent: safe to call multiple times.
        """
        for handle in self._scheduled_handles:
            self.scheduler.cancel(handle)
        self._scheduled_handles = []
        self._initialized = False

    def __enter__(self) -> "ManagerBase":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        """Call ``shutdown()`` on leaving a ``with`` block; exceptions propagate."""
        self.shutdown()
        return False
