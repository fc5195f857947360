"""
Scheduler subsystem for the device panel.

Provides cooperative multitasking with priority-based scheduling over asyncio.
Only this module imports asyncio; every timer in the coordinator (polling
intervals, stagger offsets, reboot countdown, reload delays) is a task here.

The clock is injectable so timing contracts can be driven step by step with
``run_pending()`` instead of real sleeps.
"""

import asyncio
import heapq
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from core.logging_helper import logger


# Exception types for error handling
class TaskNonFatalError(Exception):
    """Task cannot recover from this error, but the session can continue.

    The scheduler will:
    - Log the error with task context
    - For periodic tasks: Reschedule for next interval
    - For one-shot tasks: Drop the task

    Examples:
    - Device endpoint unreachable
    - Malformed JSON from the device
    """

    pass


class TaskFatalError(Exception):
    """Task cannot recover AND session integrity is compromised.

    The scheduler will:
    - Log the error
    - Propagate exception to the main loop, which stops the session

    Examples:
    - Out of memory (MemoryError)
    - Display sink gone
    """

    pass


class TaskType(Enum):
    """Task scheduling type."""

    PERIODIC = 1  # Fixed-rate: next_run = last_scheduled + period
    ONE_SHOT = 2  # Run once after delay


class TaskHandle:
    """Opaque handle for task management.

    Returned by schedule_* methods. Can be used to cancel tasks.
    Do not construct directly.
    """

    _next_id = 0

    def __init__(self, task_id: int) -> None:
        self.task_id = task_id

    def __repr__(self) -> str:
        return f"TaskHandle({self.task_id})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, TaskHandle) and other.task_id == self.task_id

    def __hash__(self) -> int:
        return hash(self.task_id)

    @classmethod
    def _generate_id(cls) -> int:
        task_id = cls._next_id
        cls._next_id += 1
        return task_id


class Task:
    """Task abstraction encapsulating scheduling metadata and execution state."""

    def __init__(
        self,
        name: str,
        priority: int,
        coroutine_factory: Callable[[], Any],
        task_type: TaskType,
        timing_param: float,
    ) -> None:
        """Create a new task.

        Args:
            name: Human-readable identifier
            priority: Priority (0-90, lower = higher priority)
            coroutine_factory: Callable that returns a coroutine when invoked
            task_type: TaskType value
            timing_param: Period/delay/interval in seconds
        """
        self.task_id = TaskHandle._generate_id()
        self.name = name
        self.priority = priority
        self.coroutine_factory = coroutine_factory
        self.task_type = task_type
        self.timing_param = timing_param

        # Runtime state
        self.next_run_time: float | None = None
        self.last_run_time: float | None = None
        self.last_scheduled_time: float | None = None  # For fixed-rate periodic tasks
        self.execution_count = 0
        self.cancelled = False

    def __lt__(self, other: "Task") -> bool:
        """Heap ordering: (next_run_time, priority, task_id)."""
        if self.next_run_time != other.next_run_time:
            if self.next_run_time is None:
                return True
            if other.next_run_time is None:
                return False
            return self.next_run_time < other.next_run_time
        if self.priority != other.priority:
            return self.priority < other.priority
        return self.task_id < other.task_id

    def __repr__(self) -> str:
        return f"Task(id={self.task_id}, name='{self.name}', pri={self.priority}, type={self.task_type.name})"


class Scheduler:
    """Cooperative multitasking scheduler.

    Singleton facade over asyncio. Provides a unified task scheduling API
    and the error-handling policy shared by all session timers.
    """

    _instance = None

    TASK_WARNING_THRESHOLD_MS = 100  # milliseconds
    IDLE_SLEEP = 0.05  # seconds between checks when nothing is due

    @classmethod
    def instance(cls, clock: Callable[[], float] | None = None) -> "Scheduler":
        """Get the scheduler singleton.

        Args:
            clock: Optional monotonic clock, only used when the instance is created

        Returns:
            The global Scheduler instance
        """
        if cls._instance is None:
            obj = super().__new__(cls)
            cls._instance = obj
            obj._init(clock)
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next instance() starts empty."""
        if cls._instance is not None:
            cls._instance.cancel_all()
        cls._instance = None

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        """Direct construction creates an independent scheduler (tests, embedding)."""
        self._init(clock)

    def _init(self, clock: Callable[[], float] | None = None) -> None:
        self.logger = logger("devpanel.scheduler")
        self.clock: Callable[[], float] = clock or time.monotonic

        self.ready_queue: list[Task] = []  # heapq of tasks
        self.task_registry: dict[int, Task] = {}

        # Statistics
        self.total_tasks_scheduled = 0
        self.total_tasks_executed = 0
        self.total_tasks_failed = 0

        self._active_asyncio_tasks: set[Any] = set()
        self._fatal_error: BaseException | None = None
        self._running = False
        self.logger.debug("Scheduler initialized")

    # -------------------------------------------------------------------------
    # Public API: Task Scheduling
    # -------------------------------------------------------------------------

    @staticmethod
    def _is_awaitable(obj: Any) -> bool:
        return hasattr(obj, "__await__")

    def _make_coroutine_factory(self, coroutine: Any) -> Callable[[], Any]:
        """Normalize an async callable into a factory that returns awaitables."""
        if not callable(coroutine):
            raise TypeError("Scheduler requires coroutine functions (pass the async function without calling it)")

        def factory() -> Any:
            result = coroutine()
            if not Scheduler._is_awaitable(result):
                raise TypeError(f"Scheduled callable '{coroutine}' must return an awaitable coroutine")
            return result

        return factory

    def schedule_periodic(
        self,
        coroutine: Any,
        period: float,
        priority: int = 50,
        name: str = "Unnamed Task",
        delay: float = 0.0,
    ) -> TaskHandle:
        """Schedule a task to run every N seconds at fixed rate.

        Uses fixed-rate scheduling: next run = last_scheduled_time + period,
        so polling intervals do not drift with request latency.

        Args:
            coroutine: Async callable to execute (pass the function, do not call it)
            period: Seconds between executions
            priority: Task priority (0-90, lower = higher priority)
            name: Human-readable task identifier
            delay: Seconds before the first run (0 runs immediately)

        Returns:
            TaskHandle for cancellation

        Example:
            handle = scheduler.schedule_periodic(
                coroutine=poll_sensor,
                period=5.0,
                name="Sensor Poll",
            )
        """
        factory = self._make_coroutine_factory(coroutine)
        task = Task(name, priority, factory, TaskType.PERIODIC, period)
        task.next_run_time = self.clock() + delay
        task.last_scheduled_time = task.next_run_time

        self._register_task(task)
        return TaskHandle(task.task_id)

    def schedule_once(self, coroutine: Any, delay: float, priority: int = 50, name: str = "Unnamed Task") -> TaskHandle:
        """Schedule a task to run once after N seconds delay.

        Example:
            # Reload the page two seconds after a disconnect request
            handle = scheduler.schedule_once(
                coroutine=reload_page,
                delay=2.0,
                name="Reload After Disconnect",
            )
        """
        factory = self._make_coroutine_factory(coroutine)
        task = Task(name, priority, factory, TaskType.ONE_SHOT, delay)
        task.next_run_time = self.clock() + delay

        self._register_task(task)
        return TaskHandle(task.task_id)

    def schedule_now(self, coroutine: Any, priority: int = 50, name: str = "Unnamed Task") -> TaskHandle:
        """Schedule a task to run as soon as possible (one-shot)."""
        factory = self._make_coroutine_factory(coroutine)
        task = Task(name, priority, factory, TaskType.ONE_SHOT, 0)
        task.next_run_time = self.clock()

        self._register_task(task)
        return TaskHandle(task.task_id)

    def cancel(self, handle: TaskHandle) -> bool:
        """Cancel a scheduled task.

        Returns:
            True if task was cancelled, False if already completed/cancelled
        """
        task = self.task_registry.get(handle.task_id)
        if task and not task.cancelled:
            task.cancelled = True
            self.task_registry.pop(task.task_id, None)
            self.logger.debug(f"Cancelled task '{task.name}' (id={task.task_id})")
            return True
        return False

    def cancel_all(self) -> int:
        """Cancel every registered task. Returns how many were cancelled."""
        count = 0
        for task_id in list(self.task_registry):
            if self.cancel(TaskHandle(task_id)):
                count += 1
        return count

    def is_active(self, handle: TaskHandle) -> bool:
        """True while the task is registered and not cancelled or finished."""
        task = self.task_registry.get(handle.task_id)
        return task is not None and not task.cancelled

    def active_tasks(self, name: str | None = None) -> list[Task]:
        """Registered, non-cancelled tasks, optionally filtered by name."""
        return [t for t in self.task_registry.values() if not t.cancelled and (name is None or t.name == name)]

    # -------------------------------------------------------------------------
    # Public API: Asyncio Wrappers
    # -------------------------------------------------------------------------

    @staticmethod
    def yield_control() -> Any:
        """Return awaitable that yields control to other tasks."""
        return asyncio.sleep(0)

    @staticmethod
    async def run_blocking(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking call (socket I/O) in a worker thread.

        The event loop keeps running other tasks until the call returns; its
        result is returned and its exceptions propagate to the awaiting task.
        """
        return await asyncio.to_thread(func, *args, **kwargs)

    # -------------------------------------------------------------------------
    # Internal: Task Management
    # -------------------------------------------------------------------------

    def _register_task(self, task: Task) -> None:
        self.task_registry[task.task_id] = task
        heapq.heappush(self.ready_queue, task)
        self.total_tasks_scheduled += 1

        self.logger.debug(
            f"Registered task '{task.name}' "
            f"(id={task.task_id}, priority={task.priority}, "
            f"type={task.task_type.name}, param={task.timing_param}s)"
        )

    def _reschedule_task(self, task: Task) -> None:
        """Reschedule a task based on its type."""
        if task.cancelled:
            return
        now = self.clock()

        if task.task_type is TaskType.PERIODIC:
            if task.last_scheduled_time is None:
                task.last_scheduled_time = now
            task.last_scheduled_time += task.timing_param
            task.next_run_time = task.last_scheduled_time

            # Fell behind: drop the missed ticks and restart the cadence from now
            if task.next_run_time < now:
                self.logger.debug(f"Task '{task.name}' fell behind schedule by {now - task.next_run_time:.3f}s")
                task.last_scheduled_time = now + task.timing_param
                task.next_run_time = task.last_scheduled_time

        heapq.heappush(self.ready_queue, task)

    def _finish_task(self, task: Task) -> None:
        """Forget a one-shot task after it ran."""
        if task.task_type is TaskType.ONE_SHOT:
            self.task_registry.pop(task.task_id, None)
        else:
            self._reschedule_task(task)

    # -------------------------------------------------------------------------
    # Internal: Task Execution
    # -------------------------------------------------------------------------

    async def _run_task(self, task: Task) -> None:
        """Execute a single task with error handling."""
        start_time = self.clock()

        try:
            await task.coroutine_factory()

            task.execution_count += 1
            task.last_run_time = start_time
            self.total_tasks_executed += 1

            runtime_ms = (self.clock() - start_time) * 1000
            if runtime_ms > self.TASK_WARNING_THRESHOLD_MS:
                self.logger.debug(f"Task '{task.name}' took {runtime_ms:.1f}ms")

            self._finish_task(task)

        except TaskNonFatalError as e:
            self.logger.error(f"Task '{task.name}' failed (non-fatal): {e}")
            self.total_tasks_failed += 1
            self._finish_task(task)

        except TaskFatalError as e:
            self.logger.critical(f"FATAL error in task '{task.name}': {e}")
            self.task_registry.pop(task.task_id, None)
            raise

        except Exception as e:
            # Unknown exception - treat as non-fatal by default
            self.logger.error(f"Task '{task.name}' raised unexpected exception: {e}", exc_info=True)
            self.total_tasks_failed += 1
            self._finish_task(task)

    def _pop_due_task(self, now: float, skip: set[int] | None = None) -> Task | None:
        """Pop the first due, live task, discarding cancelled entries."""
        deferred = []
        found = None
        while self.ready_queue:
            task = self.ready_queue[0]
            if task.cancelled:
                heapq.heappop(self.ready_queue)
                continue
            if task.next_run_time is not None and task.next_run_time > now:
                break
            heapq.heappop(self.ready_queue)
            if skip is not None and task.task_id in skip:
                deferred.append(task)
                continue
            found = task
            break
        for task in deferred:
            heapq.heappush(self.ready_queue, task)
        return found

    async def run_pending(self) -> int:
        """Run every task due at the current clock time, in order.

        Tasks scheduled for "now" by a task that runs during this call are also
        executed. A periodic task runs at most once per call.

        Returns:
            int: Number of tasks executed
        """
        ran: set[int] = set()
        while True:
            if self._fatal_error is not None:
                error, self._fatal_error = self._fatal_error, None
                raise error
            task = self._pop_due_task(self.clock(), skip=ran)
            if task is None:
                return len(ran)
            ran.add(task.task_id)
            await self._run_task(task)

    async def _task_wrapper(self, task: Task) -> None:
        try:
            await self._run_task(task)
        except TaskFatalError as fatal_error:
            self._fatal_error = fatal_error
        finally:
            current = asyncio.current_task()
            self._active_asyncio_tasks.discard(current)

    async def _event_loop(self) -> None:
        """Main scheduler event loop."""
        self.logger.debug("Scheduler event loop started")

        while self._running:
            if self._fatal_error is not None:
                error, self._fatal_error = self._fatal_error, None
                raise error

            now = self.clock()
            task = self._pop_due_task(now)
            if task is None:
                if self.ready_queue:
                    wait = min(max(self.ready_queue[0].next_run_time - now, 0.0), self.IDLE_SLEEP)
                else:
                    wait = self.IDLE_SLEEP
                await asyncio.sleep(wait)
                continue

            asyncio_task = asyncio.create_task(self._task_wrapper(task))
            self._active_asyncio_tasks.add(asyncio_task)

        for asyncio_task in list(self._active_asyncio_tasks):
            asyncio_task.cancel()

    # -------------------------------------------------------------------------
    # Public API: Scheduler Lifecycle
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Run the scheduler loop inside an existing asyncio loop until stop()."""
        self._running = True
        try:
            await self._event_loop()
        finally:
            self._running = False

    def stop(self) -> None:
        """Ask the event loop to exit after the current iteration."""
        self._running = False

    def run_forever(self) -> None:
        """Start the scheduler event loop.

        Runs until stop() is called.

        Raises:
            TaskFatalError: If a task encounters a fatal error
        """
        self.logger.info("Starting scheduler event loop...")
        try:
            asyncio.run(self.run())
        except TaskFatalError:
            raise
        except Exception as e:
            self.logger.critical(f"Scheduler event loop crashed: {e}", exc_info=True)
            raise
