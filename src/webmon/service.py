"""A background service running periodic tasks on one daemon thread."""

import heapq
import itertools
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

import structlog

from webmon.errors import ServiceStateError

logger = structlog.get_logger()

_thread_counter = itertools.count(1)


class ServiceState(Enum):
    """Lifecycle of a BackgroundService: CREATED -> RUNNING -> STOPPED."""

    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(order=True)
class _Task:
    due: float  # time.monotonic() of the next run
    seq: int
    action: Callable[[], None] = field(compare=False)
    delay: float | None = field(compare=False)  # None runs the action once
    name: str = field(compare=False)


class BackgroundService:
    """
    Runs tasks on a single daemon scheduler thread.

    Subclasses register their tasks in started(), which runs before the
    scheduler thread starts. Periodic tasks use fixed-delay scheduling: the
    next run is due a delay after the previous one finished, so an overrun
    postpones the next run and never overlaps it. An exception raised by a
    task is logged and the task stays scheduled.

    start() may be called once per instance; stop() may be called any
    number of times. stop() does not wait for a running task to finish.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._state = ServiceState.CREATED
        self._stop_event = threading.Event()
        self._tasks: list[_Task] = []
        self._seq = itertools.count()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ServiceState.RUNNING

    @property
    def thread(self) -> threading.Thread | None:
        """The scheduler thread, None before start()."""
        return self._thread

    def start(self) -> None:
        """
        Start the scheduler thread.

        When started() raises, its tasks are dropped and the service goes
        back to CREATED, so start() may be retried.

        Raises:
            ServiceStateError: if the service has already been started.
        """
        with self._lock:
            if self._state is not ServiceState.CREATED:
                raise ServiceStateError(f"{self.name}: cannot start, the service is {self._state.value}")
            self._state = ServiceState.RUNNING
        try:
            self.started()
        except Exception:
            logger.exception("Service failed to start", service=self.name)
            self._tasks = []
            with self._lock:
                self._state = ServiceState.CREATED
            raise
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"webmon-{self.name}-{next(_thread_counter)}",
        )
        self._thread.start()
        logger.info("Service started", service=self.name, thread=self._thread.name)

    def stop(self) -> None:
        """Cancel all tasks. Does nothing unless the service is running."""
        with self._lock:
            if self._state is not ServiceState.RUNNING:
                return
            self._state = ServiceState.STOPPED
        self._stop_event.set()
        try:
            self.stopped()
        finally:
            logger.info("Service stopped", service=self.name)

    def join(self, timeout: float | None = None) -> None:
        """Wait for the scheduler thread to exit."""
        if self._thread is not None:
            self._thread.join(timeout)

    def started(self) -> None:
        """Hook: schedule the tasks here."""

    def stopped(self) -> None:
        """Hook: release resources here. Runs on the thread which called stop()."""

    @property
    def stopping(self) -> threading.Event:
        """Set once stop() has been called."""
        return self._stop_event

    def schedule_with_fixed_delay(
        self, action: Callable[[], None], initial_delay_ms: int, delay_ms: int, name: str | None = None
    ) -> None:
        """Run action after initial_delay_ms, then delay_ms after each run finishes."""
        self._push(action, time.monotonic() + initial_delay_ms / 1000, delay_ms / 1000, name)

    def execute(self, action: Callable[[], None], name: str | None = None) -> None:
        """Run action once, as soon as possible."""
        self._push(action, time.monotonic(), None, name)

    def _push(self, action: Callable[[], None], due: float, delay: float | None, name: str | None) -> None:
        if self._thread is not None:
            raise ServiceStateError(f"{self.name}: tasks must be scheduled from started()")
        name = name or getattr(action, "__name__", repr(action))
        heapq.heappush(self._tasks, _Task(due, next(self._seq), action, delay, name))

    def _run(self) -> None:
        while self._tasks and not self._stop_event.is_set():
            task = self._tasks[0]
            wait = task.due - time.monotonic()
            if wait > 0 and self._stop_event.wait(wait):
                break
            heapq.heappop(self._tasks)
            try:
                task.action()
            except Exception:
                logger.error("Background task failed", service=self.name, task=task.name, exc_info=True)
            if task.delay is not None:
                task.due = time.monotonic() + task.delay
                heapq.heappush(self._tasks, task)
