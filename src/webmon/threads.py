"""Thread snapshots, per-thread CPU history and deadlock detection.

Python offers no way to ask the interpreter which lock a thread is blocked
on, so deadlock detection covers locks created through TrackedLock and
TrackedRLock only. Both report blocked acquisitions to a LockRegistry which
keeps the wait-for graph: a thread blocked on a lock points to the lock's owner.
"""

from __future__ import annotations

import sys
import threading
import time
import traceback
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from webmon.hostos.platform import HostPlatform, probe_platform
from webmon.hostos.proc import PROC
from webmon.models import HUNDRED_PERCENT, Sample

NANOS_IN_MILLI = 1_000_000

_PROC_STATES = {
    "R": "RUNNABLE",
    "S": "SLEEPING",
    "D": "WAITING_IO",
    "T": "STOPPED",
    "t": "TRACED",
    "Z": "ZOMBIE",
    "X": "DEAD",
    "I": "IDLE",
}


@dataclass(slots=True, frozen=True)
class ThreadInfo:
    """State of one thread at capture time."""

    thread_id: int
    native_id: int | None
    name: str
    daemon: bool
    state: str
    waiting_on: str | None = None  # name of the tracked lock the thread is blocked on
    lock_owner_id: int | None = None
    lock_owner_name: str | None = None
    stack: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ThreadItem:
    """A thread plus its cumulative CPU time; total_cpu_time_nanos is -1 if unsupported."""

    thread_id: int
    info: ThreadInfo
    total_cpu_time_nanos: int


@dataclass(slots=True, frozen=True)
class ThreadSnapshot:
    """All live threads at one point in time. Immutable."""

    items: tuple[ThreadItem, ...]
    thread_count: int
    daemon_thread_count: int
    taken_at: int  # milliseconds since the epoch

    def thread_ids(self) -> list[int]:
        return [item.thread_id for item in self.items]

    def get(self, thread_id: int) -> ThreadItem | None:
        for item in self.items:
            if item.thread_id == thread_id:
                return item
        return None


def thread_cpu_time_nanos(thread: threading.Thread) -> int:
    """Cumulative CPU time of the given thread in nanoseconds, -1 if it cannot be measured."""
    if thread.ident is None:
        return -1
    try:
        clock = time.pthread_getcpuclockid(thread.ident)
        return time.clock_gettime_ns(clock)
    except (AttributeError, OSError, OverflowError):
        return -1


def _os_state(native_id: int | None) -> str:
    if native_id is None or probe_platform() is not HostPlatform.LINUX:
        return "UNKNOWN"
    try:
        text = (PROC / "self" / "task" / str(native_id) / "stat").read_text()
    except OSError:
        return "UNKNOWN"
    state = text[text.rindex(")") + 2 :][:1]
    return _PROC_STATES.get(state, "UNKNOWN")


def _format_stack(frame) -> tuple[str, ...]:
    return tuple(f"{fs.filename}:{fs.lineno} in {fs.name}" for fs in reversed(traceback.extract_stack(frame)))


def thread_info(
    thread: threading.Thread,
    frames: dict[int, object] | None = None,
    registry: LockRegistry | None = None,
) -> ThreadInfo:
    """
    Capture the state of one thread.

    Args:
        thread: the thread.
        frames: when given (see sys._current_frames()), the stack is captured too, innermost frame first.
        registry: consulted for the tracked lock the thread is blocked on.
    """
    registry = registry or default_registry()
    ident = thread.ident or 0
    waiting_on, owner = registry.blocker_of(ident)
    stack: tuple[str, ...] = ()
    if frames is not None and ident in frames:
        stack = _format_stack(frames[ident])
    owner_name = None
    if owner is not None:
        owner_name = next((t.name for t in threading.enumerate() if t.ident == owner), None)
    return ThreadInfo(
        thread_id=ident,
        native_id=thread.native_id,
        name=thread.name,
        daemon=thread.daemon,
        state="BLOCKED" if waiting_on is not None else _os_state(thread.native_id),
        waiting_on=None if waiting_on is None else waiting_on.name,
        lock_owner_id=owner,
        lock_owner_name=owner_name,
        stack=stack,
    )


def take_snapshot(registry: LockRegistry | None = None) -> ThreadSnapshot:
    """Capture all live threads with their cumulative CPU time. Stacks are not captured."""
    taken_at = time.time_ns() // NANOS_IN_MILLI
    items = []
    daemons = 0
    for thread in threading.enumerate():
        if thread.ident is None:
            continue
        if thread.daemon:
            daemons += 1
        items.append(ThreadItem(thread.ident, thread_info(thread, registry=registry), thread_cpu_time_nanos(thread)))
    return ThreadSnapshot(tuple(items), len(items), daemons, taken_at)


class Absent(Enum):
    """Marks a table slot where the thread did not exist."""

    ABSENT = "absent"

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = Absent.ABSENT


@dataclass(slots=True, frozen=True)
class ThreadEntry:
    """A thread in one sample, with its CPU usage since the previous sample (None if unknown)."""

    item: ThreadItem
    cpu_usage_percent: int | None


ThreadCell = ThreadEntry | Absent


def _same_thread(prev: ThreadItem, curr: ThreadItem) -> bool:
    # idents are reused as soon as a thread exits; the native id tells the threads apart
    if prev.info.native_id is None or curr.info.native_id is None:
        return True
    return prev.info.native_id == curr.info.native_id


def _cpu_usage_percent(prev: ThreadItem, prev_taken_at: int, curr: ThreadItem, taken_at: int) -> int | None:
    if prev.total_cpu_time_nanos < 0 or curr.total_cpu_time_nanos < 0:
        return None
    delta_ms = taken_at - prev_taken_at
    delta_ns = curr.total_cpu_time_nanos - prev.total_cpu_time_nanos
    if delta_ms <= 0 or delta_ns < 0:
        return None
    return min(HUNDRED_PERCENT, int(HUNDRED_PERCENT * delta_ns / (delta_ms * NANOS_IN_MILLI)))


def history_to_table(samples: Sequence[Sample]) -> dict[int, list[ThreadCell]]:
    """
    Align the threads of all samples onto a shared time axis.

    Returns:
        thread id -> one cell per sample, ordered by thread id. A cell is
        ABSENT where the thread did not exist in that sample. A new thread
        which got the ident of an exited one (told apart by the native id)
        continues the row with an unknown CPU usage.
    """
    table: dict[int, list[ThreadCell]] = {}
    for index, sample in enumerate(samples):
        snapshot = sample.threads
        for item in snapshot.items:
            cells = table.setdefault(item.thread_id, [])
            cells.extend([ABSENT] * (index - len(cells)))
            usage = None
            if cells and isinstance(cells[-1], ThreadEntry) and _same_thread(cells[-1].item, item):
                prev_taken_at = samples[index - 1].threads.taken_at
                usage = _cpu_usage_percent(cells[-1].item, prev_taken_at, item, snapshot.taken_at)
            cells.append(ThreadEntry(item, usage))
    for cells in table.values():
        cells.extend([ABSENT] * (len(samples) - len(cells)))
    return {thread_id: table[thread_id] for thread_id in sorted(table)}


class LockRegistry:
    """
    Tracks owners and waiters of tracked locks.

    supports_ownable_synchronizers False restricts deadlock detection to
    reentrant (monitor) locks.
    """

    def __init__(self, supports_ownable_synchronizers: bool = True) -> None:
        self.supports_ownable_synchronizers = supports_ownable_synchronizers
        self._lock = threading.Lock()
        self._waiting: dict[int, _TrackedBase] = {}

    def waiting(self, thread_id: int, lock: _TrackedBase) -> None:
        with self._lock:
            self._waiting[thread_id] = lock

    def done_waiting(self, thread_id: int) -> None:
        with self._lock:
            self._waiting.pop(thread_id, None)

    def blocker_of(self, thread_id: int) -> tuple[_TrackedBase | None, int | None]:
        """The lock the thread is blocked on and that lock's owner, (None, None) if not blocked."""
        with self._lock:
            lock = self._waiting.get(thread_id)
        if lock is None:
            return None, None
        return lock, lock.owner

    def find_cycles(self, monitors_only: bool = False) -> tuple[int, ...]:
        """Ids of the threads which are part of a wait-for cycle, sorted."""
        with self._lock:
            waiting = dict(self._waiting)
        edges: dict[int, int] = {}
        for thread_id, lock in waiting.items():
            if monitors_only and not lock.monitor:
                continue
            owner = lock.owner
            if owner is not None and owner != thread_id:
                edges[thread_id] = owner
        deadlocked: set[int] = set()
        for start in edges:
            path: list[int] = []
            seen: dict[int, int] = {}
            node: int | None = start
            while node is not None and node not in seen and node not in deadlocked:
                seen[node] = len(path)
                path.append(node)
                node = edges.get(node)
            if node is not None and node in seen:
                deadlocked.update(path[seen[node] :])
        return tuple(sorted(deadlocked))


class _TrackedBase:
    monitor = False

    def __init__(self, name: str | None, registry: LockRegistry | None) -> None:
        self.name = name or f"{type(self).__name__}@{id(self):x}"
        self._registry = registry or default_registry()
        self.owner: int | None = None

    def _acquire(self, inner, blocking: bool, timeout: float) -> bool:
        me = threading.get_ident()
        if inner.acquire(False):
            return True
        if not blocking:
            return False
        self._registry.waiting(me, self)
        try:
            return inner.acquire(True, timeout)
        finally:
            self._registry.done_waiting(me)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} owner={self.owner}>"


class TrackedLock(_TrackedBase):
    """A threading.Lock visible to deadlock detection as an ownable synchronizer."""

    def __init__(self, name: str | None = None, registry: LockRegistry | None = None) -> None:
        super().__init__(name, registry)
        self._inner = threading.Lock()

    def acquire(self, blocking: bool = True, timeout: float = -1) -> bool:
        acquired = self._acquire(self._inner, blocking, timeout)
        if acquired:
            self.owner = threading.get_ident()
        return acquired

    def release(self) -> None:
        self.owner = None
        self._inner.release()

    def locked(self) -> bool:
        return self._inner.locked()


class TrackedRLock(_TrackedBase):
    """A threading.RLock visible to deadlock detection as a monitor."""

    monitor = True

    def __init__(self, name: str | None = None, registry: LockRegistry | None = None) -> None:
        super().__init__(name, registry)
        self._inner = threading.RLock()
        self._count = 0

    def acquire(self, blocking: bool = True, timeout: float = -1) -> bool:
        acquired = self._acquire(self._inner, blocking, timeout)
        if acquired:
            self.owner = threading.get_ident()
            self._count += 1
        return acquired

    def release(self) -> None:
        if self.owner != threading.get_ident():
            raise RuntimeError("cannot release un-acquired lock")
        self._count -= 1
        if self._count == 0:
            self.owner = None
        self._inner.release()


_default_registry = LockRegistry()


def default_registry() -> LockRegistry:
    """The registry used by tracked locks created without an explicit one."""
    return _default_registry


def find_monitor_deadlocked_threads(registry: LockRegistry | None = None) -> tuple[int, ...]:
    """Ids of threads deadlocked waiting for reentrant (monitor) locks."""
    return (registry or default_registry()).find_cycles(monitors_only=True)


def find_deadlocked_threads(registry: LockRegistry | None = None) -> tuple[int, ...]:
    """
    Ids of threads deadlocked waiting for any tracked lock.

    Falls back to find_monitor_deadlocked_threads() when the registry does
    not track ownable synchronizers. Empty when nothing is deadlocked.
    """
    registry = registry or default_registry()
    if not registry.supports_ownable_synchronizers:
        return find_monitor_deadlocked_threads(registry)
    return registry.find_cycles()


def dump_thread(thread_id: int, registry: LockRegistry | None = None) -> ThreadInfo | None:
    """Capture a live thread including its stack, None if it is gone."""
    for thread in threading.enumerate():
        if thread.ident == thread_id:
            return thread_info(thread, sys._current_frames(), registry)
    return None


def thread_metadata(info: ThreadInfo) -> str:
    """Id, name and state of the thread plus the lock it is blocked on and that lock's owner."""
    text = f"0x{info.thread_id:x} named '{info.name}' {info.state}"
    if info.daemon:
        text += ", daemon"
    if info.waiting_on is not None:
        text += f", locked on lock named '{info.waiting_on}' owned by thread: "
        if info.lock_owner_id is None:
            text += "none"
        else:
            text += f"0x{info.lock_owner_id:x} named '{info.lock_owner_name}'"
    return text


def thread_stacktrace(info: ThreadInfo) -> str:
    if not info.stack:
        return "  stack trace is empty\n"
    return "".join(f"  at {frame}\n" for frame in info.stack)
