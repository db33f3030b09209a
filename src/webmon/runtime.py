"""Probes of the hosting Python runtime: memory, GC activity, loaded modules."""

import functools
import gc
import sys
import threading
import time
import tracemalloc
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import psutil
import structlog

from webmon.hostos.memory import get_os_memory_info_provider
from webmon.models import MemoryUsage

logger = structlog.get_logger()

PROCESS_POOL_NAME = "Process memory"

# cgroup v2 first, then v1
_CGROUP_LIMIT_FILES = (
    Path("/sys/fs/cgroup/memory.max"),
    Path("/sys/fs/cgroup/memory/memory.limit_in_bytes"),
)


@dataclass(slots=True, frozen=True)
class GcSource:
    """Cumulative activity of one gc generation."""

    name: str
    collection_count: int
    collection_time_ms: int
    valid: bool = True


class GcMonitor:
    """
    Times garbage collections through gc.callbacks.

    Also records the process RSS right after each full (generation 2)
    collection, which serves as the post-collection usage of the process
    memory pool.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started_ns: dict[int, int] = {}
        self._counts = [0] * len(gc.get_count())
        self._times_ns = [0] * len(self._counts)
        self._rss_after_full_gc: int | None = None
        self._process: psutil.Process | None = None
        self._installed = False

    def install(self) -> None:
        """Register the gc callback. Calling it again does nothing."""
        with self._lock:
            if self._installed:
                return
            try:
                self._process = psutil.Process()
            except psutil.Error:
                logger.warning("Cannot inspect the current process, post-GC memory not tracked", exc_info=True)
            gc.callbacks.append(self._callback)
            self._installed = True

    def uninstall(self) -> None:
        with self._lock:
            if not self._installed:
                return
            gc.callbacks.remove(self._callback)
            self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def _callback(self, phase: str, info: dict[str, Any]) -> None:
        generation = info.get("generation", 0)
        if phase == "start":
            self._started_ns[generation] = time.perf_counter_ns()
            return
        started = self._started_ns.pop(generation, None)
        if started is None or generation >= len(self._counts):
            return
        self._counts[generation] += 1
        self._times_ns[generation] += time.perf_counter_ns() - started
        if generation == len(self._counts) - 1 and self._process is not None:
            try:
                self._rss_after_full_gc = self._process.memory_info().rss
            except psutil.Error:
                self._rss_after_full_gc = None

    def sources(self) -> list[GcSource]:
        """Return one source per gc generation."""
        return [
            GcSource(f"generation {gen}", self._counts[gen], self._times_ns[gen] // 1_000_000, self._installed)
            for gen in range(len(self._counts))
        ]

    def total_collection_time_ms(self) -> int:
        """Sum of the collection time over all valid sources."""
        return sum(source.collection_time_ms for source in self.sources() if source.valid)

    @property
    def rss_after_full_gc(self) -> int | None:
        """RSS in bytes measured after the last full collection, None if none happened yet."""
        return self._rss_after_full_gc


@functools.cache
def gc_monitor() -> GcMonitor:
    """The process-wide GC monitor, installed on first use."""
    monitor = GcMonitor()
    monitor.install()
    return monitor


def _cgroup_limit() -> int | None:
    for path in _CGROUP_LIMIT_FILES:
        try:
            text = path.read_text().strip()
        except OSError:
            continue
        if text.isdigit():
            limit = int(text)
            # v1 reports "unlimited" as a huge page-aligned number
            return limit if limit < 1 << 62 else None
    return None


@functools.cache
def process_memory_limit() -> int:
    """
    The memory limit of this process in bytes, -1 if unlimited.

    Checks RLIMIT_AS first, then the cgroup memory limit.
    """
    if psutil.LINUX:
        try:
            soft, _hard = psutil.Process().rlimit(psutil.RLIMIT_AS)
            if soft != psutil.RLIM_INFINITY and soft > 0:
                return soft
        except (psutil.Error, OSError, AttributeError):
            logger.debug("Failed to read RLIMIT_AS", exc_info=True)
    limit = _cgroup_limit()
    return -1 if limit is None else limit


def _usage(used: int, limit: int) -> MemoryUsage:
    if 0 <= limit < used:
        limit = -1
    return MemoryUsage(-1, used, used, limit)


def process_memory() -> MemoryUsage | None:
    """Resident memory of this process in bytes; max is the process memory limit."""
    try:
        rss = psutil.Process().memory_info().rss
    except psutil.Error:
        logger.error("Failed to obtain the process memory", exc_info=True)
        return None
    return _usage(rss, process_memory_limit())


def traced_memory() -> MemoryUsage | None:
    """Python allocations traced by tracemalloc (committed is the peak); None if not tracing."""
    if not tracemalloc.is_tracing():
        return None
    current, peak = tracemalloc.get_traced_memory()
    return MemoryUsage(-1, current, max(current, peak), -1)


@dataclass(slots=True, frozen=True)
class MemoryPool:
    """A memory pool, in bytes."""

    name: str
    usage: MemoryUsage | None
    collection_usage: MemoryUsage | None  # usage right after the last full collection
    thresholds_supported: bool


def _pool_limit() -> int:
    limit = process_memory_limit()
    if limit >= 0:
        return limit
    physical = get_os_memory_info_provider().get_physical_memory()
    return -1 if physical is None else physical.max


def memory_pools() -> list[MemoryPool]:
    """
    The memory pools of this process.

    The only pool is the process memory itself, bounded by the process
    memory limit or, when unlimited, by the physical memory of the host.
    """
    limit = _pool_limit()
    try:
        rss = psutil.Process().memory_info().rss
    except psutil.Error:
        logger.error("Failed to obtain the process memory", exc_info=True)
        return []
    after_gc = gc_monitor().rss_after_full_gc
    return [
        MemoryPool(
            name=PROCESS_POOL_NAME,
            usage=_usage(rss, limit),
            collection_usage=None if after_gc is None else _usage(after_gc, limit),
            thresholds_supported=limit > 0,
        )
    ]


def modules_loaded() -> int:
    """Number of currently imported modules."""
    return len(sys.modules)
