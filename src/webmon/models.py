"""Data models for webmon."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from webmon.threads import ThreadSnapshot

HUNDRED_PERCENT = 100
MEBIBYTE = 1024 * 1024


@dataclass(slots=True, frozen=True)
class CPUUsage:
    """
    CPU usage over a time slice.

    Both values are percents in the range 0-100. On a multi-core host
    avg_usage is the usage of all cores together and max_core_usage is the
    usage of the busiest core; single-figure measurements set both to the
    same value.
    """

    avg_usage: int
    max_core_usage: int

    ZERO: ClassVar[CPUUsage]

    def __post_init__(self) -> None:
        for name in ("avg_usage", "max_core_usage"):
            value = getattr(self, name)
            if not 0 <= value <= HUNDRED_PERCENT:
                raise ValueError(f"{name}: invalid value {value}: must be 0..100")

    @staticmethod
    def of(usage: int) -> CPUUsage:
        """Create a usage where both figures equal usage, clamped to 0..100."""
        usage = max(0, min(HUNDRED_PERCENT, int(usage)))
        return CPUUsage(usage, usage)


CPUUsage.ZERO = CPUUsage(0, 0)


@dataclass(slots=True, frozen=True)
class MemoryUsage:
    """
    A memory usage snapshot: init <= used <= committed <= max.

    init and max may be -1 which means undefined. All other values must be
    non-negative. Values are in bytes unless the object was produced by
    in_mb().
    """

    init: int
    used: int
    committed: int
    max: int

    def __post_init__(self) -> None:
        if self.init < -1:
            raise ValueError(f"init = {self.init} is negative but not -1")
        if self.max < -1:
            raise ValueError(f"max = {self.max} is negative but not -1")
        if self.used < 0:
            raise ValueError(f"used = {self.used} is negative")
        if self.committed < 0:
            raise ValueError(f"committed = {self.committed} is negative")
        if self.used > self.committed:
            raise ValueError(f"used = {self.used} should be <= committed = {self.committed}")
        if self.max >= 0 and self.committed > self.max:
            raise ValueError(f"committed = {self.committed} should be <= max = {self.max}")

    def in_mb(self) -> MemoryUsage:
        """Return a copy with all values converted from bytes to mebibytes; -1 stays -1."""
        return MemoryUsage(
            -1 if self.init == -1 else self.init // MEBIBYTE,
            self.used // MEBIBYTE,
            self.committed // MEBIBYTE,
            -1 if self.max == -1 else self.max // MEBIBYTE,
        )

    def add(self, other: MemoryUsage) -> MemoryUsage:
        """Sum two usages. An undefined init/max on either side makes the result undefined."""

        def add_mem(a: int, b: int) -> int:
            return -1 if a < 0 or b < 0 else a + b

        return MemoryUsage(
            add_mem(self.init, other.init),
            self.used + other.used,
            self.committed + other.committed,
            add_mem(self.max, other.max),
        )

    def usage_percent(self) -> int | None:
        """used as a percent of max; None if max is undefined or zero."""
        if self.max <= 0:
            return None
        return self.used * HUNDRED_PERCENT // self.max

    def committed_percent(self) -> int | None:
        if self.max <= 0:
            return None
        return self.committed * HUNDRED_PERCENT // self.max

    def format(self, in_megs: bool = True) -> str:
        return format_usage(self, in_megs)


def format_usage(usage: MemoryUsage | None, in_megs: bool = True) -> str:
    """
    Format a memory usage as [used (committed) / max - N%].

    Args:
        usage: the usage, may be None.
        in_megs: if True the values are mebibytes and get an M suffix.

    Returns:
        the formatted string, [not available] for None.
    """
    if usage is None:
        return "[not available]"
    unit = "M" if in_megs else ""
    text = f"[{usage.used}{unit} ({usage.committed}{unit})"
    if usage.max >= 0:
        percent = usage.used * HUNDRED_PERCENT // usage.max if usage.max > 0 else 0
        text += f" / {usage.max}{unit} - {percent}%"
    else:
        text += " / ?"
    return text + "]"


def format_usage_percent(usage: MemoryUsage | None) -> str:
    """Format the used percentage: "xx%", "not available" or "none" (zero max)."""
    if usage is None or usage.max < 0:
        return "not available"
    if usage.max == 0:
        return "none"
    return f"{usage.used * HUNDRED_PERCENT // usage.max}%"


class MemoryPools(Enum):
    """The memory usage slots recorded in each Sample."""

    HEAP = "Process memory"
    NON_HEAP = "Traced allocations"
    PHYSICAL = "OS physical memory"
    SWAP = "OS swap"

    @property
    def displayable(self) -> str:
        return self.value


@dataclass(slots=True, frozen=True)
class Sample:
    """Immutable snapshot of host and runtime metrics taken at a single vmstat tick."""

    sample_time: int  # milliseconds since the epoch
    gc_cpu_usage: int  # 0-100
    mem_pool_usage: Mapping[MemoryPools, MemoryUsage | None]  # values in mebibytes
    threads: ThreadSnapshot
    modules_loaded: int
    cpu_usage: CPUUsage  # host OS
    cpu_process_usage: int  # this process, 0-100
    cpu_io_usage: int  # host OS time waiting for IO, 0-100

    def memory(self, pool: MemoryPools) -> MemoryUsage | None:
        """Return the usage recorded for the given pool, None if unavailable."""
        return self.mem_pool_usage.get(pool)


class SampleBuilder:
    """
    Collects the parts of a Sample, then freezes them with build().

    Memory usages are given in bytes and stored in mebibytes.
    """

    def __init__(self) -> None:
        self._sample_time: int | None = None
        self._gc_cpu_usage = 0
        self._mem: dict[MemoryPools, MemoryUsage | None] = {pool: None for pool in MemoryPools}
        self._threads: ThreadSnapshot | None = None
        self._modules_loaded = 0
        self._cpu_usage = CPUUsage.ZERO
        self._cpu_process_usage = 0
        self._cpu_io_usage = 0

    def sample_time(self, millis: int) -> SampleBuilder:
        self._sample_time = millis
        return self

    def gc_cpu_usage(self, percent: int) -> SampleBuilder:
        self._gc_cpu_usage = max(0, min(HUNDRED_PERCENT, percent))
        return self

    def memory(self, pool: MemoryPools, usage_bytes: MemoryUsage | None) -> SampleBuilder:
        self._mem[pool] = None if usage_bytes is None else usage_bytes.in_mb()
        return self

    def threads(self, snapshot: ThreadSnapshot) -> SampleBuilder:
        self._threads = snapshot
        return self

    def modules_loaded(self, count: int) -> SampleBuilder:
        self._modules_loaded = count
        return self

    def cpu_usage(self, usage: CPUUsage | None) -> SampleBuilder:
        self._cpu_usage = usage if usage is not None else CPUUsage.ZERO
        return self

    def cpu_process_usage(self, percent: int | None) -> SampleBuilder:
        self._cpu_process_usage = max(0, min(HUNDRED_PERCENT, percent or 0))
        return self

    def cpu_io_usage(self, percent: int | None) -> SampleBuilder:
        self._cpu_io_usage = max(0, min(HUNDRED_PERCENT, percent or 0))
        return self

    def build(self) -> Sample:
        """
        Freeze the collected values.

        Raises:
            ValueError: if the sample time or the thread snapshot was not set.
        """
        if self._sample_time is None:
            raise ValueError("sample_time has not been set")
        if self._threads is None:
            raise ValueError("threads have not been set")
        return Sample(
            sample_time=self._sample_time,
            gc_cpu_usage=self._gc_cpu_usage,
            mem_pool_usage=MappingProxyType(dict(self._mem)),
            threads=self._threads,
            modules_loaded=self._modules_loaded,
            cpu_usage=self._cpu_usage,
            cpu_process_usage=self._cpu_process_usage,
            cpu_io_usage=self._cpu_io_usage,
        )
