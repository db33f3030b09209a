"""CPU usage measurement strategies.

A strategy captures raw OS counters with measure() and turns two captures
into a CPUUsage with get_avg_cpu_usage(). The factories at the bottom bind
exactly one strategy per usage kind, based on the one-time platform probe;
hosts without support get a DummyCpuUsageStrategy which always reports zero.
"""

from __future__ import annotations

import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import psutil
import structlog

from webmon.hostos import proc
from webmon.hostos.platform import HostPlatform, cpu_count, probe_platform
from webmon.models import HUNDRED_PERCENT, CPUUsage

logger = structlog.get_logger()


class CpuUsageMeasureStrategy(ABC):
    """Measures an implementation-dependent CPU statistic."""

    @abstractmethod
    def measure(self) -> Any:
        """
        Capture the current OS counters.

        Returns:
            an opaque measurement token, None if unavailable right now.

        Raises:
            Exception: whatever the underlying OS call raises.
        """

    @abstractmethod
    def get_avg_cpu_usage(self, m1: Any, m2: Any) -> CPUUsage:
        """
        Compute the average CPU usage between two measurements, m1 taken first.

        Must return zero usage when m1 is m2.

        Raises:
            ValueError: if m2 was taken before m1.
        """


class DummyCpuUsageStrategy(CpuUsageMeasureStrategy):
    """Bound on hosts which do not support the measurement."""

    def measure(self) -> Any:
        return None

    def get_avg_cpu_usage(self, m1: Any, m2: Any) -> CPUUsage:
        return CPUUsage.ZERO


class HostCpuLinuxStrategy(CpuUsageMeasureStrategy):
    """Host CPU usage from /proc/stat."""

    def measure(self) -> proc.Stats:
        return proc.Stats.now()

    def get_avg_cpu_usage(self, m1: proc.Stats, m2: proc.Stats) -> CPUUsage:
        return m2.cpu_usage(m1)


class HostIOCpuLinuxStrategy(CpuUsageMeasureStrategy):
    """Host CPU time waiting for IO, from /proc/diskstats."""

    def measure(self) -> proc.Diskstats:
        return proc.Diskstats.now()

    def get_avg_cpu_usage(self, m1: proc.Diskstats, m2: proc.Diskstats) -> CPUUsage:
        return CPUUsage.of(m2.cpu_io_usage(m1, cpu_count()))


@dataclass(slots=True, frozen=True)
class _TimedCpuTime:
    cpu_seconds: float  # cumulative user + system CPU time of the process
    wall_seconds: float  # monotonic clock


def _process_usage(m1: _TimedCpuTime, m2: _TimedCpuTime) -> CPUUsage:
    dwall = m2.wall_seconds - m1.wall_seconds
    dcpu = m2.cpu_seconds - m1.cpu_seconds
    if dwall < 0 or dcpu < 0:
        raise ValueError(f"Parameter m1: invalid value {m1}: does not precede {m2}")
    if dwall == 0:
        return CPUUsage.ZERO
    return CPUUsage.of(int(dcpu * HUNDRED_PERCENT / dwall / cpu_count()))


class ProcessCpuLinuxStrategy(CpuUsageMeasureStrategy):
    """CPU usage of one process, from /proc/[pid]/stat."""

    def __init__(self, pid: int) -> None:
        self.pid = pid

    def measure(self) -> _TimedCpuTime:
        stat = proc.PidStat.now(self.pid)
        jiffies = stat.utime_jiffies + stat.stime_jiffies
        return _TimedCpuTime(jiffies / proc.clock_ticks(), time.monotonic())

    def get_avg_cpu_usage(self, m1: _TimedCpuTime, m2: _TimedCpuTime) -> CPUUsage:
        return _process_usage(m1, m2)


class HostCpuPsutilStrategy(CpuUsageMeasureStrategy):
    """Host CPU usage from the psutil performance counters."""

    def measure(self) -> tuple[Any, list[Any]]:
        return psutil.cpu_times(), psutil.cpu_times(percpu=True)

    @staticmethod
    def _usage(t1: Any, t2: Any) -> int:
        dtotal = sum(t2) - sum(t1)
        didle = t2.idle - t1.idle
        if dtotal < 0 or didle < 0:
            raise ValueError(f"Parameter m1: invalid value {t1}: does not precede {t2}")
        if dtotal == 0:
            return 0
        return HUNDRED_PERCENT - max(0, min(HUNDRED_PERCENT, int(didle * HUNDRED_PERCENT / dtotal)))

    def get_avg_cpu_usage(self, m1: tuple[Any, list[Any]], m2: tuple[Any, list[Any]]) -> CPUUsage:
        avg = self._usage(m1[0], m2[0])
        max_core = avg
        if m2[1] and len(m1[1]) == len(m2[1]):
            max_core = max(self._usage(c1, c2) for c1, c2 in zip(m1[1], m2[1]))
        return CPUUsage(avg, max(avg, max_core))


class ProcessCpuPsutilStrategy(CpuUsageMeasureStrategy):
    """CPU usage of one process, from psutil."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self._process = psutil.Process(pid)

    def measure(self) -> _TimedCpuTime:
        times = self._process.cpu_times()
        return _TimedCpuTime(times.user + times.system, time.monotonic())

    def get_avg_cpu_usage(self, m1: _TimedCpuTime, m2: _TimedCpuTime) -> CPUUsage:
        return _process_usage(m1, m2)


class HostIOCpuPsutilStrategy(CpuUsageMeasureStrategy):
    """Host CPU time waiting for IO, from the psutil disk counters."""

    def measure(self) -> proc.Diskstats | None:
        counters = psutil.disk_io_counters(perdisk=False)
        if counters is None:
            return None
        return proc.Diskstats(counters.read_time + counters.write_time, time.monotonic_ns() // 1_000_000)

    def get_avg_cpu_usage(self, m1: proc.Diskstats, m2: proc.Diskstats) -> CPUUsage:
        return CPUUsage.of(m2.cpu_io_usage(m1, cpu_count()))


class CPUUsageMeasurer:
    """
    Turns a strategy into a stream of usages: each call reports the average
    usage since the previous call. Thread-safe.
    """

    def __init__(self, strategy: CpuUsageMeasureStrategy) -> None:
        self.strategy = strategy
        self._lock = threading.Lock()
        self._measurement: Any = None

    @property
    def supported(self) -> bool:
        return not isinstance(self.strategy, DummyCpuUsageStrategy)

    def get_cpu_usage(self) -> CPUUsage | None:
        """
        Return the average CPU usage since the previous call.

        Returns:
            the usage; CPUUsage.ZERO on the first call; None if the
            measurement failed (the failure is logged).
        """
        with self._lock:
            try:
                measurement = self.strategy.measure()
            except Exception:
                logger.error(
                    "Failed to measure a CPU usage", strategy=type(self.strategy).__name__, exc_info=True
                )
                return None
            previous, self._measurement = self._measurement, measurement
            if previous is None or measurement is None:
                return CPUUsage.ZERO
            try:
                return self.strategy.get_avg_cpu_usage(previous, measurement)
            except Exception:
                logger.error(
                    "Failed to compute a CPU usage", strategy=type(self.strategy).__name__, exc_info=True
                )
                return None


def _bind(strategies: dict[HostPlatform, Any]) -> CPUUsageMeasurer:
    """Bind the strategy registered for the probed platform, the dummy one otherwise."""
    factory = strategies.get(probe_platform(), DummyCpuUsageStrategy)
    return CPUUsageMeasurer(factory())


def new_host_cpu() -> CPUUsageMeasurer:
    """Create a measurer of the host OS CPU usage."""
    return _bind({
        HostPlatform.LINUX: HostCpuLinuxStrategy,
        HostPlatform.WINDOWS: HostCpuPsutilStrategy,
    })


def new_host_io_cpu() -> CPUUsageMeasurer:
    """Create a measurer of the host OS CPU time spent waiting for IO."""
    return _bind({
        HostPlatform.LINUX: HostIOCpuLinuxStrategy,
        HostPlatform.WINDOWS: HostIOCpuPsutilStrategy,
    })


def new_process_cpu(pid: int | None = None) -> CPUUsageMeasurer:
    """
    Create a measurer of the CPU used by a process.

    Args:
        pid: the process, defaults to the current one.
    """
    pid = os.getpid() if pid is None else pid
    return _bind({
        HostPlatform.LINUX: lambda: ProcessCpuLinuxStrategy(pid),
        HostPlatform.WINDOWS: lambda: ProcessCpuPsutilStrategy(pid),
    })


def is_host_cpu_supported() -> bool:
    """True if a real (non-dummy) host CPU strategy gets bound on this host."""
    return probe_platform() is not HostPlatform.UNSUPPORTED


def is_host_io_cpu_supported() -> bool:
    return probe_platform() is not HostPlatform.UNSUPPORTED


def is_process_cpu_supported() -> bool:
    return probe_platform() is not HostPlatform.UNSUPPORTED
