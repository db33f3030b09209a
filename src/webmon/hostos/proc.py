"""Parsers for selected files of the Linux /proc filesystem.

Every parser accepts the file contents as text so it can be exercised with
synthetic data; the now() constructors read the live files.
"""

from __future__ import annotations

import functools
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from webmon.models import HUNDRED_PERCENT, CPUUsage

PROC = Path("/proc")


def _clamp_percent(value: int) -> int:
    return max(0, min(HUNDRED_PERCENT, value))


@functools.cache
def clock_ticks() -> int:
    """Jiffies per second (USER_HZ)."""
    try:
        return os.sysconf("SC_CLK_TCK")
    except (ValueError, OSError, AttributeError):
        return 100


@functools.cache
def page_size() -> int:
    """The memory page size in bytes, -1 if unknown."""
    try:
        return os.sysconf("SC_PAGE_SIZE")
    except (ValueError, OSError, AttributeError):
        return -1


@dataclass(slots=True, frozen=True)
class Stat:
    """Jiffies of one cpu line of /proc/stat."""

    user: int
    nice: int
    system: int
    idle: int

    @staticmethod
    def parse_line(line: str) -> Stat:
        fields = line.split()
        return Stat(int(fields[1]), int(fields[2]), int(fields[3]), int(fields[4]))

    @property
    def total(self) -> int:
        return self.user + self.nice + self.system + self.idle

    def cpu_usage(self, prev: Stat) -> int:
        """
        CPU usage in percent in the time slice between prev and this.

        Raises:
            ValueError: if prev was not taken before this.
        """
        dtotal = self.total - prev.total
        if dtotal < 0 or self.idle < prev.idle:
            raise ValueError(f"Parameter prev: invalid value {prev}: does not precede {self}")
        if dtotal == 0:
            return 0
        idle = _clamp_percent(HUNDRED_PERCENT * (self.idle - prev.idle) // dtotal)
        return HUNDRED_PERCENT - idle


@dataclass(slots=True, frozen=True)
class Stats:
    """The aggregate cpu line plus one line per core of /proc/stat."""

    overall: Stat
    cores: tuple[Stat, ...]

    @staticmethod
    def parse(text: str) -> Stats:
        overall: Stat | None = None
        cores: list[Stat] = []
        for line in text.splitlines():
            if line.startswith("cpu "):
                overall = Stat.parse_line(line)
            elif line.startswith("cpu"):
                cores.append(Stat.parse_line(line))
        if overall is None:
            raise ValueError("No cpu line in /proc/stat")
        return Stats(overall, tuple(cores))

    @staticmethod
    def now(proc: Path = PROC) -> Stats:
        return Stats.parse((proc / "stat").read_text())

    def cpu_usage(self, prev: Stats) -> CPUUsage:
        """Average usage from the aggregate line, max core usage from the busiest core."""
        avg = self.overall.cpu_usage(prev.overall)
        max_core = avg
        if self.cores and len(self.cores) == len(prev.cores):
            max_core = max(core.cpu_usage(prev_core) for core, prev_core in zip(self.cores, prev.cores))
        return CPUUsage(avg, max(avg, max_core))


@dataclass(slots=True, frozen=True)
class Diskstats:
    """Milliseconds spent doing IO, summed over whole disks of /proc/diskstats."""

    millis_spent_io: int
    current_time_millis: int

    DEVNAME = 2
    MILLIS_SPENT_IO = 12

    @staticmethod
    def parse(text: str, current_time_millis: int) -> Diskstats:
        total = 0
        for line in text.splitlines():
            tokens = line.split()
            if len(tokens) <= Diskstats.MILLIS_SPENT_IO:
                continue
            devname = tokens[Diskstats.DEVNAME]
            # sda2 etc. are partitions, only whole disks count
            if devname[-1].isdigit():
                continue
            total += int(tokens[Diskstats.MILLIS_SPENT_IO])
        return Diskstats(total, current_time_millis)

    @staticmethod
    def now(proc: Path = PROC) -> Diskstats:
        text = (proc / "diskstats").read_text()
        return Diskstats.parse(text, time.monotonic_ns() // 1_000_000)

    def cpu_io_usage(self, prev: Diskstats, cpus: int) -> int:
        """
        Percent of time spent waiting for IO since prev, per CPU.

        Raises:
            ValueError: if prev was sampled after this.
        """
        delta = self.current_time_millis - prev.current_time_millis
        if delta < 0:
            raise ValueError(f"Parameter prev: invalid value {prev}: must be sampled earlier than this: {self}")
        if delta == 0:
            return 0
        return _clamp_percent((self.millis_spent_io - prev.millis_spent_io) * HUNDRED_PERCENT // delta // max(1, cpus))


@dataclass(slots=True, frozen=True)
class PidStat:
    """The interesting fields of /proc/[pid]/stat."""

    utime_jiffies: int
    stime_jiffies: int
    rss_pages: int

    @staticmethod
    def parse(text: str) -> PidStat:
        # the command name may contain spaces and parentheses
        rest = text[text.rindex(")") + 2 :].split()
        # rest[0] is field 3 (state)
        return PidStat(int(rest[11]), int(rest[12]), int(rest[21]))

    @staticmethod
    def now(pid: int, proc: Path = PROC) -> PidStat:
        return PidStat.parse((proc / str(pid) / "stat").read_text())

    @property
    def rss_bytes(self) -> int:
        size = page_size()
        if size < 0:
            raise RuntimeError("Linux page size not available")
        return self.rss_pages * size


class LinuxProperties:
    """A parsed NAME: VALUE file such as /proc/meminfo. Immutable."""

    EMPTY: ClassVar[LinuxProperties]

    def __init__(self, properties: dict[str, str]) -> None:
        self._properties = dict(properties)

    @staticmethod
    def parse(text: str) -> LinuxProperties:
        props: dict[str, str] = {}
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            name = line.split()[0]
            value = line[len(name) :].strip()
            props[name.rstrip(":")] = value
        return LinuxProperties(props)

    @staticmethod
    def parse_file(path: Path) -> LinuxProperties | None:
        """Parse the given file; None if it does not exist."""
        try:
            text = path.read_text()
        except FileNotFoundError:
            return None
        return LinuxProperties.parse(text)

    @staticmethod
    def _parse_bytes(value: str) -> int:
        multiplier = 1
        if value.lower().endswith("kb"):
            multiplier = 1024
            value = value[:-2].strip()
        return multiplier * int(value)

    def get_value_in_bytes(self, name: str) -> int:
        """
        Raises:
            ValueError: if the property is not present.
        """
        value = self._properties.get(name)
        if value is None:
            raise ValueError(
                f"Parameter name: invalid value {name}: not present in properties. "
                f"Available properties: {sorted(self._properties)}"
            )
        return self._parse_bytes(value)

    def get_value_in_bytes_zero(self, name: str) -> int:
        value = self._properties.get(name)
        return 0 if value is None else self._parse_bytes(value)

    def get_value_in_bytes_none(self, name: str) -> int | None:
        value = self._properties.get(name)
        return None if value is None else self._parse_bytes(value)

    def is_empty(self) -> bool:
        return not self._properties


LinuxProperties.EMPTY = LinuxProperties({})
