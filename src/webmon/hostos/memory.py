"""Host OS physical memory and swap information."""

from __future__ import annotations

import functools
from abc import ABC, abstractmethod
from pathlib import Path

import psutil
import structlog

from webmon.hostos.platform import HostPlatform, probe_platform
from webmon.hostos.proc import PROC, LinuxProperties
from webmon.models import MemoryUsage

logger = structlog.get_logger()


class MemoryInfoProvider(ABC):
    """
    Provides host memory information. Implementations must be thread-safe.

    When the information is not available (unsupported platform, transient
    failure) the methods return None; they never raise.
    """

    @abstractmethod
    def get_physical_memory(self) -> MemoryUsage | None:
        """
        Physical memory of the host, in bytes.

        init is -1; used excludes buffers/cache; committed is the total used
        memory including buffers/cache; max is the memory usable by the OS.
        used == committed means buffers/cache are not distinguished.
        """

    @abstractmethod
    def get_swap(self) -> MemoryUsage | None:
        """Swap of the host, in bytes: used == committed, max is the total swap size."""


class DummyMemoryStrategy(MemoryInfoProvider):
    """Reports nothing."""

    def get_physical_memory(self) -> MemoryUsage | None:
        return None

    def get_swap(self) -> MemoryUsage | None:
        return None


class MemoryLinuxStrategy(MemoryInfoProvider):
    """Reads /proc/meminfo."""

    def __init__(self, meminfo: Path = PROC / "meminfo") -> None:
        self.meminfo = meminfo

    def available(self) -> bool:
        """True if the meminfo file exists and is not empty."""
        try:
            props = LinuxProperties.parse_file(self.meminfo)
        except OSError:
            logger.info("MemoryLinuxStrategy disabled: failed to read meminfo", path=str(self.meminfo), exc_info=True)
            return False
        return props is not None and not props.is_empty()

    def _parse(self) -> LinuxProperties | None:
        try:
            props = LinuxProperties.parse_file(self.meminfo)
        except OSError:
            logger.debug("Failed to read meminfo", path=str(self.meminfo), exc_info=True)
            return None
        return None if props is None or props.is_empty() else props

    def get_physical_memory(self) -> MemoryUsage | None:
        props = self._parse()
        if props is None:
            return None
        try:
            total = props.get_value_in_bytes_none("MemTotal")
            free = props.get_value_in_bytes_none("MemFree")
            buffers = props.get_value_in_bytes_none("Buffers")
            cached = props.get_value_in_bytes_none("Cached")
        except ValueError:
            logger.debug("Unparsable meminfo", path=str(self.meminfo), exc_info=True)
            return None
        if total is None or free is None:
            return None
        committed = total - free
        if buffers is None or cached is None:
            return MemoryUsage(-1, committed, committed, total)
        used = max(0, committed - buffers - cached)
        return MemoryUsage(-1, used, committed, total)

    def get_swap(self) -> MemoryUsage | None:
        props = self._parse()
        if props is None:
            return None
        try:
            total = props.get_value_in_bytes_none("SwapTotal")
            free = props.get_value_in_bytes_none("SwapFree")
        except ValueError:
            logger.debug("Unparsable meminfo", path=str(self.meminfo), exc_info=True)
            return None
        if total is None or free is None:
            return None
        used = total - free
        return MemoryUsage(-1, used, used, total)


class MemoryPsutilStrategy(MemoryInfoProvider):
    """
    Platform memory counters via psutil.

    Buffers/cache are not distinguished: used == committed.
    """

    def get_physical_memory(self) -> MemoryUsage | None:
        try:
            mem = psutil.virtual_memory()
        except Exception:
            logger.debug("Failed to obtain physical memory", exc_info=True)
            return None
        used = max(0, min(mem.total, mem.total - mem.available))
        return MemoryUsage(-1, used, used, mem.total)

    def get_swap(self) -> MemoryUsage | None:
        try:
            swap = psutil.swap_memory()
        except Exception:
            logger.debug("Failed to obtain swap", exc_info=True)
            return None
        used = max(0, min(swap.total, swap.used))
        return MemoryUsage(-1, used, used, swap.total)


@functools.cache
def get_os_memory_info_provider() -> MemoryInfoProvider:
    """Return the first available provider: /proc/meminfo, then psutil, then the dummy one."""
    if probe_platform() is HostPlatform.LINUX:
        linux = MemoryLinuxStrategy()
        if linux.available():
            return linux
    psutil_strategy = MemoryPsutilStrategy()
    if psutil_strategy.get_physical_memory() is not None:
        return psutil_strategy
    logger.info("Host memory reporting unsupported on this platform")
    return DummyMemoryStrategy()
