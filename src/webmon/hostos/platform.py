"""One-time host platform probe."""

import functools
import os
import sys
from enum import Enum

import psutil
import structlog

logger = structlog.get_logger()


class HostPlatform(Enum):
    """The measurement family available on this host."""

    LINUX = "linux"
    WINDOWS = "windows"
    UNSUPPORTED = "unsupported"


@functools.cache
def probe_platform() -> HostPlatform:
    """
    Detect which measurement strategies this host supports.

    The result is computed once and reused by every strategy factory, so
    no capability detection ever happens at measurement time.
    """
    if sys.platform.startswith("linux") and os.access("/proc/stat", os.R_OK):
        platform = HostPlatform.LINUX
    elif psutil.WINDOWS:
        platform = HostPlatform.WINDOWS
    else:
        platform = HostPlatform.UNSUPPORTED
    logger.info("Host platform probed", platform=platform.value, sys_platform=sys.platform)
    return platform


@functools.cache
def cpu_count() -> int:
    """Number of logical CPUs, at least 1."""
    return psutil.cpu_count(logical=True) or os.cpu_count() or 1
