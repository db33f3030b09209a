"""Local drive enumeration for the free disk space check."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import psutil
import structlog

from webmon.models import MEBIBYTE

logger = structlog.get_logger()

NETWORK_FSTYPES = frozenset({
    "nfs", "nfs4", "cifs", "smbfs", "smb3", "sshfs", "fuse.sshfs", "afs", "ncpfs", "9p", "glusterfs", "ceph",
})


@dataclass(slots=True, frozen=True)
class Drive:
    """A mounted local drive."""

    device: str
    mountpoint: str
    fstype: str


def _is_removable_linux(device: str, sys_block: Path) -> bool:
    name = Path(device).name
    # /sys/block lists whole disks only: strip the partition number
    candidates = [name, name.rstrip("0123456789")]
    if name.startswith(("nvme", "mmcblk")) and "p" in name:
        candidates.append(name[: name.rindex("p")])
    for candidate in candidates:
        flag = sys_block / candidate / "removable"
        try:
            return flag.read_text().strip() == "1"
        except OSError:
            continue
    return False


def _is_local(partition: Any, sys_block: Path) -> bool:
    if partition.fstype.lower() in NETWORK_FSTYPES:
        return False
    opts = partition.opts.lower().split(",")
    if "cdrom" in opts or "removable" in opts:
        return False
    if psutil.LINUX and partition.device.startswith("/dev/"):
        return not _is_removable_linux(partition.device, sys_block)
    return True


def local_hard_drives(sys_block: Path = Path("/sys/block")) -> list[Drive]:
    """
    List mounted local drives: no network shares, no removable media.

    Returns:
        the drives ordered by mount point, empty if enumeration fails (the failure is logged).
    """
    try:
        partitions = psutil.disk_partitions(all=False)
    except Exception:
        logger.error("Failed to enumerate disk partitions", exc_info=True)
        return []
    drives = {
        p.mountpoint: Drive(p.device, p.mountpoint, p.fstype) for p in partitions if _is_local(p, sys_block)
    }
    return [drives[mountpoint] for mountpoint in sorted(drives)]


def free_space_mb(mountpoint: str) -> int:
    """
    Free space available to this user on the given mount point, in mebibytes.

    Raises:
        OSError: if the mount point cannot be queried.
    """
    return psutil.disk_usage(mountpoint).free // MEBIBYTE
