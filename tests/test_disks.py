"""Tests for local drive enumeration."""

from types import SimpleNamespace

import psutil
import pytest

from webmon.hostos import disks
from webmon.hostos.disks import Drive, free_space_mb, local_hard_drives


def partition(device, mountpoint, fstype="ext4", opts="rw"):
    return SimpleNamespace(device=device, mountpoint=mountpoint, fstype=fstype, opts=opts)


def test_network_and_cdrom_excluded(monkeypatch, tmp_path):
    partitions = [
        partition("/dev/sda2", "/home"),
        partition("/dev/sda1", "/"),
        partition("server:/export", "/mnt/nfs", fstype="nfs4"),
        partition("D:\\", "D:\\", fstype="CDFS", opts="ro,cdrom"),
    ]
    monkeypatch.setattr(psutil, "disk_partitions", lambda all=False: partitions)
    assert local_hard_drives(tmp_path) == [Drive("/dev/sda1", "/", "ext4"), Drive("/dev/sda2", "/home", "ext4")]


@pytest.mark.skipif(not psutil.LINUX, reason="removable flag is read from sysfs")
def test_removable_excluded(monkeypatch, tmp_path):
    for name, flag in (("sda", "0"), ("sdb", "1"), ("nvme0n1", "0")):
        (tmp_path / name).mkdir()
        (tmp_path / name / "removable").write_text(flag + "\n")
    partitions = [partition("/dev/sda1", "/"), partition("/dev/sdb1", "/media/usb"), partition("/dev/nvme0n1p2", "/data")]
    monkeypatch.setattr(psutil, "disk_partitions", lambda all=False: partitions)
    assert [d.mountpoint for d in local_hard_drives(tmp_path)] == ["/", "/data"]


def test_enumeration_failure(monkeypatch):
    def fail(all=False):
        raise OSError("no mtab")

    monkeypatch.setattr(psutil, "disk_partitions", fail)
    assert local_hard_drives() == []


def test_free_space(monkeypatch):
    monkeypatch.setattr(psutil, "disk_usage", lambda path: SimpleNamespace(free=300 * disks.MEBIBYTE + 5))
    assert free_space_mb("/") == 300


def test_free_space_of_real_root():
    assert free_space_mb("/") >= 0
