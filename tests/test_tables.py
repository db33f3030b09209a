"""Tests for the tabular history views."""

from webmon.models import MEBIBYTE, MemoryPools, MemoryUsage
from webmon.tables import (
    ROW_DAEMON_THREADS,
    ROW_GC_CPU,
    ROW_HOST_CPU,
    ROW_IO,
    ROW_MAX_CORE,
    ROW_MODULES,
    ROW_PROCESS_CPU,
    ROW_THREADS,
    memory_usage_columns,
    thread_cpu_table,
    vmstat_columns,
)
from webmon.threads import ABSENT


def test_vmstat_columns(make_sample):
    history = [
        make_sample(sample_time=1, gc_cpu=5, cpu=20, max_core=70, io=3, process_cpu=8, threads=[(1, 0, "a")], modules=40),
        make_sample(sample_time=2, gc_cpu=6, cpu=30, max_core=90, io=4, process_cpu=9, modules=41),
    ]
    columns = vmstat_columns(history)
    assert columns[ROW_HOST_CPU] == [20, 30]
    assert columns[ROW_MAX_CORE] == [70, 90]
    assert columns[ROW_IO] == [3, 4]
    assert columns[ROW_PROCESS_CPU] == [8, 9]
    assert columns[ROW_GC_CPU] == [5, 6]
    assert columns[ROW_THREADS] == [1, 0]
    assert columns[ROW_DAEMON_THREADS] == [0, 0]
    assert columns[ROW_MODULES] == [40, 41]


def test_memory_usage_columns(make_sample):
    """Test unbounded and missing pools show as None."""
    history = [
        make_sample(
            sample_time=1,
            memory={
                MemoryPools.HEAP: MemoryUsage(-1, 25 * MEBIBYTE, 25 * MEBIBYTE, 100 * MEBIBYTE),
                MemoryPools.NON_HEAP: MemoryUsage(-1, 5 * MEBIBYTE, 5 * MEBIBYTE, -1),
            },
        )
    ]
    columns = memory_usage_columns(history)
    assert columns["Process memory"] == [25]
    assert columns["Traced allocations"] == [None]
    assert columns["OS swap"] == [None]


def test_thread_cpu_table_uses_last_name(make_sample):
    history = [
        make_sample(sample_time=1000, threads=[(0x1F, 0, "starting"), (0x20, 0, "gone")]),
        make_sample(sample_time=2000, threads=[(0x1F, 250_000_000, "worker")]),
    ]
    table = thread_cpu_table(history)
    assert table == {"0x1f worker": [None, 25], "0x20 gone": [None, ABSENT]}
