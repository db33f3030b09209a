"""Raw tabular views over the sample history, for renderers."""

from collections.abc import Sequence

from webmon.models import MemoryPools, Sample
from webmon.threads import ABSENT, Absent, ThreadEntry, history_to_table

ROW_HOST_CPU = "Host CPU %"
ROW_MAX_CORE = "Max core CPU %"
ROW_IO = "Host IO wait %"
ROW_PROCESS_CPU = "Process CPU %"
ROW_GC_CPU = "GC CPU %"
ROW_THREADS = "Threads"
ROW_DAEMON_THREADS = "Daemon threads"
ROW_MODULES = "Modules loaded"


def vmstat_columns(history: Sequence[Sample]) -> dict[str, list[int]]:
    """One row per metric, one column per sample, oldest first."""
    return {
        ROW_HOST_CPU: [s.cpu_usage.avg_usage for s in history],
        ROW_MAX_CORE: [s.cpu_usage.max_core_usage for s in history],
        ROW_IO: [s.cpu_io_usage for s in history],
        ROW_PROCESS_CPU: [s.cpu_process_usage for s in history],
        ROW_GC_CPU: [s.gc_cpu_usage for s in history],
        ROW_THREADS: [s.threads.thread_count for s in history],
        ROW_DAEMON_THREADS: [s.threads.daemon_thread_count for s in history],
        ROW_MODULES: [s.modules_loaded for s in history],
    }


def memory_usage_columns(history: Sequence[Sample]) -> dict[str, list[int | None]]:
    """Used percent of each memory pool per sample; None where unavailable or unbounded."""
    columns: dict[str, list[int | None]] = {}
    for pool in MemoryPools:
        row = []
        for sample in history:
            usage = sample.memory(pool)
            row.append(None if usage is None else usage.usage_percent())
        columns[pool.displayable] = row
    return columns


def thread_label(entry: ThreadEntry) -> str:
    return f"0x{entry.item.thread_id:x} {entry.item.info.name}"


def thread_cpu_table(history: Sequence[Sample]) -> dict[str, list[int | None | Absent]]:
    """
    Per-thread CPU usage, one column per sample, ordered by thread id.

    A cell holds the CPU percent, None when unknown (first appearance or no
    CPU clock) or ABSENT where the thread did not exist. Threads are
    labelled with the name they had in their last sample.
    """
    table: dict[str, list[int | None | Absent]] = {}
    for cells in history_to_table(history).values():
        entries = [cell for cell in cells if isinstance(cell, ThreadEntry)]
        label = thread_label(entries[-1])
        table[label] = [ABSENT if isinstance(cell, Absent) else cell.cpu_usage_percent for cell in cells]
    return table
