"""Shared builders for webmon tests."""

import pytest

from webmon.models import CPUUsage, MemoryPools, MemoryUsage, Sample, SampleBuilder
from webmon.threads import ThreadInfo, ThreadItem, ThreadSnapshot


def thread_snapshot(taken_at: int, threads=(), daemons: int = 0) -> ThreadSnapshot:
    """Build a snapshot from (thread_id, cpu_nanos, name) or (thread_id, cpu_nanos, name, native_id) tuples."""
    items = []
    for tid, cpu_nanos, name, *native in threads:
        native_id = native[0] if native else None
        items.append(ThreadItem(tid, ThreadInfo(tid, native_id, name, False, "RUNNABLE"), cpu_nanos))
    return ThreadSnapshot(tuple(items), len(items), daemons, taken_at)


def build_sample(
    sample_time: int = 0,
    gc_cpu: int = 0,
    cpu: int = 0,
    max_core: int | None = None,
    io: int = 0,
    process_cpu: int = 0,
    threads=(),
    modules: int = 0,
    memory: dict[MemoryPools, MemoryUsage] | None = None,
) -> Sample:
    builder = (
        SampleBuilder()
        .sample_time(sample_time)
        .gc_cpu_usage(gc_cpu)
        .cpu_usage(CPUUsage(cpu, cpu if max_core is None else max_core))
        .cpu_io_usage(io)
        .cpu_process_usage(process_cpu)
        .threads(thread_snapshot(sample_time, threads))
        .modules_loaded(modules)
    )
    for pool, usage in (memory or {}).items():
        builder.memory(pool, usage)
    return builder.build()


@pytest.fixture
def make_sample():
    """Factory fixture building Samples with sensible defaults."""
    return build_sample


@pytest.fixture
def make_snapshot():
    return thread_snapshot
