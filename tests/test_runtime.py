"""Tests for the runtime probes."""

import gc
import tracemalloc

import pytest

from webmon import runtime
from webmon.models import MemoryUsage
from webmon.runtime import GcMonitor


@pytest.fixture
def monitor():
    monitor = GcMonitor()
    monitor.install()
    yield monitor
    monitor.uninstall()


class TestGcMonitor:
    """Tests for GC timing through gc.callbacks."""

    def test_counts_collections(self, monitor):
        gc.collect()
        gc.collect(0)
        sources = monitor.sources()
        assert len(sources) == len(gc.get_count())
        assert sources[-1].collection_count >= 1
        assert sources[0].collection_count >= 1
        assert all(source.valid for source in sources)
        assert monitor.total_collection_time_ms() >= 0

    def test_full_collection_records_rss(self, monitor):
        gc.collect()
        assert monitor.rss_after_full_gc > 0

    def test_install_is_idempotent(self, monitor):
        monitor.install()
        assert gc.callbacks.count(monitor._callback) == 1
        monitor.uninstall()
        assert not monitor.installed
        assert monitor._callback not in gc.callbacks
        assert not any(source.valid for source in monitor.sources())

    def test_shared_monitor(self):
        assert runtime.gc_monitor() is runtime.gc_monitor()
        assert runtime.gc_monitor().installed


class TestMemory:
    """Tests for the process memory probes."""

    def test_process_memory(self):
        usage = runtime.process_memory()
        assert usage.used > 0
        assert usage.max == -1 or usage.max >= usage.used

    def test_usage_above_limit_drops_limit(self):
        assert runtime._usage(200, 100) == MemoryUsage(-1, 200, 200, -1)
        assert runtime._usage(50, 100) == MemoryUsage(-1, 50, 50, 100)

    def test_traced_memory(self):
        was_tracing = tracemalloc.is_tracing()
        if was_tracing:
            tracemalloc.stop()
        try:
            assert runtime.traced_memory() is None
            tracemalloc.start()
            data = [bytearray(1024) for _ in range(100)]
            usage = runtime.traced_memory()
            assert usage.used > 0
            assert usage.committed >= usage.used
            assert usage.max == -1
            del data
        finally:
            tracemalloc.stop()
            if was_tracing:
                tracemalloc.start()

    def test_memory_pools(self):
        [pool] = runtime.memory_pools()
        assert pool.name == runtime.PROCESS_POOL_NAME
        assert pool.usage.used > 0
        assert pool.thresholds_supported == (pool.usage.max > 0)

    def test_modules_loaded(self):
        assert runtime.modules_loaded() > 10
