"""Tests for the history sampler."""

import time

import pytest

from webmon.config import Config, SamplerConfig
from webmon.hostos.memory import DummyMemoryStrategy
from webmon.models import CPUUsage, MemoryPools
from webmon.problems import ProblemAnalyzer, ProblemReport
from webmon.sampler import GcCpuUsageStrategy, HistorySampler


class FakeAnalyzer:
    """Returns the queued report sets one by one, repeating the last."""

    def __init__(self, *report_sets):
        self.report_sets = list(report_sets)
        self.configs = []
        self.histories = []

    def get_problems(self, history):
        self.histories.append(history)
        if len(self.report_sets) > 1:
            return self.report_sets.pop(0)
        return self.report_sets[0]

    def config_changed(self, config):
        self.configs.append(config)


class FakeNotificator:
    def __init__(self):
        self.delivered = []
        self.configs = []
        self.running = False

    def deliver_async(self, reports):
        self.delivered.append(list(reports))

    def config_changed(self, config):
        self.configs.append(config)

    def start(self):
        self.running = True

    def stop(self):
        self.running = False


class FakeGcMonitor:
    def __init__(self):
        self.total = 0

    def total_collection_time_ms(self):
        return self.total


OK = [ProblemReport("CPU Usage", False, "fine"), ProblemReport("GC CPU Usage", False, "fine")]
CPU = [ProblemReport("CPU Usage", True, "busy"), ProblemReport("GC CPU Usage", False, "fine")]
CPU_OTHER_TEXT = [ProblemReport("CPU Usage", True, "busy"), ProblemReport("GC CPU Usage", False, "changed")]
GC = [ProblemReport("CPU Usage", True, "busy"), ProblemReport("GC CPU Usage", True, "collecting")]


def make_sampler(analyzer=None, notificator=None, history_length=3, interval_ms=50):
    return HistorySampler(
        DummyMemoryStrategy(),
        analyzer=analyzer,
        notificator=notificator,
        vmstat_config=SamplerConfig(history_length, interval_ms),
        problem_config=SamplerConfig(5, 10_000, 10_000),
    )


class TestVmstat:
    """Tests for the vmstat task."""

    def test_take_sample(self):
        sampler = make_sampler()
        sample = sampler.take_sample()
        assert sample.sample_time > 0
        assert sample.modules_loaded > 0
        assert sample.threads.thread_count >= 1
        assert 0 <= sample.gc_cpu_usage <= 100
        assert sample.memory(MemoryPools.PHYSICAL) is None
        assert sample.memory(MemoryPools.SWAP) is None

    def test_history_is_bounded(self):
        """Test the history holds the newest samples only, oldest first."""
        sampler = make_sampler(history_length=3, interval_ms=50)
        sampler.start()
        try:
            time.sleep(0.35)
            first = sampler.get_vmstat_history()
            assert len(first) == 3
            times = [s.sample_time for s in first]
            assert times == sorted(times)
            assert len(set(times)) == 3
            time.sleep(0.2)
            second = sampler.get_vmstat_history()
            assert len(second) == 3
            assert second[0].sample_time > first[0].sample_time
        finally:
            sampler.stop()

    def test_stop_halts_sampling(self):
        sampler = make_sampler(history_length=100, interval_ms=20)
        sampler.start()
        time.sleep(0.1)
        sampler.stop()
        sampler.join(1)
        count = len(sampler.get_vmstat_history())
        time.sleep(0.1)
        assert len(sampler.get_vmstat_history()) == count


class TestProblems:
    """Tests for the problem task."""

    def test_nothing_kept_until_first_problem(self):
        analyzer = FakeAnalyzer(OK)
        notificator = FakeNotificator()
        sampler = make_sampler(analyzer, notificator)
        sampler.sample_problems()
        sampler.sample_problems()
        assert sampler.get_problem_history() == []
        assert notificator.delivered == []

    def test_notified_once_per_change(self):
        """Test an unchanged set is neither kept nor delivered again."""
        analyzer = FakeAnalyzer(OK, CPU, CPU, CPU_OTHER_TEXT, GC, GC, OK)
        notificator = FakeNotificator()
        sampler = make_sampler(analyzer, notificator)
        for _ in range(8):
            sampler.sample_problems()
        assert sampler.get_problem_history() == [CPU, GC, OK]
        assert notificator.delivered == [CPU, GC, OK]

    def test_analyzer_sees_vmstat_history(self):
        analyzer = FakeAnalyzer(OK)
        sampler = make_sampler(analyzer)
        sampler.sample_vmstat()
        sampler.sample_vmstat()
        sampler.sample_problems()
        assert len(analyzer.histories[0]) == 2

    def test_config_changed_propagates(self):
        analyzer = FakeAnalyzer(OK)
        notificator = FakeNotificator()
        sampler = make_sampler(analyzer, notificator)
        config = Config(cpu_threshold=10)
        sampler.config_changed(config)
        assert analyzer.configs == [config]
        assert notificator.configs == [config]

    def test_analyzer_uses_sampler_interval(self, make_sample):
        """Test run durations follow the sampler tick, not the analyzer default."""
        analyzer = ProblemAnalyzer(Config(), DummyMemoryStrategy())
        HistorySampler(DummyMemoryStrategy(), analyzer=analyzer, vmstat_config=SamplerConfig(150, 50))
        assert analyzer.vmstat_config == SamplerConfig(150, 50)
        history = [make_sample(sample_time=i * 50, gc_cpu=60) for i in range(3)]
        report = analyzer.gc_cpu_usage_report(Config(), history)
        assert report.is_problem
        assert report.diagnosis == "GC spent more than 50% (avg. 60%) of CPU for 0.15 seconds"

    def test_notificator_follows_lifecycle(self):
        notificator = FakeNotificator()
        sampler = make_sampler(FakeAnalyzer(OK), notificator)
        sampler.start()
        assert notificator.running
        sampler.stop()
        assert not notificator.running


class TestGcCpuUsageStrategy:
    """Tests for the GC CPU share."""

    def test_share_of_wall_time(self):
        strategy = GcCpuUsageStrategy(FakeGcMonitor())
        assert strategy.get_avg_cpu_usage((100, 1000), (350, 2000)) == CPUUsage(25, 25)

    def test_no_wall_time(self):
        strategy = GcCpuUsageStrategy(FakeGcMonitor())
        assert strategy.get_avg_cpu_usage((100, 1000), (200, 1000)) == CPUUsage.ZERO

    def test_reversed(self):
        strategy = GcCpuUsageStrategy(FakeGcMonitor())
        with pytest.raises(ValueError):
            strategy.get_avg_cpu_usage((200, 1000), (100, 2000))

    def test_measure(self):
        monitor = FakeGcMonitor()
        monitor.total = 42
        gc_ms, wall_ms = GcCpuUsageStrategy(monitor).measure()
        assert gc_ms == 42
        assert wall_ms > 0
