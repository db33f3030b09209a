"""Periodic sampling of the process and host history."""

import time

import structlog

from webmon import runtime
from webmon.config import HISTORY_PROBLEMS, HISTORY_VMSTAT, Config, SamplerConfig
from webmon.fifo import FixedSizeFIFO
from webmon.hostos.cpu import (
    CPUUsageMeasurer,
    CpuUsageMeasureStrategy,
    new_host_cpu,
    new_host_io_cpu,
    new_process_cpu,
)
from webmon.hostos.memory import MemoryInfoProvider
from webmon.models import HUNDRED_PERCENT, CPUUsage, MemoryPools, Sample, SampleBuilder
from webmon.notification import NotificationDelivery
from webmon.problems import ProblemAnalyzer, ProblemReport, is_problem, reports_equal
from webmon.service import BackgroundService
from webmon.threads import LockRegistry, take_snapshot

logger = structlog.get_logger()


class GcCpuUsageStrategy(CpuUsageMeasureStrategy):
    """Share of the wall time spent in garbage collection, over all gc generations."""

    def __init__(self, monitor: runtime.GcMonitor | None = None) -> None:
        self.monitor = monitor or runtime.gc_monitor()

    def measure(self) -> tuple[int, int]:
        return self.monitor.total_collection_time_ms(), time.monotonic_ns() // 1_000_000

    def get_avg_cpu_usage(self, m1: tuple[int, int], m2: tuple[int, int]) -> CPUUsage:
        gc_delta = m2[0] - m1[0]
        wall_delta = m2[1] - m1[1]
        if wall_delta <= 0:
            return CPUUsage.ZERO
        if gc_delta < 0:
            raise ValueError(f"Parameter m1: invalid value {m1}: does not precede {m2}")
        return CPUUsage.of(gc_delta * HUNDRED_PERCENT // wall_delta)


def _single(usage: CPUUsage | None) -> int:
    return 0 if usage is None else usage.avg_usage


class HistorySampler(BackgroundService):
    """
    Samples the process and host history. Call start() to begin sampling
    and stop() to end it. Thread-safe.

    Two tasks share the scheduler thread: the vmstat task appends one
    Sample per tick, the problem task runs the analyzer over the vmstat
    history and keeps the report set only when it differs from the last
    kept one.
    """

    def __init__(
        self,
        meminfo: MemoryInfoProvider,
        analyzer: ProblemAnalyzer | None = None,
        notificator: NotificationDelivery | None = None,
        vmstat_config: SamplerConfig = HISTORY_VMSTAT,
        problem_config: SamplerConfig = HISTORY_PROBLEMS,
        registry: LockRegistry | None = None,
    ) -> None:
        """
        Args:
            meminfo: host memory provider.
            analyzer: the analyzer; None disables the problem task.
            notificator: receives every newly kept report set; None if not needed.
            vmstat_config: the vmstat task timing and history length.
            problem_config: the problem task timing and history length.
            registry: lock registry consulted by the thread snapshots.
        """
        super().__init__("Sampler")
        self.meminfo = meminfo
        self.analyzer = analyzer
        self.notificator = notificator
        self.vmstat_config = vmstat_config
        self.problem_config = problem_config
        self.registry = registry
        if analyzer is not None:
            # run durations are measured in vmstat ticks
            analyzer.vmstat_config = vmstat_config
        self._vmstat_history: FixedSizeFIFO[Sample] = FixedSizeFIFO(vmstat_config.history_length)
        self._problem_history: FixedSizeFIFO[list[ProblemReport]] = FixedSizeFIFO(problem_config.history_length)
        self._cpu_os = new_host_cpu()
        self._cpu_process = new_process_cpu()
        self._cpu_io = new_host_io_cpu()
        self._cpu_gc = CPUUsageMeasurer(GcCpuUsageStrategy())

    def config_changed(self, config: Config) -> None:
        """Hand the new config to the analyzer and the notificator; the next tick uses it."""
        if self.analyzer is not None:
            self.analyzer.config_changed(config)
        if self.notificator is not None:
            self.notificator.config_changed(config)

    def started(self) -> None:
        if self.notificator is not None:
            self.notificator.start()
        self.schedule_with_fixed_delay(
            self.sample_vmstat, self.vmstat_config.initial_delay_ms, self.vmstat_config.sample_interval_ms
        )
        if self.analyzer is not None:
            self.schedule_with_fixed_delay(
                self.sample_problems, self.problem_config.initial_delay_ms, self.problem_config.sample_interval_ms
            )

    def stopped(self) -> None:
        if self.notificator is not None:
            self.notificator.stop()

    def get_vmstat_history(self) -> list[Sample]:
        """Snapshot of the samples, oldest first."""
        return self._vmstat_history.to_list()

    def get_problem_history(self) -> list[list[ProblemReport]]:
        """Snapshot of the kept report sets, oldest first."""
        return self._problem_history.to_list()

    def take_sample(self) -> Sample:
        """Measure everything once."""
        builder = SampleBuilder()
        builder.gc_cpu_usage(_single(self._cpu_gc.get_cpu_usage()))
        builder.cpu_usage(self._cpu_os.get_cpu_usage())
        builder.cpu_process_usage(_single(self._cpu_process.get_cpu_usage()))
        builder.cpu_io_usage(_single(self._cpu_io.get_cpu_usage()))
        builder.memory(MemoryPools.HEAP, runtime.process_memory())
        builder.memory(MemoryPools.NON_HEAP, runtime.traced_memory())
        builder.memory(MemoryPools.PHYSICAL, self.meminfo.get_physical_memory())
        builder.memory(MemoryPools.SWAP, self.meminfo.get_swap())
        builder.threads(take_snapshot(self.registry))
        builder.modules_loaded(runtime.modules_loaded())
        builder.sample_time(time.time_ns() // 1_000_000)
        return builder.build()

    def sample_vmstat(self) -> None:
        self._vmstat_history.add(self.take_sample())

    def sample_problems(self) -> None:
        if self.analyzer is None:
            return
        current = self.analyzer.get_problems(self._vmstat_history.to_list())
        last = self._problem_history.get_newest()
        if last is None:
            if not is_problem(current):
                return
        elif reports_equal(last, current):
            return
        self._problem_history.add(current)
        logger.info("Problem reports changed", problems=[r.problem_class for r in current if r.is_problem])
        if self.notificator is not None:
            self.notificator.deliver_async(current)
