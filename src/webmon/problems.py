"""Problem reports and the analyzer which produces them."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

import structlog

from webmon import runtime
from webmon.config import HISTORY_VMSTAT, Config, SamplerConfig
from webmon.hostos import disks
from webmon.hostos.memory import MemoryInfoProvider
from webmon.models import HUNDRED_PERCENT, MemoryUsage, Sample, format_usage_percent
from webmon.threads import LockRegistry, dump_thread, find_deadlocked_threads, thread_metadata, thread_stacktrace

logger = structlog.get_logger()

CLASS_DEADLOCKED_THREADS = "Deadlocked threads"
CLASS_GC_CPU_USAGE = "GC CPU Usage"
CLASS_CPU_USAGE = "CPU Usage"
CLASS_MEMORY_USAGE = "Memory usage"
CLASS_GC_MEMORY_CLEANUP = "GC Memory cleanup"
CLASS_FREE_DISK_SPACE = "Free disk space"
CLASS_HOST_MEMORY_USAGE = "Host Virtual Mem"

DEADLOCKED_THREADS_DESC = (
    "Triggered when there are some deadlocked threads. Finds cycles of threads that are in deadlock "
    "waiting to acquire tracked locks (both reentrant and plain ones)."
)

NO_DATA = "No data yet"

LIGHT_RED = "#d24343"
DARK_GREEN = "#28cb17"


def _now_millis() -> int:
    return time.time_ns() // 1_000_000


@dataclass(slots=True, frozen=True)
class ProblemReport:
    """
    The outcome of one diagnostic rule.

    Two reports are equal when they have the same class, flag and diagnosis;
    the description and the creation time do not take part.
    """

    problem_class: str
    is_problem: bool
    diagnosis: str
    description: str = field(default="", compare=False)
    created: int = field(default_factory=_now_millis, compare=False)  # milliseconds since the epoch

    def __str__(self) -> str:
        return f"{'WARN' if self.is_problem else 'OK  '}: {self.problem_class}: {self.diagnosis}"


def is_problem(reports: Iterable[ProblemReport]) -> bool:
    """True if at least one report flags a problem."""
    return any(report.is_problem for report in reports)


def _flagged(reports: Iterable[ProblemReport]) -> dict[str, str]:
    return {report.problem_class: report.diagnosis for report in reports if report.is_problem}


def reports_equal(reports1: Iterable[ProblemReport], reports2: Iterable[ProblemReport]) -> bool:
    """
    Compare two report sets by their problems only.

    The sets are equal when the same problem classes are flagged and each
    flagged class carries the same diagnosis. Reports which flag nothing
    are ignored.
    """
    return _flagged(reports1) == _flagged(reports2)


def format_reports(reports: Iterable[ProblemReport], separator: str = "\n") -> str:
    return separator.join(str(report) for report in reports)


def escape(text: str) -> str:
    """Escape the HTML special characters &, < and >."""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def reports_to_html(reports: Iterable[ProblemReport]) -> str:
    """Render the reports as an HTML table."""
    rows = ['<table border="1"><thead><tr><th>Problem type</th><th>Status</th><th>Diagnosis</th></tr></thead>']
    for report in reports:
        color = LIGHT_RED if report.is_problem else DARK_GREEN
        status = "WARN" if report.is_problem else "OK"
        rows.append(
            f'<tr><td>{escape(report.problem_class)}</td><td bgcolor="{color}">{status}</td>'
            f"<td><pre>{escape(report.diagnosis)}</pre></td></tr>"
        )
    rows.append("</table>")
    return "\n".join(rows)


def _format_seconds(seconds: float) -> str:
    return f"{seconds:g}"


@dataclass(slots=True, frozen=True)
class RunStats:
    """Statistics of one metric over the sample window."""

    history_length_seconds: float
    avg: int
    run_length: int  # length of the longest run at or above the threshold, 0 if shorter than required
    run_avg: int
    run_seconds: float

    @property
    def triggered(self) -> bool:
        return self.run_length > 0


def run_stats(
    values: Sequence[int], threshold: int, threshold_samples: int, interval_seconds: float
) -> RunStats:
    """
    Find the longest run of consecutive values at or above the threshold.

    The whole window is scanned oldest to newest and the best run seen
    anywhere is kept, so an incident is still reported after the metric
    went down again. Of two equally long runs the older one wins. The run
    counts only when it is at least threshold_samples long.
    """
    if not values:
        return RunStats(0, 0, 0, 0, 0)
    best_length = best_sum = 0
    length = total = 0
    for value in values:
        if value >= threshold:
            length += 1
            total += value
            if length > best_length:
                best_length, best_sum = length, total
        else:
            length = total = 0
    if best_length < threshold_samples:
        best_length = best_sum = 0
    return RunStats(
        history_length_seconds=len(values) * interval_seconds,
        avg=sum(values) // len(values),
        run_length=best_length,
        run_avg=best_sum // best_length if best_length else 0,
        run_seconds=best_length * interval_seconds,
    )


class ProblemAnalyzer:
    """
    Evaluates the diagnostic rules against a window of samples.

    The collaborators default to the live runtime and host; tests inject
    their own. The analyzer itself keeps no state besides the config
    reference, replaced as a whole by config_changed().
    """

    def __init__(
        self,
        config: Config,
        meminfo: MemoryInfoProvider,
        vmstat_config: SamplerConfig = HISTORY_VMSTAT,
        memory_pools: Callable[[], list[runtime.MemoryPool]] = runtime.memory_pools,
        process_memory: Callable[[], MemoryUsage | None] = runtime.process_memory,
        drives: Callable[[], list[disks.Drive]] = disks.local_hard_drives,
        free_space_mb: Callable[[str], int] = disks.free_space_mb,
        registry: LockRegistry | None = None,
    ) -> None:
        self._config = config
        self.meminfo = meminfo
        self.vmstat_config = vmstat_config
        self.memory_pools = memory_pools
        self.process_memory = process_memory
        self.drives = drives
        self.free_space_mb = free_space_mb
        self.registry = registry

    @property
    def config(self) -> Config:
        return self._config

    def config_changed(self, config: Config) -> None:
        """Use the given config from the next get_problems() call on."""
        self._config = config

    def get_problems(self, history: Sequence[Sample]) -> list[ProblemReport]:
        """
        Diagnose the process and the host.

        Returns:
            one report per problem class, always in the same order.
        """
        cfg = self._config
        return [
            self._guarded(CLASS_DEADLOCKED_THREADS, DEADLOCKED_THREADS_DESC, self.deadlock_report),
            self._guarded(CLASS_GC_CPU_USAGE, self._gc_cpu_usage_desc(cfg), self.gc_cpu_usage_report, cfg, history),
            self._guarded(CLASS_CPU_USAGE, self._cpu_usage_desc(cfg), self.cpu_usage_report, cfg, history),
            self._guarded(CLASS_MEMORY_USAGE, self._mem_usage_desc(cfg), self.mem_usage_report, cfg),
            self._guarded(CLASS_GC_MEMORY_CLEANUP, self._gc_memory_cleanup_desc(cfg), self.gc_mem_usage_report, cfg),
            self._guarded(CLASS_FREE_DISK_SPACE, self._free_disk_space_desc(cfg), self.free_disk_space_report, cfg),
            self._guarded(CLASS_HOST_MEMORY_USAGE, self._host_memory_usage_desc(cfg), self.host_virt_mem_report, cfg),
        ]

    @staticmethod
    def _guarded(problem_class: str, description: str, rule: Callable[..., ProblemReport], *args) -> ProblemReport:
        try:
            return rule(*args)
        except Exception as ex:
            logger.error("Failed to evaluate a problem rule", problem_class=problem_class, exc_info=True)
            return ProblemReport(problem_class, False, f"Failed to evaluate: {ex}", description)

    def _threshold_seconds(self, samples: int) -> str:
        return _format_seconds(samples * self.vmstat_config.sample_interval_seconds)

    def _gc_cpu_usage_desc(self, cfg: Config) -> str:
        return (
            f"Triggered when GC uses {cfg.gc_cpu_threshold}% or more of CPU continuously for "
            f"{self._threshold_seconds(cfg.gc_cpu_threshold_samples)} seconds"
        )

    def _cpu_usage_desc(self, cfg: Config) -> str:
        return (
            f"Triggered when a CPU core is used for {cfg.cpu_threshold}% or more, continuously for "
            f"{self._threshold_seconds(cfg.cpu_threshold_samples)} seconds"
        )

    @staticmethod
    def _mem_usage_desc(cfg: Config) -> str:
        return f"Triggered: never. Reports memory pools which are at least {cfg.mem_usage_threshold}% full"

    @staticmethod
    def _gc_memory_cleanup_desc(cfg: Config) -> str:
        return (
            f"Triggered when GC cannot make available more than "
            f"{HUNDRED_PERCENT - cfg.mem_after_gc_usage_threshold}% of memory"
        )

    @staticmethod
    def _free_disk_space_desc(cfg: Config) -> str:
        return f"Triggered when there is less than {cfg.min_free_disk_space_mb}Mb of free space on some drive"

    @staticmethod
    def _host_memory_usage_desc(cfg: Config) -> str:
        return f"Triggered when host uses {cfg.host_virt_mem_threshold}% or more virtual memory"

    def _stats(self, history: Sequence[Sample], metric: Callable[[Sample], int], threshold: int, samples: int) -> RunStats:
        return run_stats(
            [metric(sample) for sample in history], threshold, samples, self.vmstat_config.sample_interval_seconds
        )

    def gc_cpu_usage_report(self, cfg: Config, history: Sequence[Sample]) -> ProblemReport:
        desc = self._gc_cpu_usage_desc(cfg)
        if not history:
            return ProblemReport(CLASS_GC_CPU_USAGE, False, NO_DATA, desc)
        stats = self._stats(history, lambda s: s.gc_cpu_usage, cfg.gc_cpu_threshold, cfg.gc_cpu_threshold_samples)
        if stats.triggered:
            return ProblemReport(
                CLASS_GC_CPU_USAGE,
                True,
                f"GC spent more than {cfg.gc_cpu_threshold}% (avg. {stats.run_avg}%) of CPU for "
                f"{_format_seconds(stats.run_seconds)} seconds",
                desc,
            )
        return ProblemReport(
            CLASS_GC_CPU_USAGE,
            False,
            f"Avg. GC CPU usage last {_format_seconds(stats.history_length_seconds)} seconds: {stats.avg}%",
            desc,
        )

    def cpu_usage_report(self, cfg: Config, history: Sequence[Sample]) -> ProblemReport:
        desc = self._cpu_usage_desc(cfg)
        if not history:
            return ProblemReport(CLASS_CPU_USAGE, False, NO_DATA, desc)
        stats = self._stats(history, lambda s: s.cpu_usage.max_core_usage, cfg.cpu_threshold, cfg.cpu_threshold_samples)
        if stats.triggered:
            return ProblemReport(
                CLASS_CPU_USAGE,
                True,
                f"A CPU core spent more than {cfg.cpu_threshold}% (avg. {stats.run_avg}%) of CPU for "
                f"{_format_seconds(stats.run_seconds)} seconds",
                desc,
            )
        return ProblemReport(
            CLASS_CPU_USAGE,
            False,
            f"Avg. max CPU core usage last {_format_seconds(stats.history_length_seconds)} seconds: {stats.avg}%",
            desc,
        )

    def mem_usage_report(self, cfg: Config) -> ProblemReport:
        desc = self._mem_usage_desc(cfg)
        pools = self.memory_pools()
        if not pools:
            return ProblemReport(CLASS_MEMORY_USAGE, False, "INFO: No memory pool information", desc)
        lines = []
        for pool in pools:
            usage = pool.usage
            if usage is None or not pool.thresholds_supported or usage.max <= 0:
                continue
            used = usage.used * HUNDRED_PERCENT // usage.max
            if used >= cfg.mem_usage_threshold:
                lines.append(f"INFO: Pool [{pool.name}] is now {used}% full")
        if not lines:
            return ProblemReport(
                CLASS_MEMORY_USAGE, False, f"Process memory usage: {format_usage_percent(self.process_memory())}", desc
            )
        lines.append("")
        lines.append(
            "Try performing a GC: this should decrease the memory usage. "
            "If not, you may need to increase the memory or check for memory leaks"
        )
        return ProblemReport(CLASS_MEMORY_USAGE, False, "\n".join(lines), desc)

    def gc_mem_usage_report(self, cfg: Config) -> ProblemReport:
        desc = self._gc_memory_cleanup_desc(cfg)
        pools = self.memory_pools()
        if not pools:
            return ProblemReport(CLASS_GC_MEMORY_CLEANUP, False, "INFO: No memory pool information", desc)
        lines = []
        for pool in pools:
            usage = pool.collection_usage
            if usage is None or not pool.thresholds_supported or usage.max <= 0:
                continue
            used = usage.used * HUNDRED_PERCENT // usage.max
            if used >= cfg.mem_after_gc_usage_threshold:
                lines.append(f"Pool [{pool.name}] is {used}% full after GC")
        if not lines:
            return ProblemReport(CLASS_GC_MEMORY_CLEANUP, False, "OK", desc)
        lines.append("")
        lines.append("You may need to increase the memory or check for memory leaks")
        return ProblemReport(CLASS_GC_MEMORY_CLEANUP, True, "\n".join(lines), desc)

    def free_disk_space_report(self, cfg: Config) -> ProblemReport:
        lines = []
        problem = False
        for drive in self.drives():
            try:
                free = self.free_space_mb(drive.mountpoint)
            except Exception as ex:
                logger.info("Failed to get free space", mountpoint=drive.mountpoint, exc_info=True)
                lines.append(f"Failed to get free space on {drive.mountpoint}: {ex!r}")
                continue
            prefix = ""
            if free < cfg.min_free_disk_space_mb:
                problem = True
                prefix = "Low disk space: "
            lines.append(f"{prefix}{drive.mountpoint}  {free}mB free")
        diagnosis = "\n".join(lines).strip() or "OK"
        return ProblemReport(CLASS_FREE_DISK_SPACE, problem, diagnosis, self._free_disk_space_desc(cfg))

    def host_virt_mem_report(self, cfg: Config) -> ProblemReport:
        desc = self._host_memory_usage_desc(cfg)
        phys = self.meminfo.get_physical_memory()
        if phys is None or phys.max <= 0:
            return ProblemReport(CLASS_HOST_MEMORY_USAGE, False, "Host memory reporting unsupported on this platform", desc)
        lines = []
        # used == committed means the platform does not account buffers/cache
        cache_accounted = phys.committed != phys.used
        if not cache_accounted:
            lines.append("buffers/cache detection not supported, disabled")
        lines.append(
            f"Physical memory used: {phys.committed * HUNDRED_PERCENT // phys.max}%, "
            f"minus buffers/cache: {phys.used * HUNDRED_PERCENT // phys.max}%"
        )
        swap = self.meminfo.get_swap()
        lines.append(f"Swap used: {format_usage_percent(swap)}")
        total = phys.max
        used = phys.used
        if swap is not None and swap.max > 0:
            total += swap.max
            used += swap.used
        used_percent = used * HUNDRED_PERCENT // total
        lines.append(f"Total virtual memory usage: {used_percent}%")
        problem = cache_accounted and used_percent >= cfg.host_virt_mem_threshold
        return ProblemReport(CLASS_HOST_MEMORY_USAGE, problem, "\n".join(lines), desc)

    def deadlock_report(self) -> ProblemReport:
        deadlocked = find_deadlocked_threads(self.registry)
        if not deadlocked:
            return ProblemReport(CLASS_DEADLOCKED_THREADS, False, "None", DEADLOCKED_THREADS_DESC)
        parts = []
        for thread_id in deadlocked:
            info = dump_thread(thread_id, self.registry)
            if info is None:
                parts.append(f"Locked thread: 0x{thread_id:x} is no longer alive\n")
                continue
            parts.append(f"Locked thread: {thread_metadata(info)}\nStacktrace:\n{thread_stacktrace(info)}")
        return ProblemReport(CLASS_DEADLOCKED_THREADS, True, "".join(parts).rstrip(), DEADLOCKED_THREADS_DESC)
