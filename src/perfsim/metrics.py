"""Point-in-time system metrics for dashboard polls.

Nothing is sampled in the background.  Each poll reads load averages,
memory and process figures through psutil, counts active blocking windows
from the tracker's fast path, and asks the load generator for its stats,
which also rolls the load-test period over when it is due.
"""

from __future__ import annotations

import platform
import time

import psutil

from perfsim.core import from_timestamp
from perfsim.loadtest import LoadGenerator
from perfsim.models import (
    BlockingMetrics,
    CpuMetrics,
    MemoryMetrics,
    MetricsSnapshot,
    ProcessMetrics,
    SimulationType,
)
from perfsim.storage import StateStore
from perfsim.tracker import SimulationTracker

MB = 1024 * 1024


def estimate_cpu_usage(load_1m: float, cores: int) -> float:
    """1-minute load average as a percentage of *cores*, capped at 100."""
    if cores <= 0:
        return 0.0
    return min(100.0, load_1m / cores * 100)


class MetricsCollector:
    """Build a :class:`MetricsSnapshot` on demand."""

    def __init__(
        self,
        store: StateStore,
        tracker: SimulationTracker,
        load_generator: LoadGenerator,
        cores: int | None = None,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._load = load_generator
        self._cores = cores or psutil.cpu_count(logical=True) or 1
        self._process = psutil.Process()

    def cpu(self) -> CpuMetrics:
        load_1m, load_5m, load_15m = psutil.getloadavg()
        return CpuMetrics(
            usage_percent=round(estimate_cpu_usage(load_1m, self._cores), 2),
            load_avg_1m=round(load_1m, 2),
            load_avg_5m=round(load_5m, 2),
            load_avg_15m=round(load_15m, 2),
            cpu_count=self._cores,
        )

    def memory(self) -> MemoryMetrics:
        info = self._process.memory_info()
        system = psutil.virtual_memory()
        return MemoryMetrics(
            process_rss_mb=round(info.rss / MB, 2),
            process_vms_mb=round(info.vms / MB, 2),
            system_total_mb=round(system.total / MB, 2),
            system_available_mb=round(system.available / MB, 2),
            system_used_percent=system.percent,
            store_entries=len(self._store.keys()),
        )

    def process(self) -> ProcessMetrics:
        return ProcessMetrics(
            pid=self._process.pid,
            python_version=platform.python_version(),
            uptime_seconds=round(time.time() - self._process.create_time(), 2),
            threads=self._process.num_threads(),
        )

    def blocking(self) -> BlockingMetrics:
        active = self._tracker.get_active_simulations_by_type(SimulationType.request_blocking)
        return BlockingMetrics(active_blocking_simulations=len(active))

    def collect(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            timestamp=from_timestamp(self._store.now()),
            cpu=self.cpu(),
            memory=self.memory(),
            process=self.process(),
            request_blocking=self.blocking(),
            load_test=self._load.get_current_stats(),
        )


__all__ = ["MetricsCollector", "estimate_cpu_usage"]
