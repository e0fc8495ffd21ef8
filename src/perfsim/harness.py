"""The inbound facade wiring every component around one shared store."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel

from perfsim.config import Settings, StorageBackend
from perfsim.deferred import DeferredActions
from perfsim.effectors import (
    CpuStressEffector,
    CrashEffector,
    CrashTracker,
    Effector,
    MemoryPressureEffector,
    RequestBlockingEffector,
    SlowRequestEffector,
)
from perfsim.events import EventLog
from perfsim.loadtest import LoadGenerator
from perfsim.metrics import MetricsCollector
from perfsim.models import (
    CrashMode,
    EventsPage,
    LoadTestResult,
    MetricsSnapshot,
    MultiCrashResult,
    ProbeResult,
    Simulation,
    SimulationType,
)
from perfsim.probe import ProbeAggregator
from perfsim.processes import ProcessController
from perfsim.storage import FileStateStore, MemoryStateStore, StateStore
from perfsim.tracker import SimulationTracker

logger = logging.getLogger(__name__)

_CRASH_MODES: dict[SimulationType, CrashMode] = {mode.simulation_type: mode for mode in CrashMode}


class PerfSim:
    """Create, stop, list and probe simulations.

    One instance serves one logical request (or one CLI invocation); all
    state that must outlive it lives in the injected :class:`StateStore`.

    Example::

        sim = PerfSim(MemoryStateStore())
        blocking = sim.create(SimulationType.request_blocking, {"duration_seconds": 3})
        sim.probe().work_done   # {"REQUEST_BLOCKING": {...}}
    """

    def __init__(
        self,
        store: StateStore,
        settings: Settings | None = None,
        process_controller: ProcessController | None = None,
        crash_actions: Mapping[CrashMode, Callable[[], None]] | None = None,
        cores: int | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or Settings()
        self.events = EventLog(store, self.settings.event_log_max_entries)
        self.tracker = SimulationTracker(
            store, self.events, self.settings.simulation_history_limit
        )
        self.crash_tracker = CrashTracker(store)
        self.deferred = DeferredActions()

        common = (store, self.tracker, self.events, self.settings)
        self.cpu = CpuStressEffector(*common, controller=process_controller, cores=cores)
        self.memory = MemoryPressureEffector(*common)
        self.blocking = RequestBlockingEffector(*common)
        self.slow = SlowRequestEffector(*common)
        self.crash = CrashEffector(*common, crash_tracker=self.crash_tracker, actions=crash_actions)
        self.loadtest = LoadGenerator(store, self.events, self.settings)

        self._effectors: dict[SimulationType, Effector] = {
            SimulationType.cpu_stress: self.cpu,
            SimulationType.memory_pressure: self.memory,
            SimulationType.request_blocking: self.blocking,
            SimulationType.slow_request: self.slow,
        }
        for simulation_type, effector in self._effectors.items():
            self.tracker.register_cleanup(simulation_type, effector.cleanup)

        # Probe order: blocking first so its tax lands before memory loading.
        self.aggregator = ProbeAggregator(
            [self.blocking, self.memory, self.cpu, self.slow],
            self.loadtest,
            self.crash_tracker,
        )
        self.metrics = MetricsCollector(store, self.tracker, self.loadtest, cores=self.cpu.cores)

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> PerfSim:
        """Build a harness on the backend *settings* selects (default: from the environment)."""
        settings = settings or Settings.from_env()
        store: StateStore
        if settings.storage_backend == StorageBackend.file:
            store = FileStateStore(
                settings.storage_path, lock_timeout=settings.storage_lock_timeout_seconds
            )
        else:
            store = MemoryStateStore()
        return cls(store, settings, **kwargs)

    def effector_for(self, simulation_type: SimulationType | str) -> Effector:
        simulation_type = SimulationType(simulation_type)
        if simulation_type.is_crash:
            return self.crash
        return self._effectors[simulation_type]

    # ------------------------------------------------------------------
    # Trigger calls
    # ------------------------------------------------------------------

    def create(
        self,
        simulation_type: SimulationType | str,
        params: BaseModel | dict[str, Any] | None = None,
    ) -> Simulation:
        """Start a simulation of *simulation_type*.

        Crash types queue their action on :attr:`deferred`; the caller must
        run it once the response has gone out.

        Raises:
            SimulationValidationError: if *params* are invalid.
        """
        simulation_type = SimulationType(simulation_type)
        if simulation_type.is_crash:
            return self.crash.trigger(_CRASH_MODES[simulation_type], self.deferred)
        return self._effectors[simulation_type].start(params or {})

    def stop(self, simulation_id: str) -> Simulation | None:
        """Stop a simulation.  Returns ``None`` if it is unknown or already terminal."""
        simulation = self.tracker.get_simulation(simulation_id)
        if simulation is None:
            return None
        return self.effector_for(simulation.type).stop(simulation_id)

    def require(self, simulation_id: str) -> Simulation:
        return self.tracker.require_simulation(simulation_id)

    def list(self, simulation_type: SimulationType | str | None = None) -> list[Simulation]:
        """Active simulations, expiring anything due first."""
        active = self.tracker.get_active_simulations()
        if simulation_type is None:
            return active
        simulation_type = SimulationType(simulation_type)
        return [s for s in active if s.type == simulation_type]

    def crash_workers(self, count: int, mode: CrashMode | str = CrashMode.failfast) -> MultiCrashResult:
        return self.crash.crash_workers(count, mode)

    def load_test(self, params: BaseModel | dict[str, Any] | None = None) -> LoadTestResult:
        return self.loadtest.execute_work(params)

    # ------------------------------------------------------------------
    # Probe and admin calls
    # ------------------------------------------------------------------

    def probe(self) -> ProbeResult:
        return self.aggregator.probe()

    def get_metrics(self) -> MetricsSnapshot:
        """System metrics for a dashboard poll; also rolls load-test stats over."""
        return self.metrics.collect()

    def get_recent_events(self, limit: int = 50) -> EventsPage:
        events = self.events.get_recent_entries(limit)
        return EventsPage(events=events, count=len(events), sequence=self.events.get_sequence())

    def stop_all(self) -> list[Simulation]:
        """Stop every active simulation and release every side effect."""
        stopped = self.cpu.stop_all()
        stopped.extend(r.simulation for r in self.memory.release_all() if r.simulation)
        for simulation in self.tracker.get_active_simulations():
            result = self.stop(simulation.id)
            if result is not None:
                stopped.append(result)
        return stopped


__all__ = ["PerfSim"]
