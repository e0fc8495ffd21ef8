"""CPU stress: saturate cores with detached hash-burning processes."""

from __future__ import annotations

import logging
import math
import sys
from typing import Any

import psutil
from pydantic import BaseModel

from perfsim.config import Settings
from perfsim.effectors.base import Effector, parse_params
from perfsim.events import EventLog
from perfsim.models import CpuStressParams, Simulation, SimulationType
from perfsim.processes import ProcessController, ProcessRegistry, PsutilProcessController
from perfsim.storage import StateStore
from perfsim.tracker import SimulationTracker

logger = logging.getLogger(__name__)

WORKER_MODULE = "perfsim.cpu_worker"


def cpu_count() -> int:
    return psutil.cpu_count(logical=True) or 1


def calculate_worker_count(target_load_percent: int, cores: int, max_workers: int = 16) -> int:
    """How many burner processes to launch for *target_load_percent* on *cores*.

    Containers are usually CPU-throttled, so one process per core tops out
    well below the target.  Above 75% the count is multiplied by 1.5 and
    above 90% by 2.
    """
    base = math.ceil(cores * target_load_percent / 100)
    if target_load_percent > 90:
        multiplier = 2.0
    elif target_load_percent > 75:
        multiplier = 1.5
    else:
        multiplier = 1.0
    return max(1, min(max_workers, math.ceil(base * multiplier)))


class CpuStressEffector(Effector):
    """Launch ``python -m perfsim.cpu_worker`` processes and track their PIDs.

    The launching request exits long before the workers do, so the PIDs are
    recorded in the shared :class:`ProcessRegistry` where any later request
    (an explicit stop, or lazy expiry on the tracker's slow path) can find
    and terminate them.
    """

    simulation_type = SimulationType.cpu_stress

    def __init__(
        self,
        store: StateStore,
        tracker: SimulationTracker,
        event_log: EventLog,
        settings: Settings,
        controller: ProcessController | None = None,
        cores: int | None = None,
    ) -> None:
        super().__init__(store, tracker, event_log, settings)
        self.controller = controller or PsutilProcessController()
        self.registry = ProcessRegistry(store)
        self.cores = cores or cpu_count()

    def start(self, params: BaseModel | dict[str, Any]) -> Simulation:
        """Validate *params*, register the simulation and launch its workers.

        A launch failure does not raise: the simulation comes back ``FAILED``
        with an error event logged, and any workers that did start are
        terminated.

        Raises:
            SimulationValidationError: if the parameters are out of range.
        """
        cpu = parse_params(CpuStressParams, params)
        self._check_duration(cpu.duration_seconds)
        workers = calculate_worker_count(
            cpu.target_load_percent, self.cores, self._settings.cpu_max_workers
        )

        simulation = self._tracker.create_simulation(
            self.simulation_type,
            cpu.model_dump(exclude_none=True),
            cpu.duration_seconds,
            message=(
                f"CPU stress started: {cpu.target_load_percent}% target, "
                f"{workers} workers, {cpu.duration_seconds}s"
            ),
            details={
                "targetLoadPercent": cpu.target_load_percent,
                "durationSeconds": cpu.duration_seconds,
                "workers": workers,
                "cores": self.cores,
            },
        )

        argv = [sys.executable, "-m", WORKER_MODULE, str(cpu.duration_seconds)]
        pids: list[int] = []
        try:
            for _ in range(workers):
                pids.append(self.controller.spawn(argv))
        except Exception as exc:
            logger.exception("CPU worker launch failed after %d of %d", len(pids), workers)
            if pids:
                self.controller.terminate(pids, self._settings.cpu_kill_grace_seconds)
            failed = self._tracker.fail_simulation(
                simulation.id,
                f"CPU stress failed to launch workers: {exc}",
                {"launched": len(pids), "requested": workers},
            )
            return failed or simulation

        self.registry.record(simulation.id, pids)
        logger.info(
            "Launched %d CPU workers (target=%d%%, cores=%d): PIDs=%s",
            len(pids),
            cpu.target_load_percent,
            self.cores,
            ",".join(str(p) for p in pids),
        )
        return simulation

    def stop(self, simulation_id: str) -> Simulation | None:
        self.kill_workers(simulation_id)
        return self._tracker.stop_simulation(
            simulation_id, "CPU stress simulation stopped by user"
        )

    def cleanup(self, simulation_id: str) -> None:
        self.kill_workers(simulation_id)

    def kill_workers(self, simulation_id: str) -> list[int]:
        pids = self.registry.pids_for(simulation_id)
        killed: list[int] = []
        if pids:
            killed = self.controller.terminate(pids, self._settings.cpu_kill_grace_seconds)
            logger.info(
                "Killed workers for simulation %s: PIDs=%s",
                simulation_id,
                ",".join(str(p) for p in pids),
            )
        self.registry.forget(simulation_id)
        return killed

    def cleanup_orphaned_workers(self) -> list[int]:
        """Kill workers recorded for simulations that are no longer active."""
        recorded = self.registry.all()
        if not recorded:
            return []
        active_ids = {s.id for s in self.get_active_simulations()}
        orphaned = [sim_id for sim_id in recorded if sim_id not in active_ids]
        orphan_pids = [int(pid) for sim_id in orphaned for pid in recorded[sim_id]]
        if orphan_pids:
            self.controller.terminate(orphan_pids, self._settings.cpu_kill_grace_seconds)
            logger.info(
                "Cleaned up orphaned workers: PIDs=%s", ",".join(str(p) for p in orphan_pids)
            )
        if orphaned:
            self.registry.forget(*orphaned)
        return orphan_pids

    def kill_all_workers_by_name(self) -> list[int]:
        """Last resort for lost PID records: kill anything running the worker module."""
        killed = self.controller.kill_matching(WORKER_MODULE)
        self.registry.clear()
        logger.info("Killed all cpu worker processes by name: %d", len(killed))
        return killed

    def stop_all(self) -> list[Simulation]:
        stopped = []
        for simulation in self.get_active_simulations():
            result = self.stop(simulation.id)
            if result is not None:
                stopped.append(result)
        self.cleanup_orphaned_workers()
        self.kill_all_workers_by_name()
        return stopped


__all__ = ["CpuStressEffector", "calculate_worker_count", "cpu_count"]
