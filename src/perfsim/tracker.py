"""Registry and state machine for every simulation instance."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from perfsim.core import SimulationNotFoundError, from_timestamp
from perfsim.events import EventLog
from perfsim.models import EventLevel, Simulation, SimulationStatus, SimulationType
from perfsim.storage import StateStore

logger = logging.getLogger(__name__)

SIMULATIONS_KEY = "perfsim_simulations"

CleanupHook = Callable[[str], None]

_TRANSITION_EVENTS: dict[SimulationStatus, tuple[str, EventLevel]] = {
    SimulationStatus.completed: ("SIMULATION_COMPLETED", EventLevel.info),
    SimulationStatus.stopped: ("SIMULATION_STOPPED", EventLevel.info),
    SimulationStatus.failed: ("SIMULATION_FAILED", EventLevel.error),
}


class SimulationTracker:
    """Create, list, stop and lazily expire simulations.

    The whole registry is one map (id -> record) in the shared store, and
    every mutation goes through ``StateStore.modify``.  A status transition
    is only ever applied to an ``ACTIVE`` record, inside the same atomic
    update that reads it, so of several racing stop/complete/fail calls
    exactly one wins.  Only the winner logs an event and gets the record
    back; the losers get ``None``.

    There is no timer.  Deadlines are checked when somebody reads:

    * :meth:`get_active_simulations` (slow path) persists ``COMPLETED`` for
      anything past its deadline, logs the completion and runs the
      type's cleanup hook.
    * :meth:`get_active_simulations_read_only` and
      :meth:`get_active_simulations_by_type` (fast path) apply the same
      deadline filter without writing anything, for high-frequency probes.
    """

    def __init__(
        self,
        store: StateStore,
        event_log: EventLog,
        history_limit: int = 200,
    ) -> None:
        self._store = store
        self._events = event_log
        self.history_limit = history_limit
        self._cleanup_hooks: dict[SimulationType, CleanupHook] = {}

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def register_cleanup(self, simulation_type: SimulationType, hook: CleanupHook) -> None:
        """Call *hook(simulation_id)* whenever a simulation of this type lazily expires."""
        self._cleanup_hooks[simulation_type] = hook

    def _now(self) -> datetime:
        return from_timestamp(self._store.now())

    def _load(self) -> dict[str, Simulation]:
        raw = self._store.get(SIMULATIONS_KEY, {})
        simulations: dict[str, Simulation] = {}
        for sim_id, record in (raw.items() if isinstance(raw, dict) else []):
            try:
                simulations[sim_id] = Simulation.model_validate(record)
            except ValueError:
                logger.warning("Skipping unreadable simulation record %s", sim_id)
        return simulations

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_simulation(
        self,
        simulation_type: SimulationType,
        parameters: dict[str, Any],
        duration_seconds: float | None = None,
        *,
        message: str | None = None,
        level: EventLevel = EventLevel.info,
        details: dict[str, Any] | None = None,
    ) -> Simulation:
        """Register a new ``ACTIVE`` simulation and log its start.

        Args:
            simulation_type:  What kind of fault this is.
            parameters:       Validated, type-specific parameters.  Stored as-is.
            duration_seconds: Seconds until it expires, or ``None`` to run until
                              explicitly stopped.
            message:          Text of the ``SIMULATION_STARTED`` event.
            level:            Level of that event.
            details:          Structured payload for that event.
        """
        now = self._now()
        simulation = Simulation(
            id=str(uuid.uuid4()),
            type=simulation_type,
            parameters=dict(parameters),
            status=SimulationStatus.active,
            started_at=now,
            scheduled_end_at=(
                now + timedelta(seconds=duration_seconds)
                if duration_seconds is not None
                else None
            ),
        )
        record = simulation.model_dump(mode="json")
        history_limit = self.history_limit

        def insert(simulations: dict[str, Any] | None) -> dict[str, Any]:
            simulations = dict(simulations or {})
            simulations[simulation.id] = record
            return _prune_history(simulations, history_limit)

        self._store.modify(SIMULATIONS_KEY, insert, {})

        self._events.log(
            "SIMULATION_STARTED",
            message or f"{simulation_type.value} simulation started",
            level,
            simulation_id=simulation.id,
            simulation_type=simulation_type.value,
            details=details if details is not None else dict(parameters),
        )
        return simulation

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_simulation(self, simulation_id: str) -> Simulation | None:
        """Return the record as every reader should see it.

        An ``ACTIVE`` record whose deadline has passed is reported as
        ``COMPLETED`` even if no writer has persisted that yet.
        """
        simulation = self._load().get(simulation_id)
        if simulation is None:
            return None
        return _effective(simulation, self._now())

    def require_simulation(self, simulation_id: str) -> Simulation:
        """Like :meth:`get_simulation` but raise when the id is unknown.

        Raises:
            SimulationNotFoundError: if *simulation_id* is not registered.
        """
        simulation = self.get_simulation(simulation_id)
        if simulation is None:
            raise SimulationNotFoundError(simulation_id)
        return simulation

    def get_all_simulations(self) -> list[Simulation]:
        """Every stored record (effective view), oldest first."""
        now = self._now()
        return sorted(
            (_effective(s, now) for s in self._load().values()),
            key=lambda s: s.started_at,
        )

    def get_active_simulations(self) -> list[Simulation]:
        """Slow path: expire what is due, then return what is still active."""
        now = self._now()
        expired: list[Simulation] = []
        stamp = now.isoformat()

        def expire(simulations: dict[str, Any] | None) -> dict[str, Any]:
            simulations = dict(simulations or {})
            expired.clear()
            for sim_id, record in simulations.items():
                try:
                    simulation = Simulation.model_validate(record)
                except ValueError:
                    continue
                if simulation.status == SimulationStatus.active and simulation.is_expired(now):
                    record = dict(record, status=SimulationStatus.completed.value, stopped_at=stamp)
                    simulations[sim_id] = record
                    expired.append(Simulation.model_validate(record))
            return simulations

        updated = self._store.modify(SIMULATIONS_KEY, expire, {})

        for simulation in expired:
            self._events.info(
                "SIMULATION_COMPLETED",
                f"{simulation.type.value} simulation completed after its scheduled duration",
                simulation_id=simulation.id,
                simulation_type=simulation.type.value,
            )
            self._run_cleanup(simulation)

        active = []
        for record in (updated or {}).values():
            try:
                simulation = Simulation.model_validate(record)
            except ValueError:
                continue
            if simulation.is_active(now):
                active.append(simulation)
        return sorted(active, key=lambda s: s.started_at)

    def get_active_simulations_read_only(self) -> list[Simulation]:
        """Fast path: deadline-filtered active set with no writes and no cleanup."""
        now = self._now()
        return sorted(
            (s for s in self._load().values() if s.is_active(now)),
            key=lambda s: s.started_at,
        )

    def get_active_simulations_by_type(self, simulation_type: SimulationType) -> list[Simulation]:
        """Fast-path active set restricted to one type."""
        return [
            s for s in self.get_active_simulations_read_only() if s.type == simulation_type
        ]

    def get_active_count(self) -> int:
        return len(self.get_active_simulations())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def stop_simulation(
        self,
        simulation_id: str,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Simulation | None:
        return self._transition(simulation_id, SimulationStatus.stopped, message, details)

    def complete_simulation(
        self,
        simulation_id: str,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Simulation | None:
        return self._transition(simulation_id, SimulationStatus.completed, message, details)

    def fail_simulation(
        self,
        simulation_id: str,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Simulation | None:
        return self._transition(simulation_id, SimulationStatus.failed, message, details)

    def _transition(
        self,
        simulation_id: str,
        status: SimulationStatus,
        message: str | None,
        details: dict[str, Any] | None,
    ) -> Simulation | None:
        stamp = self._now().isoformat()
        result: list[Simulation] = []

        def apply(simulations: dict[str, Any] | None) -> dict[str, Any]:
            simulations = dict(simulations or {})
            result.clear()
            record = simulations.get(simulation_id)
            if not record or record.get("status") != SimulationStatus.active.value:
                return simulations
            record = dict(record, status=status.value, stopped_at=stamp)
            simulations[simulation_id] = record
            result.append(Simulation.model_validate(record))
            return simulations

        self._store.modify(SIMULATIONS_KEY, apply, {})
        if not result:
            return None

        simulation = result[0]
        event, level = _TRANSITION_EVENTS[status]
        self._events.log(
            event,
            message or f"{simulation.type.value} simulation {status.value.lower()}",
            level,
            simulation_id=simulation.id,
            simulation_type=simulation.type.value,
            details=details,
        )
        return simulation

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def remove_simulation(self, simulation_id: str) -> bool:
        removed: list[bool] = []

        def drop(simulations: dict[str, Any] | None) -> dict[str, Any]:
            simulations = dict(simulations or {})
            removed[:] = [simulations.pop(simulation_id, None) is not None]
            return simulations

        self._store.modify(SIMULATIONS_KEY, drop, {})
        return bool(removed and removed[0])

    def clear(self) -> None:
        self._store.set(SIMULATIONS_KEY, {})

    def _run_cleanup(self, simulation: Simulation) -> None:
        hook = self._cleanup_hooks.get(simulation.type)
        if hook is None:
            return
        try:
            hook(simulation.id)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Cleanup hook for %s simulation %s failed", simulation.type.value, simulation.id
            )


def _effective(simulation: Simulation, now: datetime) -> Simulation:
    if simulation.status == SimulationStatus.active and simulation.is_expired(now):
        return simulation.model_copy(
            update={
                "status": SimulationStatus.completed,
                "stopped_at": simulation.scheduled_end_at,
            }
        )
    return simulation


def _prune_history(simulations: dict[str, Any], limit: int) -> dict[str, Any]:
    """Drop the oldest terminal records beyond *limit*.  Active records are never pruned."""
    terminal = [
        (record.get("started_at") or "", sim_id)
        for sim_id, record in simulations.items()
        if record.get("status") != SimulationStatus.active.value
    ]
    excess = len(terminal) - limit
    if excess <= 0:
        return simulations
    for _, sim_id in sorted(terminal)[:excess]:
        simulations.pop(sim_id, None)
    return simulations


__all__ = ["CleanupHook", "SIMULATIONS_KEY", "SimulationTracker"]
