"""Tests for perfsim.harness: the PerfSim facade."""

from __future__ import annotations

from pathlib import Path

import pytest

from perfsim.config import Settings, StorageBackend
from perfsim.core import SimulationNotFoundError, SimulationValidationError
from perfsim.effectors import CrashEffector, Effector, MemoryPressureEffector
from perfsim.harness import PerfSim
from perfsim.models import SimulationStatus, SimulationType
from perfsim.storage import FileStateStore, MemoryStateStore

# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestFromSettings:
    def test_memory_backend(self) -> None:
        sim = PerfSim.from_settings(Settings(storage_backend=StorageBackend.memory))
        assert isinstance(sim.store, MemoryStateStore)

    def test_file_backend(self, tmp_path: Path) -> None:
        sim = PerfSim.from_settings(Settings(storage_path=tmp_path))
        assert isinstance(sim.store, FileStateStore)

    def test_file_backend_shared_between_instances(self, tmp_path: Path) -> None:
        settings = Settings(storage_path=tmp_path)
        first = PerfSim.from_settings(settings)
        simulation = first.create(SimulationType.request_blocking, {"duration_seconds": 30})
        second = PerfSim.from_settings(settings)
        assert [s.id for s in second.list()] == [simulation.id]
        assert second.probe().work_done


class TestEffectorFor:
    def test_crash_types_share_one_effector(self, sim: PerfSim) -> None:
        for simulation_type in SimulationType:
            if simulation_type.is_crash:
                assert isinstance(sim.effector_for(simulation_type), CrashEffector)

    def test_accepts_string(self, sim: PerfSim) -> None:
        assert isinstance(sim.effector_for("MEMORY_PRESSURE"), MemoryPressureEffector)

    def test_unknown_type_rejected(self, sim: PerfSim) -> None:
        with pytest.raises(ValueError):
            sim.effector_for("DISK_FULL")

    def test_effector_without_start_cannot_be_built(self, sim: PerfSim) -> None:
        class Incomplete(Effector):
            simulation_type = SimulationType.slow_request

        with pytest.raises(TypeError):
            Incomplete(sim.store, sim.tracker, sim.events, sim.settings)


# ---------------------------------------------------------------------------
# Trigger calls
# ---------------------------------------------------------------------------


class TestCreateAndStop:
    def test_create_dispatches_by_type(self, sim: PerfSim) -> None:
        simulation = sim.create(SimulationType.memory_pressure, {"size_mb": 1})
        assert simulation.type == SimulationType.memory_pressure
        assert sim.memory.get_total_allocated_mb() == 1

    def test_create_validation_error_propagates(self, sim: PerfSim) -> None:
        with pytest.raises(SimulationValidationError):
            sim.create(SimulationType.request_blocking, {"duration_seconds": -1})

    def test_stop_unknown_returns_none(self, sim: PerfSim) -> None:
        assert sim.stop("does-not-exist") is None

    def test_stop_twice_returns_none(self, sim: PerfSim) -> None:
        simulation = sim.create(SimulationType.request_blocking, {"duration_seconds": 30})
        assert sim.stop(simulation.id) is not None
        assert sim.stop(simulation.id) is None

    def test_require(self, sim: PerfSim) -> None:
        simulation = sim.create(SimulationType.request_blocking, {"duration_seconds": 30})
        assert sim.require(simulation.id).id == simulation.id
        with pytest.raises(SimulationNotFoundError):
            sim.require("missing")

    def test_list_filters_by_type(self, sim: PerfSim) -> None:
        sim.create(SimulationType.request_blocking, {"duration_seconds": 30})
        memory = sim.create(SimulationType.memory_pressure, {"size_mb": 1})
        assert [s.id for s in sim.list("MEMORY_PRESSURE")] == [memory.id]
        assert len(sim.list()) == 2

    def test_list_expires_due_simulations(self, sim: PerfSim, clock) -> None:
        simulation = sim.create(SimulationType.request_blocking, {"duration_seconds": 3})
        clock.advance(3)
        assert sim.list() == []
        assert sim.tracker.get_simulation(simulation.id).status == SimulationStatus.completed

    def test_stop_all(self, sim: PerfSim, controller) -> None:
        sim.create(SimulationType.cpu_stress, {"target_load_percent": 25, "duration_seconds": 60})
        sim.create(SimulationType.memory_pressure, {"size_mb": 2})
        sim.create(SimulationType.request_blocking, {"duration_seconds": 60})
        stopped = sim.stop_all()
        assert {s.type for s in stopped} == {
            SimulationType.cpu_stress,
            SimulationType.memory_pressure,
            SimulationType.request_blocking,
        }
        assert sim.list() == []
        assert sim.memory.get_total_allocated_mb() == 0


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestRecentEvents:
    def test_newest_first_with_sequence(self, sim: PerfSim) -> None:
        first = sim.create(SimulationType.request_blocking, {"duration_seconds": 30})
        second = sim.create(SimulationType.request_blocking, {"duration_seconds": 30})
        page = sim.get_recent_events(10)
        assert [e.simulation_id for e in page.events] == [second.id, first.id]
        assert page.count == 2
        assert page.sequence == 2

    def test_limit_applied(self, sim: PerfSim) -> None:
        for _ in range(5):
            sim.create(SimulationType.request_blocking, {"duration_seconds": 30})
        assert sim.get_recent_events(3).count == 3
