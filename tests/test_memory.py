"""Tests for perfsim.effectors.memory: MemoryPressureEffector."""

from __future__ import annotations

import pytest

from perfsim.config import Settings
from perfsim.core import SimulationValidationError
from perfsim.effectors.memory import (
    ALLOCATIONS_KEY,
    BLOCK_PREFIX,
    BLOCK_SIZE,
    MemoryPressureEffector,
    block_key,
)
from perfsim.harness import PerfSim
from perfsim.models import SimulationStatus, SimulationType

# ---------------------------------------------------------------------------
# allocate
# ---------------------------------------------------------------------------


class TestAllocate:
    def test_allocate_reports_total(self, sim: PerfSim) -> None:
        sim.memory.allocate({"size_mb": 100})
        assert sim.memory.get_total_allocated_mb() == 100

    def test_blocks_live_in_shared_store(self, sim: PerfSim) -> None:
        simulation = sim.memory.allocate({"size_mb": 3})
        keys = sim.store.keys(BLOCK_PREFIX)
        assert keys == sorted(block_key(simulation.id, i) for i in range(3))
        assert len(sim.store.get(keys[0])) == BLOCK_SIZE

    def test_allocation_has_no_deadline(self, sim: PerfSim, clock) -> None:
        simulation = sim.memory.allocate({"size_mb": 1})
        assert simulation.scheduled_end_at is None
        clock.advance(10**6)
        assert [s.id for s in sim.list()] == [simulation.id]

    def test_allocation_info_recorded(self, sim: PerfSim) -> None:
        simulation = sim.memory.allocate({"size_mb": 2})
        info = sim.memory.get_allocation_info(simulation.id)
        assert info["size_mb"] == 2
        assert info["blocks"] == 2

    def test_allocated_event_logged(self, sim: PerfSim) -> None:
        simulation = sim.memory.allocate({"size_mb": 1})
        events = [e.event for e in sim.events.get_entries() if e.simulation_id == simulation.id]
        assert events == ["SIMULATION_STARTED", "MEMORY_ALLOCATED"]

    def test_totals_accumulate(self, sim: PerfSim) -> None:
        sim.memory.allocate({"size_mb": 2})
        sim.memory.allocate({"size_mb": 3})
        assert sim.memory.get_total_allocated_mb() == 5
        assert len(sim.memory.get_active_allocations()) == 2

    @pytest.mark.parametrize("params", [{"size_mb": 0}, {"size_mb": -5}, {}, {"size": 10}])
    def test_invalid_size_rejected(self, sim: PerfSim, params: dict) -> None:
        with pytest.raises(SimulationValidationError):
            sim.memory.allocate(params)
        assert sim.tracker.get_all_simulations() == []

    def test_size_above_limit_rejected(self, store, tracker, event_log) -> None:
        effector = MemoryPressureEffector(
            store, tracker, event_log, Settings(max_memory_allocation_mb=10)
        )
        with pytest.raises(SimulationValidationError):
            effector.allocate({"size_mb": 11})
        assert store.keys(BLOCK_PREFIX) == []


# ---------------------------------------------------------------------------
# release
# ---------------------------------------------------------------------------


class TestRelease:
    def test_release_returns_to_zero(self, sim: PerfSim) -> None:
        simulation = sim.memory.allocate({"size_mb": 100})
        result = sim.memory.release(simulation.id)
        assert result.was_allocated is True
        assert result.size_mb == 100
        assert result.simulation.status == SimulationStatus.stopped
        assert sim.memory.get_total_allocated_mb() == 0
        assert sim.store.keys(BLOCK_PREFIX) == []

    def test_release_twice_succeeds(self, sim: PerfSim) -> None:
        simulation = sim.memory.allocate({"size_mb": 1})
        sim.memory.release(simulation.id)
        second = sim.memory.release(simulation.id)
        assert second.was_allocated is False
        assert second.simulation is None
        assert second.size_mb == 0

    def test_release_unknown_id(self, sim: PerfSim) -> None:
        result = sim.memory.release("never-allocated")
        assert result.id == "never-allocated"
        assert result.was_allocated is False

    def test_stop_message_includes_size(self, sim: PerfSim) -> None:
        simulation = sim.memory.allocate({"size_mb": 4})
        sim.stop(simulation.id)
        [event] = [
            e for e in sim.events.get_entries()
            if e.simulation_id == simulation.id and e.event == "SIMULATION_STOPPED"
        ]
        assert "4MB" in event.message

    def test_orphaned_allocation_logs_release(self, sim: PerfSim) -> None:
        simulation = sim.memory.allocate({"size_mb": 1})
        sim.tracker.remove_simulation(simulation.id)
        sim.memory.release(simulation.id)
        assert "MEMORY_RELEASED" in [e.event for e in sim.events.get_entries()]

    def test_release_all(self, sim: PerfSim) -> None:
        sim.memory.allocate({"size_mb": 1})
        sim.memory.allocate({"size_mb": 2})
        results = sim.memory.release_all()
        assert sorted(r.size_mb for r in results) == [1, 2]
        assert sim.memory.get_total_allocated_mb() == 0
        assert sim.memory.get_active_allocations() == []

    def test_release_all_sweeps_orphaned_blocks(self, sim: PerfSim) -> None:
        kept = sim.memory.allocate({"size_mb": 1})
        sim.store.set(block_key("lost-record", 0), "X")
        sim.store.set(block_key("lost-record", 1), "X")
        sim.store.delete(ALLOCATIONS_KEY)
        sim.memory.release_all()
        assert sim.store.keys(BLOCK_PREFIX) == []
        assert sim.tracker.get_simulation(kept.id).status == SimulationStatus.stopped


# ---------------------------------------------------------------------------
# Worker loading
# ---------------------------------------------------------------------------


class TestLoadIntoWorker:
    def test_load_copies_blocks(self, sim: PerfSim) -> None:
        sim.memory.allocate({"size_mb": 3})
        result = sim.memory.load_into_worker(2)
        assert result.loaded_mb == 2
        assert result.worker_rss_before_mb > 0

    def test_load_capped_by_settings(self, store, tracker, event_log) -> None:
        effector = MemoryPressureEffector(
            store, tracker, event_log, Settings(memory_worker_load_cap_mb=1)
        )
        effector.allocate({"size_mb": 3})
        assert effector.load_into_worker(100).loaded_mb == 1

    def test_load_with_nothing_allocated(self, sim: PerfSim) -> None:
        assert sim.memory.load_into_worker(10).loaded_mb == 0

    def test_probe_hook_disabled_by_default(self, sim: PerfSim) -> None:
        sim.memory.allocate({"size_mb": 1})
        assert sim.memory.perform_if_active() is None

    def test_probe_hook_loads_configured_amount(self, store, tracker, event_log) -> None:
        effector = MemoryPressureEffector(
            store, tracker, event_log, Settings(memory_probe_load_mb=1)
        )
        assert effector.perform_if_active() is None
        effector.allocate({"size_mb": 2})
        assert effector.perform_if_active().loaded_mb == 1

    def test_type_is_memory_pressure(self, sim: PerfSim) -> None:
        assert sim.memory.simulation_type == SimulationType.memory_pressure
