"""Memory pressure: megabyte blocks parked in shared storage."""

from __future__ import annotations

import logging
import random
import string
from typing import Any

import psutil
from pydantic import BaseModel

from perfsim.core import EffectorError, SimulationValidationError, from_timestamp
from perfsim.effectors.base import Effector, parse_params
from perfsim.models import (
    MemoryPressureParams,
    MemoryReleaseResult,
    Simulation,
    SimulationType,
    WorkerLoadResult,
)

logger = logging.getLogger(__name__)

ALLOCATIONS_KEY = "perfsim_memory_allocs"
BLOCK_PREFIX = "perfsim_memblock_"
BLOCK_SIZE = 1024 * 1024

# References kept alive until the worker exits, so the RSS spike from
# load_into_worker stays visible to external monitors.
_worker_hold: list[str] = []


def block_key(allocation_id: str, index: int) -> str:
    return f"{BLOCK_PREFIX}{allocation_id}_{index}"


def worker_rss_mb() -> float:
    return round(psutil.Process().memory_info().rss / BLOCK_SIZE, 2)


class MemoryPressureEffector(Effector):
    """Allocate, release and optionally pull stored blocks into this worker.

    Allocations have no duration; they stay until released.  Each
    allocation is tracked in ``perfsim_memory_allocs`` and its blocks live
    under ``perfsim_memblock_<id>_<n>``, so every worker sees the same
    pressure.
    """

    simulation_type = SimulationType.memory_pressure

    def start(self, params: BaseModel | dict[str, Any]) -> Simulation:
        return self.allocate(params)

    def allocate(self, params: BaseModel | dict[str, Any]) -> Simulation:
        """Store ``size_mb`` one-megabyte blocks and register the allocation.

        Raises:
            SimulationValidationError: if ``size_mb`` is out of range.
        """
        memory = parse_params(MemoryPressureParams, params)
        limit = self._settings.max_memory_allocation_mb
        if memory.size_mb > limit:
            raise SimulationValidationError(f"size_mb must be between 1 and {limit}")

        simulation = self._tracker.create_simulation(
            self.simulation_type,
            {"size_mb": memory.size_mb},
            None,
            message=f"Starting allocation of {memory.size_mb}MB",
            details={"sizeMb": memory.size_mb},
        )

        try:
            self._write_blocks(simulation.id, memory.size_mb)
        except (EffectorError, MemoryError) as exc:
            self._delete_blocks(simulation.id)
            failed = self._tracker.fail_simulation(
                simulation.id, f"Memory allocation of {memory.size_mb}MB failed: {exc}"
            )
            return failed or simulation

        record = {
            "size_mb": memory.size_mb,
            "blocks": memory.size_mb,
            "allocated_at": from_timestamp(self._store.now()).isoformat(),
        }

        def track(allocations: dict[str, Any] | None) -> dict[str, Any]:
            allocations = dict(allocations or {})
            allocations[simulation.id] = record
            return allocations

        self._store.modify(ALLOCATIONS_KEY, track, {})
        self._events.info(
            "MEMORY_ALLOCATED",
            f"Allocated {memory.size_mb}MB in shared storage",
            simulation_id=simulation.id,
            simulation_type=self.simulation_type.value,
            details={"sizeMb": memory.size_mb},
        )
        return simulation

    def _write_blocks(self, allocation_id: str, size_mb: int) -> None:
        for index in range(size_mb):
            block = random.choice(string.ascii_uppercase) * BLOCK_SIZE  # noqa: S311
            self._store.set(block_key(allocation_id, index), block)
        if size_mb and self._store.get(block_key(allocation_id, size_mb - 1)) is None:
            raise EffectorError("shared storage did not retain the allocated blocks")

    def _delete_blocks(self, allocation_id: str, count: int | None = None) -> None:
        if count is None:
            keys = self._store.keys(f"{BLOCK_PREFIX}{allocation_id}_")
        else:
            keys = [block_key(allocation_id, i) for i in range(count)]
        for key in keys:
            self._store.delete(key)

    def stop(self, simulation_id: str) -> Simulation | None:
        return self.release(simulation_id).simulation

    def cleanup(self, simulation_id: str) -> None:
        info = self.get_allocation_info(simulation_id)
        self._delete_blocks(simulation_id, info.get("blocks") if info else None)
        self._forget(simulation_id)

    def release(self, allocation_id: str) -> MemoryReleaseResult:
        """Free one allocation.  Releasing an unknown or already-released id succeeds."""
        info = self.get_allocation_info(allocation_id)
        size_mb = int(info.get("size_mb", 0)) if info else 0

        if info is not None:
            self._delete_blocks(allocation_id, info.get("blocks"))
            self._forget(allocation_id)

        simulation = self._tracker.stop_simulation(
            allocation_id,
            f"Released {size_mb}MB of memory",
            {"sizeMb": size_mb, "wasAllocated": info is not None},
        )
        if info is not None and simulation is None:
            self._events.info(
                "MEMORY_RELEASED",
                f"Released {size_mb}MB of orphaned memory",
                simulation_id=allocation_id,
                simulation_type=self.simulation_type.value,
                details={"sizeMb": size_mb},
            )
        return MemoryReleaseResult(
            id=allocation_id,
            simulation=simulation,
            size_mb=size_mb,
            was_allocated=info is not None,
        )

    def release_all(self) -> list[MemoryReleaseResult]:
        """Release every allocation and sweep blocks whose record was lost."""
        ids = {s.id for s in self.get_active_allocations()} | set(self._allocations())
        results = [self.release(allocation_id) for allocation_id in sorted(ids)]

        tracked = set(self._allocations())
        orphans = [
            key
            for key in self._store.keys(BLOCK_PREFIX)
            if key[len(BLOCK_PREFIX):].rsplit("_", 1)[0] not in tracked
        ]
        for key in orphans:
            self._store.delete(key)
        if orphans:
            logger.info("Removed %d orphaned memory blocks", len(orphans))
        return results

    def _forget(self, allocation_id: str) -> None:
        def drop(allocations: dict[str, Any] | None) -> dict[str, Any]:
            allocations = dict(allocations or {})
            allocations.pop(allocation_id, None)
            return allocations

        self._store.modify(ALLOCATIONS_KEY, drop, {})

    def _allocations(self) -> dict[str, dict[str, Any]]:
        raw = self._store.get(ALLOCATIONS_KEY, {})
        return raw if isinstance(raw, dict) else {}

    def get_active_allocations(self) -> list[Simulation]:
        return self.get_active_simulations()

    def get_allocation_info(self, allocation_id: str) -> dict[str, Any] | None:
        return self._allocations().get(allocation_id)

    def get_total_allocated_mb(self) -> int:
        return sum(int(a.get("size_mb", 0)) for a in self._allocations().values())

    def get_active_count(self) -> int:
        return len(self._allocations())

    def load_into_worker(self, max_mb: int | None = None) -> WorkerLoadResult:
        """Copy up to *max_mb* stored blocks into this process's heap.

        The cap keeps the spike from killing the very worker serving the
        probe.  Loaded data is held until the process exits.
        """
        cap = min(max_mb or self._settings.memory_worker_load_cap_mb,
                  self._settings.memory_worker_load_cap_mb)
        rss_before = worker_rss_mb()
        loaded: list[str] = []
        for allocation_id, info in self._allocations().items():
            for index in range(int(info.get("blocks", 0))):
                if len(loaded) >= cap:
                    break
                block = self._store.get(block_key(allocation_id, index))
                if block is None:
                    break
                # Force a private copy into this heap.
                loaded.append("".join([block[:1], block[1:]]))
            if len(loaded) >= cap:
                break

        _worker_hold[:] = loaded
        return WorkerLoadResult(
            loaded_mb=len(loaded),
            worker_rss_before_mb=rss_before,
            worker_rss_after_mb=worker_rss_mb(),
        )

    def perform_if_active(self) -> WorkerLoadResult | None:
        budget = self._settings.memory_probe_load_mb
        if budget <= 0 or not self._allocations():
            return None
        return self.load_into_worker(budget)


__all__ = [
    "ALLOCATIONS_KEY",
    "BLOCK_PREFIX",
    "MemoryPressureEffector",
    "block_key",
    "worker_rss_mb",
]
