"""Crash simulations: kill the serving worker after its response is sent."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import requests
from pydantic import BaseModel

from perfsim.config import Settings
from perfsim.core import IntentionalCrashError
from perfsim.deferred import DeferredActions
from perfsim.effectors.base import Effector, parse_params
from perfsim.effectors.workers import CrashTracker
from perfsim.events import EventLog
from perfsim.models import (
    CrashMode,
    CrashParams,
    EventLevel,
    MultiCrashResult,
    Simulation,
    SimulationType,
)
from perfsim.storage import StateStore
from perfsim.tracker import SimulationTracker

logger = logging.getLogger(__name__)

MAX_MULTI_CRASH = 20
MULTI_CRASH_TIMEOUT = 5
MEMORY_CHUNK = 10 * 1024 * 1024

CrashAction = Callable[[], None]


def crash_failfast() -> None:
    os._exit(1)


def _recurse(depth: int) -> int:
    return _recurse(depth + 1) + 1


def crash_stackoverflow() -> None:
    sys.setrecursionlimit(10**6)
    try:
        _recurse(0)
    except RecursionError:
        os.abort()


def crash_exception() -> None:
    try:
        raise IntentionalCrashError("unrecoverable error requested by crash simulation")
    except IntentionalCrashError:
        logger.critical("Fatal error in worker %d, aborting", os.getpid(), exc_info=True)
    os.abort()


def crash_memory() -> None:
    hog: list[bytes] = []
    try:
        while True:
            hog.append(b"X" * MEMORY_CHUNK)
    except MemoryError:
        # Address-space limits surface as MemoryError instead of an OOM kill.
        os.abort()


DEFAULT_CRASH_ACTIONS: dict[CrashMode, CrashAction] = {
    CrashMode.failfast: crash_failfast,
    CrashMode.stackoverflow: crash_stackoverflow,
    CrashMode.exception: crash_exception,
    CrashMode.memory: crash_memory,
}

_METHODS: dict[CrashMode, str] = {
    CrashMode.failfast: "os._exit(1)",
    CrashMode.stackoverflow: "unbounded recursion",
    CrashMode.exception: "unrecoverable error, os.abort()",
    CrashMode.memory: "unbounded 10MB allocations, os.abort() on MemoryError",
}

_RECOVERY_HINTS: dict[CrashMode, str] = {
    CrashMode.stackoverflow: "look for a segfault or abort in the worker logs, then a respawn",
    CrashMode.memory: "expect an OOM kill; check container memory limits and restart counts",
}


class CrashEffector(Effector):
    """Trigger one of four crash modes through :class:`DeferredActions`.

    Each trigger writes exactly one pre-crash event (the ``SIMULATION_STARTED``
    of a short-lived ``CRASH_*`` simulation) because nothing after the
    crash will ever run.
    """

    simulation_type = SimulationType.crash_failfast

    def __init__(
        self,
        store: StateStore,
        tracker: SimulationTracker,
        event_log: EventLog,
        settings: Settings,
        crash_tracker: CrashTracker,
        actions: Mapping[CrashMode, CrashAction] | None = None,
    ) -> None:
        super().__init__(store, tracker, event_log, settings)
        self.crash_tracker = crash_tracker
        self.actions = {**DEFAULT_CRASH_ACTIONS, **(actions or {})}

    def start(self, params: BaseModel | dict[str, Any]) -> Simulation:
        """Record a crash without a deferred queue; the action is not scheduled."""
        return self.trigger(parse_params(CrashParams, params).mode, None)

    def trigger(self, mode: CrashMode | str, deferred: DeferredActions | None) -> Simulation:
        """Log the crash and queue its action on *deferred*.

        The transport layer runs *deferred* after the response has been
        flushed; until then the worker is still healthy.
        """
        mode = CrashMode(mode)
        pid = os.getpid()
        self.crash_tracker.record_crash(mode.value, pid)

        details: dict[str, Any] = {"method": _METHODS[mode], "workerPid": pid}
        if mode in _RECOVERY_HINTS:
            details["recoveryHint"] = _RECOVERY_HINTS[mode]

        simulation = self._tracker.create_simulation(
            mode.simulation_type,
            {"mode": mode.value},
            self._settings.crash_record_seconds,
            message=f"Crash ({mode.value}) requested; worker {pid} will terminate after responding",
            level=EventLevel.error,
            details=details,
        )
        if deferred is not None:
            deferred.schedule(self.actions[mode], label=f"crash:{mode.value}")
        return simulation

    def get_active_simulations(self) -> list[Simulation]:
        return [s for s in self._tracker.get_active_simulations_read_only() if s.type.is_crash]

    def crash_workers(self, count: int, mode: CrashMode | str = CrashMode.failfast) -> MultiCrashResult:
        """Ask up to *count* workers to crash near-simultaneously.

        Each internal request lands on whichever worker the server hands it
        to, so *count* is capped by the number of recently active workers.
        """
        mode = CrashMode(mode)
        requested = max(1, min(int(count), MAX_MULTI_CRASH))
        known = self.crash_tracker.get_active_worker_count()
        if known > 0:
            requested = min(requested, known)

        url = f"{self._settings.internal_base_url.rstrip('/')}/api/simulations/crash/{mode.value}"
        self._events.warn(
            "MULTI_CRASH_INITIATED",
            f"Crashing {requested} workers with {mode.value}",
            details={"requested": requested, "knownWorkers": known, "crashType": mode.value},
        )

        def fire(_: int) -> bool:
            try:
                response = requests.post(url, json={}, timeout=MULTI_CRASH_TIMEOUT)
            except requests.RequestException as exc:
                logger.warning("Crash request to %s failed: %s", url, exc)
                return False
            return response.status_code == 202

        with ThreadPoolExecutor(max_workers=requested) as pool:
            initiated = sum(pool.map(fire, range(requested)))

        self._events.info(
            "MULTI_CRASH_COMPLETED",
            f"Initiated {initiated} of {requested} worker crashes",
            details={"requested": requested, "initiated": initiated, "crashType": mode.value},
        )
        return MultiCrashResult(
            requested=requested,
            initiated=initiated,
            crash_type=mode.value,
            known_workers=known,
        )


__all__ = [
    "CrashEffector",
    "DEFAULT_CRASH_ACTIONS",
    "MAX_MULTI_CRASH",
    "crash_exception",
    "crash_failfast",
    "crash_memory",
    "crash_stackoverflow",
]
