"""Worker blocking: a time window during which every probe pays a CPU tax."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel

from perfsim.core import HEAVY_ROUNDS, hash_work
from perfsim.effectors.base import Effector, parse_params
from perfsim.models import BlockingParams, BlockingWork, Simulation, SimulationType

logger = logging.getLogger(__name__)

WINDOWS_KEY = "perfsim_blocking_windows"

# The windows key outlives the longest window that can be opened; expired
# windows are dropped by ``_live`` on read, never by the store.
_WINDOW_TTL_SLACK = 60


def blocking_intensity(remaining: float, total: float) -> float:
    """Linear ramp from 1.0 at the start of a window down to 0.5 at its end."""
    if total <= 0:
        return 0.5
    return max(0.5, min(1.0, remaining / total))


class RequestBlockingEffector(Effector):
    """Smear pool exhaustion across every worker for the window's duration.

    There is no long-lived worker to hold hostage, so instead each probe
    that lands inside an open window burns
    ``int(blocking_iterations * intensity)`` PBKDF2 operations.
    """

    simulation_type = SimulationType.request_blocking

    def start(self, params: BaseModel | dict[str, Any]) -> Simulation:
        return self.block(params)

    def block(self, params: BaseModel | dict[str, Any]) -> Simulation:
        """Open a blocking window of ``duration_seconds``.

        Raises:
            SimulationValidationError: if the parameters are out of range.
        """
        blocking = parse_params(BlockingParams, params)
        self._check_duration(blocking.duration_seconds)

        simulation = self._tracker.create_simulation(
            self.simulation_type,
            blocking.model_dump(),
            blocking.duration_seconds,
            message=(
                f"Request blocking started for {blocking.duration_seconds}s "
                f"({blocking.concurrent_workers} workers)"
            ),
            details={
                "durationSeconds": blocking.duration_seconds,
                "concurrentWorkers": blocking.concurrent_workers,
                "iterations": self._settings.blocking_iterations,
            },
        )

        now = self._store.now()
        window = {
            "start": now,
            "end": now + blocking.duration_seconds,
            "duration": blocking.duration_seconds,
        }

        def open_window(windows: dict[str, Any] | None) -> dict[str, Any]:
            windows = _live(windows, now)
            windows[simulation.id] = window
            return windows

        self._store.modify(WINDOWS_KEY, open_window, {}, ttl=self._windows_ttl())
        return simulation

    def open_windows(self) -> dict[str, dict[str, Any]]:
        """Windows whose end is still in the future, keyed by simulation id."""
        return _live(self._store.get(WINDOWS_KEY, {}), self._store.now())

    def perform_if_active(self) -> BlockingWork | None:
        windows = self.open_windows()
        if not windows:
            return None

        now = self._store.now()
        base = self._settings.blocking_iterations
        iterations = 0
        intensity = 0.0
        remaining = 0.0
        for window in windows.values():
            window_remaining = float(window["end"]) - now
            window_intensity = blocking_intensity(window_remaining, float(window["duration"]))
            count = int(base * window_intensity)
            for _ in range(count):
                hash_work(HEAVY_ROUNDS, password=b"blocking-probe")
            iterations += count
            intensity = max(intensity, window_intensity)
            remaining = max(remaining, window_remaining)

        return BlockingWork(
            iterations=iterations,
            intensity=round(intensity, 3),
            remaining_seconds=round(remaining, 3),
            windows=len(windows),
        )

    def stop(self, simulation_id: str) -> Simulation | None:
        self._close(simulation_id)
        return self._tracker.stop_simulation(
            simulation_id, "Request blocking simulation stopped by user"
        )

    def cleanup(self, simulation_id: str) -> None:
        self._close(simulation_id)

    def _close(self, simulation_id: str) -> None:
        now = self._store.now()

        def close(windows: dict[str, Any] | None) -> dict[str, Any]:
            windows = _live(windows, now)
            windows.pop(simulation_id, None)
            return windows

        self._store.modify(WINDOWS_KEY, close, {}, ttl=self._windows_ttl())

    def _windows_ttl(self) -> float:
        return self._settings.max_simulation_duration_seconds + _WINDOW_TTL_SLACK


def _live(windows: Any, now: float) -> dict[str, dict[str, Any]]:
    if not isinstance(windows, dict):
        return {}
    return {
        sim_id: window
        for sim_id, window in windows.items()
        if isinstance(window, dict) and float(window.get("end", 0)) > now
    }


__all__ = ["RequestBlockingEffector", "WINDOWS_KEY", "blocking_intensity"]
