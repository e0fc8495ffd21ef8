"""Slow requests: hold the calling worker for a requested duration."""

from __future__ import annotations

import logging
import os
import tempfile
import time
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel

from perfsim.core import EffectorError, SimulationValidationError, burn_cpu_for, elapsed_ms
from perfsim.effectors.base import Effector, parse_params
from perfsim.models import (
    BlockingPattern,
    Simulation,
    SimulationType,
    SlowRequestParams,
    SlowRequestResult,
)

logger = logging.getLogger(__name__)

IO_CHUNK = b"x" * 4096


def sleep_for(seconds: float) -> None:
    time.sleep(seconds)


def cpu_for(seconds: float) -> None:
    burn_cpu_for(seconds)


def file_io_for(seconds: float) -> None:
    """Write and read back 4 KiB chunks on a temp file until *seconds* pass."""
    deadline = time.monotonic() + seconds
    fd, path = tempfile.mkstemp(prefix="perfsim_slow_")
    try:
        with os.fdopen(fd, "w+b") as fh:
            while time.monotonic() < deadline:
                fh.seek(0)
                fh.write(IO_CHUNK)
                fh.flush()
                os.fsync(fh.fileno())
                fh.seek(0)
                fh.read(len(IO_CHUNK))
    except OSError as exc:
        raise EffectorError(f"file I/O blocking failed: {exc}") from exc
    finally:
        try:
            os.unlink(path)
        except OSError:
            logger.warning("Could not remove temp file %s", path)


Strategy = Callable[[float], None]

DEFAULT_STRATEGIES: dict[BlockingPattern, Strategy] = {
    BlockingPattern.sleep: sleep_for,
    BlockingPattern.cpu_intensive: cpu_for,
    BlockingPattern.file_io: file_io_for,
}


class SlowRequestEffector(Effector):
    """Block the *calling* request synchronously, then report elapsed time."""

    simulation_type = SimulationType.slow_request

    def __init__(self, *args: Any, strategies: dict[BlockingPattern, Strategy] | None = None,
                 **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.strategies = {**DEFAULT_STRATEGIES, **(strategies or {})}

    def start(self, params: BaseModel | dict[str, Any]) -> Simulation:
        return self.delay(params).simulation

    def delay(self, params: BaseModel | dict[str, Any]) -> SlowRequestResult:
        """Run the chosen blocking pattern for ``delay_seconds``.

        Raises:
            SimulationValidationError: if the parameters are out of range.
        """
        slow = parse_params(SlowRequestParams, params)
        limit = self._settings.max_slow_request_seconds
        if slow.delay_seconds > limit:
            raise SimulationValidationError(f"delay_seconds must be between 0 and {limit}")

        pattern = slow.blocking_pattern
        simulation = self._tracker.create_simulation(
            self.simulation_type,
            slow.model_dump(mode="json"),
            slow.delay_seconds,
            message=f"Slow request started: {slow.delay_seconds}s using {pattern.description}",
            details={"delaySeconds": slow.delay_seconds, "blockingPattern": pattern.value},
        )

        started = time.perf_counter()
        try:
            self.strategies[pattern](slow.delay_seconds)
        except (EffectorError, OSError) as exc:
            elapsed = elapsed_ms(started)
            failed = self._tracker.fail_simulation(
                simulation.id,
                f"Slow request failed after {elapsed:.0f}ms: {exc}",
                {"elapsedMs": elapsed, "blockingPattern": pattern.value},
            )
            return SlowRequestResult(
                simulation=failed or simulation,
                requested_seconds=slow.delay_seconds,
                elapsed_ms=elapsed,
                blocking_pattern=pattern,
                error=str(exc),
            )

        elapsed = elapsed_ms(started)
        completed = self._tracker.complete_simulation(
            simulation.id,
            f"Slow request completed in {elapsed:.0f}ms",
            {"elapsedMs": elapsed, "blockingPattern": pattern.value},
        )
        return SlowRequestResult(
            simulation=completed or self._tracker.get_simulation(simulation.id) or simulation,
            requested_seconds=slow.delay_seconds,
            elapsed_ms=elapsed,
            blocking_pattern=pattern,
        )


__all__ = [
    "DEFAULT_STRATEGIES",
    "SlowRequestEffector",
    "cpu_for",
    "file_io_for",
    "sleep_for",
]
