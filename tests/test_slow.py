"""Tests for perfsim.effectors.slow: SlowRequestEffector and its strategies."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from perfsim.config import Settings
from perfsim.core import EffectorError, SimulationValidationError
from perfsim.effectors.slow import SlowRequestEffector, cpu_for, file_io_for
from perfsim.models import BlockingPattern, SimulationStatus


@pytest.fixture()
def recorded() -> list[tuple[str, float]]:
    return []


@pytest.fixture()
def slow(store, tracker, event_log, settings, recorded) -> SlowRequestEffector:
    """Effector whose strategies record the requested delay instead of blocking."""
    return SlowRequestEffector(
        store, tracker, event_log, settings,
        strategies={
            pattern: (lambda seconds, p=pattern: recorded.append((p.value, seconds)))
            for pattern in BlockingPattern
        },
    )


class TestDelay:
    @pytest.mark.parametrize("pattern", list(BlockingPattern))
    def test_pattern_dispatch(self, slow: SlowRequestEffector, recorded, pattern) -> None:
        result = slow.delay({"delay_seconds": 2.5, "blocking_pattern": pattern.value})
        assert recorded == [(pattern.value, 2.5)]
        assert result.blocking_pattern == pattern
        assert result.requested_seconds == 2.5

    def test_default_pattern_is_sleep(self, slow: SlowRequestEffector, recorded) -> None:
        slow.delay({"delay_seconds": 1})
        assert recorded[0][0] == "sleep"

    def test_success_completes_simulation(self, slow: SlowRequestEffector, tracker) -> None:
        result = slow.delay({"delay_seconds": 1})
        assert result.error is None
        assert result.simulation.status == SimulationStatus.completed
        assert tracker.get_simulation(result.simulation.id).status == SimulationStatus.completed

    def test_start_returns_simulation(self, slow: SlowRequestEffector) -> None:
        assert slow.start({"delay_seconds": 1}).status == SimulationStatus.completed

    def test_failure_marks_failed(self, store, tracker, event_log, settings) -> None:
        def broken(_: float) -> None:
            raise EffectorError("disk vanished")

        effector = SlowRequestEffector(
            store, tracker, event_log, settings, strategies={BlockingPattern.file_io: broken}
        )
        result = effector.delay({"delay_seconds": 1, "blocking_pattern": "file_io"})
        assert result.error == "disk vanished"
        assert result.simulation.status == SimulationStatus.failed
        assert "SIMULATION_FAILED" in [e.event for e in event_log.get_entries()]

    @pytest.mark.parametrize(
        "params",
        [{"delay_seconds": 0}, {"delay_seconds": -1}, {"blocking_pattern": "sleep"},
         {"delay_seconds": 1, "blocking_pattern": "network"}],
    )
    def test_invalid_params_rejected(self, slow: SlowRequestEffector, tracker, params) -> None:
        with pytest.raises(SimulationValidationError):
            slow.delay(params)
        assert tracker.get_all_simulations() == []

    def test_delay_above_limit_rejected(self, store, tracker, event_log) -> None:
        effector = SlowRequestEffector(store, tracker, event_log, Settings(max_slow_request_seconds=5))
        with pytest.raises(SimulationValidationError):
            effector.delay({"delay_seconds": 6})


class TestRealStrategies:
    def test_sleep_blocks_caller(self, store, tracker, event_log, settings) -> None:
        effector = SlowRequestEffector(store, tracker, event_log, settings)
        result = effector.delay({"delay_seconds": 0.05})
        assert result.elapsed_ms >= 45

    def test_cpu_for_returns_after_duration(self) -> None:
        cpu_for(0.02)

    def test_file_io_cleans_up_temp_file(self) -> None:
        before = set(Path(tempfile.gettempdir()).glob("perfsim_slow_*"))
        file_io_for(0.02)
        after = set(Path(tempfile.gettempdir()).glob("perfsim_slow_*"))
        assert after <= before
