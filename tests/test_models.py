"""Tests for perfsim.models: Pydantic data models."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from perfsim.models import (
    BlockingParams,
    BlockingPattern,
    CpuStressParams,
    CrashMode,
    CrashParams,
    EventEntry,
    EventLevel,
    Simulation,
    SimulationStatus,
    SimulationType,
    SlowRequestParams,
)

NOW = datetime(2024, 1, 1, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TestSimulationType:
    def test_wire_values(self) -> None:
        assert {t.value for t in SimulationType} == {
            "CPU_STRESS",
            "MEMORY_PRESSURE",
            "REQUEST_BLOCKING",
            "SLOW_REQUEST",
            "CRASH_FAILFAST",
            "CRASH_STACKOVERFLOW",
            "CRASH_FATAL",
            "CRASH_MEMORY",
        }

    def test_is_crash(self) -> None:
        assert SimulationType.crash_memory.is_crash
        assert not SimulationType.cpu_stress.is_crash


class TestCrashMode:
    def test_every_mode_maps_to_crash_type(self) -> None:
        types = {mode.simulation_type for mode in CrashMode}
        assert types == {t for t in SimulationType if t.is_crash}

    def test_exception_mode_is_fatal_type(self) -> None:
        assert CrashMode.exception.simulation_type == SimulationType.crash_fatal

    def test_params_default_failfast(self) -> None:
        assert CrashParams().mode == CrashMode.failfast


def test_blocking_pattern_descriptions() -> None:
    assert all(pattern.description for pattern in BlockingPattern)


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------


class TestSimulation:
    def _make(self, **overrides: object) -> Simulation:
        data: dict[str, object] = {
            "id": "sim-1",
            "type": SimulationType.request_blocking,
            "started_at": NOW,
            "scheduled_end_at": NOW + timedelta(seconds=10),
        }
        data.update(overrides)
        return Simulation(**data)

    def test_default_status_active(self) -> None:
        assert self._make().status == SimulationStatus.active

    def test_active_before_deadline(self) -> None:
        assert self._make().is_active(NOW + timedelta(seconds=9))

    def test_expired_at_deadline(self) -> None:
        simulation = self._make()
        assert simulation.is_expired(NOW + timedelta(seconds=10))
        assert not simulation.is_active(NOW + timedelta(seconds=10))

    def test_no_deadline_never_expires(self) -> None:
        simulation = self._make(scheduled_end_at=None)
        assert not simulation.is_expired(NOW + timedelta(days=365))

    def test_terminal_status_not_active(self) -> None:
        assert not self._make(status=SimulationStatus.stopped).is_active(NOW)

    def test_json_round_trip_keeps_wire_values(self) -> None:
        payload = self._make().model_dump(mode="json")
        assert payload["type"] == "REQUEST_BLOCKING"
        assert payload["status"] == "ACTIVE"
        assert Simulation.model_validate(payload) == self._make()


class TestEventEntry:
    def test_frozen(self) -> None:
        entry = EventEntry(
            id="e", seq=1, timestamp=NOW, level=EventLevel.info,
            worker_pid=1, event="E", message="m",
        )
        with pytest.raises(ValidationError):
            entry.message = "changed"  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------


class TestCpuStressParams:
    def test_default_target(self) -> None:
        assert CpuStressParams(duration_seconds=5).target_load_percent == 75

    @pytest.mark.parametrize(("level", "target"), [("moderate", 75), ("HIGH", 100)])
    def test_level_mapping(self, level: str, target: int) -> None:
        assert CpuStressParams(level=level, duration_seconds=5).target_load_percent == target

    def test_explicit_target_wins_over_level(self) -> None:
        params = CpuStressParams(level="high", target_load_percent=40, duration_seconds=5)
        assert params.target_load_percent == 40

    def test_unknown_level_rejected(self) -> None:
        with pytest.raises(ValidationError):
            CpuStressParams(level="extreme", duration_seconds=5)


class TestBlockingParams:
    @pytest.mark.parametrize(("given", "expected"), [(0, 5), ("abc", 5), (20, 20), (10**6, 1000)])
    def test_workers_normalised(self, given: object, expected: int) -> None:
        assert BlockingParams(duration_seconds=1, concurrent_workers=given).concurrent_workers == expected

    def test_extra_fields_forbidden(self) -> None:
        with pytest.raises(ValidationError):
            BlockingParams(duration_seconds=1, intensity=3)


class TestSlowRequestParams:
    def test_pattern_from_string(self) -> None:
        params = SlowRequestParams(delay_seconds=1, blocking_pattern="cpu_intensive")
        assert params.blocking_pattern == BlockingPattern.cpu_intensive

    def test_delay_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            SlowRequestParams(delay_seconds=0)
