"""Tests for perfsim.core: exceptions and work primitives."""

from __future__ import annotations

import time
from datetime import UTC

import pytest
from pydantic import ValidationError

from perfsim.core import (
    EffectorError,
    IntentionalCrashError,
    PerfSimError,
    SimulationNotFoundError,
    SimulationValidationError,
    StorageError,
    burn_cpu_for,
    elapsed_ms,
    from_timestamp,
    hash_work,
    utc_now,
)
from perfsim.models import MemoryPressureParams

# ---------------------------------------------------------------------------
# Custom exception hierarchy
# ---------------------------------------------------------------------------


class TestExceptionHierarchy:
    def test_perfsim_error_is_runtime_error(self) -> None:
        assert issubclass(PerfSimError, RuntimeError)

    @pytest.mark.parametrize("exc", [StorageError, EffectorError, IntentionalCrashError])
    def test_domain_errors_share_base(self, exc: type[Exception]) -> None:
        assert issubclass(exc, PerfSimError)

    def test_validation_error_is_value_error(self) -> None:
        assert issubclass(SimulationValidationError, ValueError)

    def test_not_found_is_key_error(self) -> None:
        assert issubclass(SimulationNotFoundError, KeyError)


class TestValidationErrorFromPydantic:
    def test_message_names_field(self) -> None:
        with pytest.raises(ValidationError) as info:
            MemoryPressureParams(size_mb=0)
        exc = SimulationValidationError.from_pydantic(info.value)
        assert str(exc).startswith("size_mb:")
        assert exc.errors[0]["loc"] == ("size_mb",)

    def test_multiple_errors_joined(self) -> None:
        with pytest.raises(ValidationError) as info:
            MemoryPressureParams(size_mb=0, extra=1)
        exc = SimulationValidationError.from_pydantic(info.value)
        assert "; " in str(exc)
        assert len(exc.errors) == 2

    def test_errors_default_empty(self) -> None:
        assert SimulationValidationError("bad").errors == []


# ---------------------------------------------------------------------------
# Work primitives
# ---------------------------------------------------------------------------


class TestHashWork:
    def test_deterministic(self) -> None:
        assert hash_work(10) == hash_work(10)

    def test_digest_length(self) -> None:
        assert len(hash_work(10, "sha256")) == 64

    def test_rounds_change_result(self) -> None:
        assert hash_work(10) != hash_work(11)


class TestBurnCpuFor:
    def test_runs_until_deadline(self) -> None:
        start = time.monotonic()
        operations = burn_cpu_for(0.05)
        assert time.monotonic() - start >= 0.05
        assert operations >= 1

    def test_zero_seconds_does_nothing(self) -> None:
        assert burn_cpu_for(0) == 0


class TestTimeHelpers:
    def test_utc_now_is_aware(self) -> None:
        assert utc_now().tzinfo is UTC

    def test_from_timestamp(self) -> None:
        moment = from_timestamp(0)
        assert moment.year == 1970
        assert moment.tzinfo is UTC

    def test_elapsed_ms(self) -> None:
        start = time.perf_counter()
        time.sleep(0.01)
        assert elapsed_ms(start) >= 9
