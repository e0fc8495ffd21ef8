"""Exceptions and fixed-cost work primitives shared by every perfsim component."""

from __future__ import annotations

import hashlib
import time
from datetime import UTC, datetime

from pydantic import ValidationError

# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------

class PerfSimError(RuntimeError):
    """Base class for errors raised by perfsim."""


class SimulationValidationError(ValueError):
    """Simulation parameters were rejected before any state was touched."""

    def __init__(self, message: str, errors: list[dict[str, object]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def from_pydantic(cls, exc: ValidationError) -> SimulationValidationError:
        """Flatten a pydantic :class:`ValidationError` into a single message."""
        parts = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"]) or "parameters"
            parts.append(f"{field}: {error['msg']}")
        return cls("; ".join(parts), [dict(e) for e in exc.errors()])


class SimulationNotFoundError(KeyError):
    """Raised when a simulation id is not present in the registry."""


class StorageError(PerfSimError):
    """The shared storage medium could not be read or written."""


class EffectorError(PerfSimError):
    """A fault effector failed while producing its side effect."""


class IntentionalCrashError(PerfSimError):
    """Raised by the fatal-error crash mode.  This one is the deliverable."""


# ---------------------------------------------------------------------------
# Work primitives
# ---------------------------------------------------------------------------

# PBKDF2 round counts.  10k rounds is a few ms of pure CPU per call; 1k gives
# finer time granularity for duration-bounded loops.
HEAVY_ROUNDS = 10_000
LIGHT_ROUNDS = 1_000


def hash_work(
    rounds: int = HEAVY_ROUNDS,
    algorithm: str = "sha512",
    password: bytes = b"password",
    salt: bytes = b"salt",
) -> bytes:
    """Perform one fixed-cost PBKDF2 derivation that cannot be optimised away."""
    return hashlib.pbkdf2_hmac(algorithm, password, salt, rounds, 64)


def burn_cpu_for(
    seconds: float,
    rounds: int = LIGHT_ROUNDS,
    algorithm: str = "sha512",
) -> int:
    """Spin on :func:`hash_work` until *seconds* have elapsed.

    Returns:
        The number of hash operations performed.
    """
    deadline = time.monotonic() + seconds
    operations = 0
    while time.monotonic() < deadline:
        hash_work(rounds, algorithm)
        operations += 1
    return operations


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


def from_timestamp(ts: float) -> datetime:
    """Convert an epoch timestamp into an aware UTC datetime."""
    return datetime.fromtimestamp(ts, tz=UTC)


def elapsed_ms(start: float) -> float:
    """Milliseconds elapsed since the ``time.perf_counter`` reading *start*."""
    return round((time.perf_counter() - start) * 1000, 2)


__all__ = [
    "EffectorError",
    "HEAVY_ROUNDS",
    "IntentionalCrashError",
    "LIGHT_ROUNDS",
    "PerfSimError",
    "SimulationNotFoundError",
    "SimulationValidationError",
    "StorageError",
    "burn_cpu_for",
    "elapsed_ms",
    "from_timestamp",
    "hash_work",
    "utc_now",
]
