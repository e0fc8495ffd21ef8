"""Environment-driven settings and logging setup for perfsim."""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from collections.abc import Mapping
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class StorageBackend(str, Enum):
    """Which shared-state medium backs the store."""

    memory = "memory"
    file = "file"


def _default_storage_path() -> Path:
    return Path(tempfile.gettempdir()) / "perfsim"


class Settings(BaseModel):
    """Tunable limits and defaults.

    Every field can be overridden from the environment through
    :meth:`from_env`.  Values that fail to parse fall back to the default
    instead of aborting start-up.
    """

    model_config = {"frozen": True}

    storage_backend: StorageBackend = StorageBackend.file
    storage_path: Path = Field(default_factory=_default_storage_path)
    storage_lock_timeout_seconds: float = Field(default=5.0, gt=0)

    event_log_max_entries: int = Field(default=100, gt=0)
    simulation_history_limit: int = Field(default=200, ge=0)

    max_simulation_duration_seconds: int = Field(default=86400, gt=0)
    max_memory_allocation_mb: int = Field(default=65536, gt=0)
    max_slow_request_seconds: int = Field(default=300, gt=0)

    cpu_max_workers: int = Field(default=16, gt=0)
    cpu_kill_grace_seconds: float = Field(default=1.0, ge=0)
    blocking_iterations: int = Field(default=15, gt=0)
    memory_probe_load_mb: int = Field(default=0, ge=0)
    memory_worker_load_cap_mb: int = Field(default=256, gt=0)
    crash_record_seconds: int = Field(default=5, gt=0)
    internal_base_url: str = "http://localhost:8080"

    loadtest_stats_period_seconds: int = Field(default=60, gt=0)
    loadtest_inflight_ttl_seconds: int = Field(default=60, gt=0)
    loadtest_max_delay_ms: int = Field(default=30000, ge=0)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from *environ* (defaults to ``os.environ``)."""
        env = os.environ if environ is None else environ
        defaults = cls()
        values: dict[str, object] = {}

        for env_name, field_name in _INT_ENV.items():
            values[field_name] = _int_env(env, env_name, getattr(defaults, field_name))

        backend = env.get("PERFSIM_STORAGE_BACKEND", "").strip().lower()
        if backend in {b.value for b in StorageBackend}:
            values["storage_backend"] = StorageBackend(backend)
        if env.get("PERFSIM_STORAGE_PATH"):
            values["storage_path"] = Path(env["PERFSIM_STORAGE_PATH"])
        if env.get("PERFSIM_INTERNAL_BASE_URL"):
            values["internal_base_url"] = env["PERFSIM_INTERNAL_BASE_URL"].rstrip("/")
        if env.get("PERFSIM_LOG_LEVEL"):
            values["log_level"] = env["PERFSIM_LOG_LEVEL"].upper()

        return cls(**values)


_INT_ENV: dict[str, str] = {
    "EVENT_LOG_MAX_ENTRIES": "event_log_max_entries",
    "MAX_SIMULATION_DURATION_SECONDS": "max_simulation_duration_seconds",
    "MAX_MEMORY_ALLOCATION_MB": "max_memory_allocation_mb",
    "PERFSIM_CPU_MAX_WORKERS": "cpu_max_workers",
    "PERFSIM_BLOCKING_ITERATIONS": "blocking_iterations",
    "PERFSIM_MEMORY_PROBE_LOAD_MB": "memory_probe_load_mb",
}


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    # Zero is only meaningful for fields whose default already is zero.
    if value < 0 or (value == 0 and default != 0):
        return default
    return value


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_HANDLER_NAME = "perfsim-stderr"


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Attach a single stderr handler to the ``perfsim`` logger.

    Event log lines are already formatted as
    ``[timestamp] [LEVEL] event: message``, so the handler prints the bare
    message.  Calling this again replaces the handler, binding it to the
    current ``sys.stderr``.
    """
    root = logging.getLogger("perfsim")
    root.setLevel(level)
    for old in [h for h in root.handlers if h.get_name() == _HANDLER_NAME]:
        root.removeHandler(old)
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    return root


__all__ = ["Settings", "StorageBackend", "configure_logging"]
