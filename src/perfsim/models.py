"""Pydantic models for perfsim."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class SimulationType(str, Enum):
    """Categories of injectable faults."""

    cpu_stress = "CPU_STRESS"
    memory_pressure = "MEMORY_PRESSURE"
    request_blocking = "REQUEST_BLOCKING"
    slow_request = "SLOW_REQUEST"
    crash_failfast = "CRASH_FAILFAST"
    crash_stackoverflow = "CRASH_STACKOVERFLOW"
    crash_fatal = "CRASH_FATAL"
    crash_memory = "CRASH_MEMORY"

    @property
    def is_crash(self) -> bool:
        return self.value.startswith("CRASH_")


class SimulationStatus(str, Enum):
    """Lifecycle state of a simulation.  Every state but ``active`` is terminal."""

    active = "ACTIVE"
    completed = "COMPLETED"
    stopped = "STOPPED"
    failed = "FAILED"


class Simulation(BaseModel):
    """One tracked fault injection instance."""

    id: str
    type: SimulationType
    parameters: dict[str, Any] = Field(default_factory=dict)
    status: SimulationStatus = SimulationStatus.active
    started_at: datetime
    scheduled_end_at: datetime | None = None
    stopped_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        """True once the deadline has passed, whatever the persisted status says."""
        return self.scheduled_end_at is not None and now >= self.scheduled_end_at

    def is_active(self, now: datetime) -> bool:
        return self.status == SimulationStatus.active and not self.is_expired(now)


class EventLevel(str, Enum):
    """Severity of an event log entry."""

    info = "info"
    warn = "warn"
    error = "error"
    success = "success"


class EventEntry(BaseModel):
    """An immutable entry in the event ring buffer."""

    model_config = {"frozen": True}

    id: str
    seq: int
    timestamp: datetime
    level: EventLevel
    worker_pid: int
    event: str
    message: str
    simulation_id: str | None = None
    simulation_type: str | None = None
    details: dict[str, Any] | None = None


class EventsPage(BaseModel):
    """Response shape for the recent-events admin call."""

    events: list[EventEntry]
    count: int
    sequence: int


# ---------------------------------------------------------------------------
# Simulation parameters
# ---------------------------------------------------------------------------

_LEGACY_CPU_LEVELS: dict[str, int] = {"moderate": 75, "high": 100}


class CpuStressParams(BaseModel):
    """Parameters for a CPU stress simulation.

    ``level`` is the older coarse control; ``moderate`` maps to 75% and
    ``high`` to 100% target load.
    """

    model_config = {"extra": "forbid"}

    target_load_percent: int = Field(default=75, ge=1, le=100)
    duration_seconds: int = Field(ge=1)
    level: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _map_level(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("level") is not None:
            level = str(data["level"]).strip().lower()
            if level not in _LEGACY_CPU_LEVELS:
                raise ValueError(
                    f"level must be one of: {', '.join(_LEGACY_CPU_LEVELS)}"
                )
            data = {**data, "level": level}
            data.setdefault("target_load_percent", _LEGACY_CPU_LEVELS[level])
        return data


class MemoryPressureParams(BaseModel):
    model_config = {"extra": "forbid"}

    size_mb: int = Field(ge=1)


class BlockingParams(BaseModel):
    """Parameters for a request-blocking window."""

    model_config = {"extra": "forbid"}

    duration_seconds: int = Field(ge=1)
    concurrent_workers: int = 5

    @field_validator("concurrent_workers", mode="before")
    @classmethod
    def _clamp_workers(cls, value: Any) -> int:
        try:
            workers = int(value)
        except (TypeError, ValueError):
            return 5
        if workers < 1:
            return 5
        return min(workers, 1000)


class BlockingPattern(str, Enum):
    """How a slow request occupies its worker."""

    sleep = "sleep"
    cpu_intensive = "cpu_intensive"
    file_io = "file_io"

    @property
    def description(self) -> str:
        return {
            BlockingPattern.sleep: "idle sleep (non-blocking wait)",
            BlockingPattern.cpu_intensive: "CPU-intensive computation",
            BlockingPattern.file_io: "file I/O blocking",
        }[self]


class SlowRequestParams(BaseModel):
    model_config = {"extra": "forbid"}

    delay_seconds: float = Field(gt=0)
    blocking_pattern: BlockingPattern = BlockingPattern.sleep


class CrashMode(str, Enum):
    """How a crash simulation terminates its worker."""

    failfast = "failfast"
    stackoverflow = "stackoverflow"
    exception = "exception"
    memory = "memory"

    @property
    def simulation_type(self) -> SimulationType:
        return {
            CrashMode.failfast: SimulationType.crash_failfast,
            CrashMode.stackoverflow: SimulationType.crash_stackoverflow,
            CrashMode.exception: SimulationType.crash_fatal,
            CrashMode.memory: SimulationType.crash_memory,
        }[self]


class CrashParams(BaseModel):
    model_config = {"extra": "forbid"}

    mode: CrashMode = CrashMode.failfast


class DegradationMode(str, Enum):
    """Shape of the response-time curve above the soft limit."""

    linear = "linear"
    multiplicative = "multiplicative"


class LoadTestRequest(BaseModel):
    """Parameters for one synthetic load request.

    ``cpu_work_ms``, ``memory_size_kb`` and ``target_duration_ms`` are
    accepted as aliases for callers using the older names.
    """

    work_ms: int = 100
    memory_kb: int = 10000
    hold_ms: int = 500
    baseline_delay_ms: int = Field(default=1000, ge=0)
    soft_limit: int = Field(default=20, ge=0)
    degradation_factor: int = Field(default=1000, ge=0)
    degradation_mode: DegradationMode = DegradationMode.linear
    degradation_multiplier: float = Field(default=1.5, ge=1.0)

    @model_validator(mode="before")
    @classmethod
    def _legacy_names(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "target_duration_ms" in data:
                data["work_ms"] = data.pop("target_duration_ms")
            if "cpu_work_ms" in data and "work_ms" not in data:
                data["work_ms"] = data.pop("cpu_work_ms")
            if "memory_size_kb" in data and "memory_kb" not in data:
                data["memory_kb"] = data.pop("memory_size_kb")
        return data

    @field_validator("work_ms")
    @classmethod
    def _clamp_work(cls, value: int) -> int:
        return max(10, min(value, 5000))

    @field_validator("memory_kb")
    @classmethod
    def _clamp_memory(cls, value: int) -> int:
        return max(1, min(value, 50000))

    @field_validator("hold_ms")
    @classmethod
    def _clamp_hold(cls, value: int) -> int:
        return max(0, min(value, 5000))


# ---------------------------------------------------------------------------
# Effector results
# ---------------------------------------------------------------------------

class BlockingWork(BaseModel):
    iterations: int
    intensity: float
    remaining_seconds: float
    windows: int = 1


class WorkerLoadResult(BaseModel):
    loaded_mb: int
    worker_rss_before_mb: float
    worker_rss_after_mb: float


class MemoryReleaseResult(BaseModel):
    """Outcome of releasing one allocation.  Releasing twice is still a success."""

    id: str
    simulation: Simulation | None = None
    size_mb: int = 0
    was_allocated: bool = False


class SlowRequestResult(BaseModel):
    simulation: Simulation
    requested_seconds: float
    elapsed_ms: float
    blocking_pattern: BlockingPattern
    error: str | None = None


class MultiCrashResult(BaseModel):
    requested: int
    initiated: int
    crash_type: str
    known_workers: int


class WorkerActivity(BaseModel):
    pid: int
    is_new_worker: bool = False
    is_restarted_worker: bool = False


class CrashStats(BaseModel):
    total_crashes: int = 0
    last_crash_time: datetime | None = None
    last_crash_type: str | None = None
    last_crashed_pid: int | None = None
    crashes_by_type: dict[str, int] = Field(default_factory=dict)
    detected_restarts: int = 0
    active_worker_count: int = 0
    active_worker_pids: list[int] = Field(default_factory=list)
    recent_worker_events: list[dict[str, Any]] = Field(default_factory=list)


class LoadTestResult(BaseModel):
    requested_work_ms: int
    actual_cpu_work_ms: float
    hold_ms: int
    concurrent_requests: int
    target_response_ms: float
    degradation_delay_ms: float
    total_elapsed_ms: float
    memory_allocated_kb: float
    bytes_touched: int
    worker_pid: int


class LoadTestStats(BaseModel):
    current_concurrent_requests: int = 0
    total_requests_processed: int = 0
    average_response_time_ms: float = 0.0
    timestamp: datetime


class LoadTestState(BaseModel):
    active: bool
    concurrent: int


class ProbeResult(BaseModel):
    """What one probe invocation did and observed."""

    ts: int
    pid: int
    work_done: dict[str, dict[str, Any]] = Field(default_factory=dict)
    load_test: LoadTestState


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class CpuMetrics(BaseModel):
    """System load averages, with usage estimated from the 1-minute load."""

    usage_percent: float
    load_avg_1m: float
    load_avg_5m: float
    load_avg_15m: float
    cpu_count: int


class MemoryMetrics(BaseModel):
    process_rss_mb: float
    process_vms_mb: float
    system_total_mb: float
    system_available_mb: float
    system_used_percent: float
    store_entries: int


class ProcessMetrics(BaseModel):
    pid: int
    python_version: str
    uptime_seconds: float
    threads: int


class BlockingMetrics(BaseModel):
    active_blocking_simulations: int


class MetricsSnapshot(BaseModel):
    """Everything one metrics poll reports."""

    timestamp: datetime
    cpu: CpuMetrics
    memory: MemoryMetrics
    process: ProcessMetrics
    request_blocking: BlockingMetrics
    load_test: LoadTestStats


__all__ = [
    "BlockingMetrics",
    "BlockingParams",
    "BlockingPattern",
    "BlockingWork",
    "CpuMetrics",
    "CpuStressParams",
    "CrashMode",
    "CrashParams",
    "CrashStats",
    "DegradationMode",
    "EventEntry",
    "EventLevel",
    "EventsPage",
    "LoadTestRequest",
    "LoadTestResult",
    "LoadTestState",
    "LoadTestStats",
    "MemoryMetrics",
    "MemoryPressureParams",
    "MemoryReleaseResult",
    "MetricsSnapshot",
    "MultiCrashResult",
    "ProbeResult",
    "ProcessMetrics",
    "Simulation",
    "SimulationStatus",
    "SimulationType",
    "SlowRequestParams",
    "SlowRequestResult",
    "WorkerActivity",
    "WorkerLoadResult",
]
