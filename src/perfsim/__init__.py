"""perfsim: fault-injection harness for practising performance diagnosis."""

from perfsim.config import Settings, StorageBackend, configure_logging
from perfsim.core import (
    EffectorError,
    IntentionalCrashError,
    PerfSimError,
    SimulationNotFoundError,
    SimulationValidationError,
    StorageError,
)
from perfsim.decorators import probed, wsgi_deferred
from perfsim.deferred import DeferredActions, DeferredResponse
from perfsim.events import EventLog
from perfsim.harness import PerfSim
from perfsim.loadtest import LoadGenerator, calculate_target_response_ms
from perfsim.metrics import MetricsCollector
from perfsim.models import (
    CrashMode,
    EventEntry,
    EventLevel,
    MetricsSnapshot,
    ProbeResult,
    Simulation,
    SimulationStatus,
    SimulationType,
)
from perfsim.probe import ProbeAggregator
from perfsim.storage import FileStateStore, MemoryStateStore, StateStore
from perfsim.tracker import SimulationTracker

__version__ = "0.1.0"

__all__ = [
    "CrashMode",
    "DeferredActions",
    "DeferredResponse",
    "EffectorError",
    "EventEntry",
    "EventLevel",
    "EventLog",
    "FileStateStore",
    "IntentionalCrashError",
    "LoadGenerator",
    "MemoryStateStore",
    "MetricsCollector",
    "MetricsSnapshot",
    "PerfSim",
    "PerfSimError",
    "ProbeAggregator",
    "ProbeResult",
    "Settings",
    "Simulation",
    "SimulationNotFoundError",
    "SimulationStatus",
    "SimulationTracker",
    "SimulationType",
    "SimulationValidationError",
    "StateStore",
    "StorageBackend",
    "StorageError",
    "calculate_target_response_ms",
    "configure_logging",
    "probed",
    "wsgi_deferred",
]
