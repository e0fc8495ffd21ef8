"""Fault effectors: one per simulation type."""

from perfsim.effectors.base import Effector, parse_params
from perfsim.effectors.blocking import RequestBlockingEffector
from perfsim.effectors.cpu import CpuStressEffector
from perfsim.effectors.crash import CrashEffector
from perfsim.effectors.memory import MemoryPressureEffector
from perfsim.effectors.slow import SlowRequestEffector
from perfsim.effectors.workers import CrashTracker

__all__ = [
    "CpuStressEffector",
    "CrashEffector",
    "CrashTracker",
    "Effector",
    "MemoryPressureEffector",
    "RequestBlockingEffector",
    "SlowRequestEffector",
    "parse_params",
]
