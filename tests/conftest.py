"""Shared pytest fixtures for the perfsim test suite."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

import pytest

from perfsim.config import Settings, StorageBackend
from perfsim.effectors.workers import CrashTracker
from perfsim.events import EventLog
from perfsim.harness import PerfSim
from perfsim.models import CrashMode
from perfsim.processes import ProcessController
from perfsim.storage import MemoryStateStore
from perfsim.tracker import SimulationTracker

START_TS = 1_700_000_000.0

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = START_TS) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProcessController(ProcessController):
    """Hands out fake PIDs and records every terminate/kill request."""

    def __init__(self, fail_after: int | None = None) -> None:
        self.fail_after = fail_after
        self.spawned: list[list[str]] = []
        self.terminated: list[int] = []
        self.matched: list[str] = []
        self._next_pid = 40_000

    def spawn(self, argv: Sequence[str]) -> int:
        if self.fail_after is not None and len(self.spawned) >= self.fail_after:
            raise OSError("fork failed: resource temporarily unavailable")
        self.spawned.append(list(argv))
        self._next_pid += 1
        return self._next_pid

    def terminate(self, pids: Iterable[int], grace_seconds: float = 1.0) -> list[int]:
        pids = list(pids)
        self.terminated.extend(pids)
        return pids

    def kill_matching(self, needle: str) -> list[int]:
        self.matched.append(needle)
        return []


class CrashRecorder:
    """Stand-in crash actions that only remember they were invoked."""

    def __init__(self) -> None:
        self.calls: list[CrashMode] = []

    def actions(self) -> dict[CrashMode, object]:
        return {mode: (lambda mode=mode: self.calls.append(mode)) for mode in CrashMode}


# ---------------------------------------------------------------------------
# Core object fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def restore_perfsim_logger():
    """Undo handler and level changes made by configure_logging."""
    logger = logging.getLogger("perfsim")
    handlers, level = list(logger.handlers), logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(clock: FakeClock) -> MemoryStateStore:
    """In-memory store driven by the fake clock."""
    return MemoryStateStore(clock)


@pytest.fixture()
def settings() -> Settings:
    """Memory-backed settings with a cheap blocking tax."""
    return Settings(storage_backend=StorageBackend.memory, blocking_iterations=4)


@pytest.fixture()
def event_log(store: MemoryStateStore) -> EventLog:
    return EventLog(store, max_entries=100)


@pytest.fixture()
def tracker(store: MemoryStateStore, event_log: EventLog) -> SimulationTracker:
    return SimulationTracker(store, event_log)


@pytest.fixture()
def controller() -> FakeProcessController:
    return FakeProcessController()


@pytest.fixture()
def crash_recorder() -> CrashRecorder:
    return CrashRecorder()


@pytest.fixture()
def crash_tracker(store: MemoryStateStore) -> CrashTracker:
    return CrashTracker(store, pid_provider=lambda: 4242)


@pytest.fixture()
def sim(
    store: MemoryStateStore,
    settings: Settings,
    controller: FakeProcessController,
    crash_recorder: CrashRecorder,
) -> PerfSim:
    """A harness on four fake cores that never spawns or kills real processes."""
    return PerfSim(
        store,
        settings,
        process_controller=controller,
        crash_actions=crash_recorder.actions(),
        cores=4,
    )


@pytest.fixture()
def make_controller() -> type[FakeProcessController]:
    """The fake controller class, for tests that need a custom instance."""
    return FakeProcessController
