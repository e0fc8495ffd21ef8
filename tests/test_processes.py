"""Tests for perfsim.processes: ProcessRegistry and PsutilProcessController."""

from __future__ import annotations

import sys

import psutil
import pytest

from perfsim.processes import CPU_PIDS_KEY, ProcessRegistry, PsutilProcessController

# ---------------------------------------------------------------------------
# ProcessRegistry
# ---------------------------------------------------------------------------


class TestProcessRegistry:
    def test_record_and_lookup(self, store) -> None:
        registry = ProcessRegistry(store)
        registry.record("sim-a", [1, 2])
        registry.record("sim-b", ["3"])
        assert registry.pids_for("sim-a") == [1, 2]
        assert registry.pids_for("sim-b") == [3]
        assert registry.pids_for("unknown") == []

    def test_stored_under_shared_key(self, store) -> None:
        ProcessRegistry(store).record("sim-a", [7])
        assert store.get(CPU_PIDS_KEY) == {"sim-a": [7]}

    def test_visible_to_other_instances(self, store) -> None:
        ProcessRegistry(store).record("sim-a", [7])
        assert ProcessRegistry(store).all() == {"sim-a": [7]}

    def test_forget(self, store) -> None:
        registry = ProcessRegistry(store)
        registry.record("sim-a", [1])
        registry.record("sim-b", [2])
        registry.forget("sim-a", "missing")
        assert registry.all() == {"sim-b": [2]}

    def test_clear(self, store) -> None:
        registry = ProcessRegistry(store)
        registry.record("sim-a", [1])
        registry.clear()
        assert registry.all() == {}

    def test_corrupt_value_reads_empty(self, store) -> None:
        store.set(CPU_PIDS_KEY, ["not", "a", "mapping"])
        assert ProcessRegistry(store).all() == {}


# ---------------------------------------------------------------------------
# PsutilProcessController
# ---------------------------------------------------------------------------

_SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]


class TestPsutilProcessController:
    def test_spawn_and_terminate(self) -> None:
        controller = PsutilProcessController()
        pid = controller.spawn(_SLEEPER)
        assert psutil.pid_exists(pid)
        assert controller.terminate([pid], grace_seconds=2) == [pid]
        assert not psutil.pid_exists(pid)

    def test_terminate_unknown_pid_is_ignored(self) -> None:
        assert PsutilProcessController().terminate([2**22 + 12345], grace_seconds=0.1) == []

    def test_spawn_missing_executable_raises(self) -> None:
        with pytest.raises(OSError):
            PsutilProcessController().spawn(["/nonexistent/perfsim-binary"])

    def test_kill_matching(self) -> None:
        controller = PsutilProcessController()
        marker = "perfsim-kill-matching-marker"
        pid = controller.spawn([sys.executable, "-c", f"import time; time.sleep(60)  # {marker}"])
        try:
            killed = controller.kill_matching(marker)
            assert pid in killed
        finally:
            controller.terminate([pid], grace_seconds=0.5)
