"""Launching, tracking and terminating external worker processes.

The CPU stress effector needs to find its burner processes again from a
later, unrelated request, so PIDs are recorded in the shared store keyed by
simulation id (:class:`ProcessRegistry`).  How a process is started and
killed is a separate capability (:class:`ProcessController`) so tests and
other platforms can substitute their own.
"""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from typing import Any

import psutil

from perfsim.storage import StateStore

logger = logging.getLogger(__name__)

CPU_PIDS_KEY = "perfsim_cpu_pids"


class ProcessController(ABC):
    """Start and stop detached OS processes."""

    @abstractmethod
    def spawn(self, argv: Sequence[str]) -> int:
        """Start *argv* detached from the caller and return its PID.

        Raises:
            OSError: if the process could not be started.
        """

    @abstractmethod
    def terminate(self, pids: Iterable[int], grace_seconds: float = 1.0) -> list[int]:
        """Ask each process to exit, force-kill stragglers, and return the PIDs signalled."""

    @abstractmethod
    def kill_matching(self, needle: str) -> list[int]:
        """Force-kill every process whose command line contains *needle*."""


class PsutilProcessController(ProcessController):
    """Real implementation: :mod:`subprocess` to launch, :mod:`psutil` to stop."""

    def spawn(self, argv: Sequence[str]) -> int:
        process = subprocess.Popen(  # noqa: S603
            list(argv),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        return process.pid

    def terminate(self, pids: Iterable[int], grace_seconds: float = 1.0) -> list[int]:
        processes = []
        for pid in pids:
            try:
                process = psutil.Process(int(pid))
                process.terminate()
                processes.append(process)
            except (psutil.NoSuchProcess, psutil.AccessDenied, ValueError):
                continue

        _, alive = psutil.wait_procs(processes, timeout=grace_seconds)
        for process in alive:
            try:
                process.kill()
            except psutil.NoSuchProcess:
                continue
        if alive:
            psutil.wait_procs(alive, timeout=grace_seconds)
        return [p.pid for p in processes]

    def kill_matching(self, needle: str) -> list[int]:
        killed = []
        for process in psutil.process_iter(["pid", "cmdline"]):
            cmdline = " ".join(process.info.get("cmdline") or [])
            if needle not in cmdline:
                continue
            try:
                process.kill()
                killed.append(process.pid)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return killed


class ProcessRegistry:
    """PIDs per simulation id, kept in the shared store."""

    def __init__(self, store: StateStore, key: str = CPU_PIDS_KEY) -> None:
        self._store = store
        self.key = key

    def record(self, simulation_id: str, pids: Iterable[int]) -> None:
        pid_list = [int(p) for p in pids]

        def add(all_pids: dict[str, Any] | None) -> dict[str, Any]:
            all_pids = dict(all_pids or {})
            all_pids[simulation_id] = pid_list
            return all_pids

        self._store.modify(self.key, add, {})

    def pids_for(self, simulation_id: str) -> list[int]:
        return [int(p) for p in self.all().get(simulation_id, [])]

    def all(self) -> dict[str, list[int]]:
        raw = self._store.get(self.key, {})
        return dict(raw) if isinstance(raw, dict) else {}

    def forget(self, *simulation_ids: str) -> None:
        def drop(all_pids: dict[str, Any] | None) -> dict[str, Any]:
            all_pids = dict(all_pids or {})
            for simulation_id in simulation_ids:
                all_pids.pop(simulation_id, None)
            return all_pids

        self._store.modify(self.key, drop, {})

    def clear(self) -> None:
        self._store.delete(self.key)


__all__ = [
    "CPU_PIDS_KEY",
    "ProcessController",
    "ProcessRegistry",
    "PsutilProcessController",
]
