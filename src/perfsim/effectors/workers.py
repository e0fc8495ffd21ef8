"""Worker activity and crash bookkeeping.

Every probe records the PID of the worker that served it.  PIDs not seen
for :data:`WORKER_PID_TTL` seconds are considered gone, which gives a rough
count of live workers for the multi-crash trigger.  A PID that first shows
up while a crash is still awaiting its replacement is counted as a restart.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from typing import Any

from perfsim.core import from_timestamp
from perfsim.models import CrashStats, WorkerActivity
from perfsim.storage import StateStore

logger = logging.getLogger(__name__)

CRASH_STATS_KEY = "perfsim_crash_stats"
WORKER_PIDS_KEY = "perfsim_worker_pids"

WORKER_PID_TTL = 300
HISTORY_LIMIT = 50


def _empty_stats() -> dict[str, Any]:
    return {
        "total_crashes": 0,
        "last_crash_time": None,
        "last_crash_type": None,
        "last_crashed_pid": None,
        "crashes_by_type": {},
        "detected_restarts": 0,
        "pending_restarts": 0,
        "recent_worker_events": [],
    }


def _append_history(stats: dict[str, Any], event: dict[str, Any]) -> None:
    history = list(stats.get("recent_worker_events") or [])
    history.append(event)
    stats["recent_worker_events"] = history[-HISTORY_LIMIT:]


class CrashTracker:
    """Shared-store record of crashes and of which workers have been seen."""

    def __init__(self, store: StateStore, pid_provider: Callable[[], int] = os.getpid) -> None:
        self._store = store
        self._pid_provider = pid_provider

    def _live_pids(self, pids: Any, now: float) -> dict[str, float]:
        if not isinstance(pids, dict):
            return {}
        return {
            pid: float(seen)
            for pid, seen in pids.items()
            if now - float(seen) < WORKER_PID_TTL
        }

    def record_worker_activity(self, pid: int | None = None) -> WorkerActivity:
        """Mark *pid* (default: this process) as alive right now."""
        pid = pid if pid is not None else self._pid_provider()
        now = self._store.now()
        is_new: list[bool] = [False]

        def touch(pids: dict[str, Any] | None) -> dict[str, float]:
            live = self._live_pids(pids, now)
            is_new[0] = str(pid) not in live
            live[str(pid)] = now
            return live

        self._store.modify(WORKER_PIDS_KEY, touch, {})
        if not is_new[0]:
            return WorkerActivity(pid=pid)

        restarted: list[bool] = [False]
        stamp = from_timestamp(now).isoformat()

        def note(stats: dict[str, Any] | None) -> dict[str, Any]:
            stats = {**_empty_stats(), **(stats or {})}
            restarted[0] = int(stats.get("pending_restarts", 0)) > 0
            if restarted[0]:
                stats["pending_restarts"] = int(stats["pending_restarts"]) - 1
                stats["detected_restarts"] = int(stats.get("detected_restarts", 0)) + 1
            _append_history(
                stats,
                {"type": "restart" if restarted[0] else "new_worker", "pid": pid, "timestamp": stamp},
            )
            return stats

        self._store.modify(CRASH_STATS_KEY, note, {})
        if restarted[0]:
            logger.info("Worker %d appeared after a crash; counting it as a restart", pid)
        return WorkerActivity(pid=pid, is_new_worker=True, is_restarted_worker=restarted[0])

    def record_crash(self, crash_type: str, pid: int | None = None) -> None:
        """Note that *pid* (default: this process) is about to crash with *crash_type*."""
        pid = pid if pid is not None else self._pid_provider()
        stamp = from_timestamp(self._store.now()).isoformat()

        def bump(stats: dict[str, Any] | None) -> dict[str, Any]:
            stats = {**_empty_stats(), **(stats or {})}
            by_type = dict(stats.get("crashes_by_type") or {})
            by_type[crash_type] = int(by_type.get(crash_type, 0)) + 1
            stats.update(
                total_crashes=int(stats.get("total_crashes", 0)) + 1,
                last_crash_time=stamp,
                last_crash_type=crash_type,
                last_crashed_pid=pid,
                crashes_by_type=by_type,
                pending_restarts=int(stats.get("pending_restarts", 0)) + 1,
            )
            _append_history(stats, {"type": "crash", "pid": pid, "crash_type": crash_type,
                                    "timestamp": stamp})
            return stats

        self._store.modify(CRASH_STATS_KEY, bump, {})

        def forget(pids: dict[str, Any] | None) -> dict[str, Any]:
            pids = dict(pids or {})
            pids.pop(str(pid), None)
            return pids

        self._store.modify(WORKER_PIDS_KEY, forget, {})

    def get_active_worker_pids(self) -> list[int]:
        live = self._live_pids(self._store.get(WORKER_PIDS_KEY, {}), self._store.now())
        return sorted(int(pid) for pid in live)

    def get_active_worker_count(self) -> int:
        return len(self.get_active_worker_pids())

    def get_crash_stats(self) -> CrashStats:
        raw = self._store.get(CRASH_STATS_KEY, {})
        stats = {**_empty_stats(), **(raw if isinstance(raw, dict) else {})}
        pids = self.get_active_worker_pids()
        return CrashStats(
            total_crashes=stats["total_crashes"],
            last_crash_time=stats["last_crash_time"],
            last_crash_type=stats["last_crash_type"],
            last_crashed_pid=stats["last_crashed_pid"],
            crashes_by_type=stats["crashes_by_type"],
            detected_restarts=stats["detected_restarts"],
            active_worker_count=len(pids),
            active_worker_pids=pids,
            recent_worker_events=list(reversed(stats["recent_worker_events"])),
        )

    def reset_stats(self) -> None:
        self._store.delete(CRASH_STATS_KEY)
        self._store.delete(WORKER_PIDS_KEY)


__all__ = ["CRASH_STATS_KEY", "CrashTracker", "HISTORY_LIMIT", "WORKER_PIDS_KEY", "WORKER_PID_TTL"]
