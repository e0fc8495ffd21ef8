"""Synthetic load with a deliberate backpressure curve.

Each request does a fixed amount of real CPU and memory work, then pads its
response time up to a target that grows once concurrency passes the soft
limit.  Concurrency is the number of live in-flight tokens in the shared
store; a token left behind by a killed worker ages out after
``loadtest_inflight_ttl_seconds``.

There is no reporting timer.  Period statistics are rolled over and
summarised in a ``LOAD_TEST_STATS`` event by whichever call notices the
period is due, be it a load request or a stats poll.
"""

from __future__ import annotations

import logging
import math
import os
import time
import uuid
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel

from perfsim.config import Settings
from perfsim.core import LIGHT_ROUNDS, burn_cpu_for, elapsed_ms, from_timestamp
from perfsim.effectors.base import parse_params
from perfsim.events import EventLog
from perfsim.models import (
    DegradationMode,
    LoadTestRequest,
    LoadTestResult,
    LoadTestState,
    LoadTestStats,
)
from perfsim.storage import StateStore

logger = logging.getLogger(__name__)

PERIOD_KEY = "perfsim_loadtest_period"
INFLIGHT_KEY = "perfsim_loadtest_inflight"
TOTALS_KEY = "perfsim_loadtest_totals"

PAGE_SIZE = 4096


def calculate_target_response_ms(
    concurrent: int,
    request: LoadTestRequest,
    max_delay_ms: float | None = None,
) -> float:
    """Response time the load endpoint should exhibit at *concurrent* requests.

    Below or at the soft limit this is ``baseline_delay_ms``.  Above it each
    extra request adds ``degradation_factor`` ms (linear) or multiplies by
    ``degradation_multiplier`` (multiplicative).
    """
    over = max(0, concurrent - request.soft_limit)
    if request.degradation_mode == DegradationMode.multiplicative:
        try:
            target = request.baseline_delay_ms * request.degradation_multiplier**over
        except OverflowError:
            target = math.inf if request.baseline_delay_ms else 0.0
    else:
        target = request.baseline_delay_ms + over * request.degradation_factor
    if max_delay_ms is not None:
        target = min(target, max_delay_ms)
    return float(target)


def touch_memory(size_kb: int) -> tuple[bytearray, int]:
    """Allocate *size_kb* KiB and write one byte per page so it is resident."""
    buffer = bytearray(size_kb * 1024)
    touched = 0
    for offset in range(0, len(buffer), PAGE_SIZE):
        buffer[offset] = 1
        touched += 1
    return buffer, touched


class LoadGenerator:
    """Execute synthetic load requests and keep their running statistics."""

    def __init__(
        self,
        store: StateStore,
        event_log: EventLog,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._events = event_log
        self._settings = settings
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------

    def _live_tokens(self, tokens: Any, now: float) -> dict[str, float]:
        if not isinstance(tokens, dict):
            return {}
        ttl = self._settings.loadtest_inflight_ttl_seconds
        return {token: float(ts) for token, ts in tokens.items() if now - float(ts) < ttl}

    def _enter(self, token: str) -> int:
        now = self._store.now()

        def add(tokens: dict[str, Any] | None) -> dict[str, float]:
            live = self._live_tokens(tokens, now)
            live[token] = now
            return live

        return len(self._store.modify(INFLIGHT_KEY, add, {}))

    def _leave(self, token: str) -> None:
        now = self._store.now()

        def drop(tokens: dict[str, Any] | None) -> dict[str, float]:
            live = self._live_tokens(tokens, now)
            live.pop(token, None)
            return live

        self._store.modify(INFLIGHT_KEY, drop, {})

    def get_concurrent(self) -> int:
        return len(self._live_tokens(self._store.get(INFLIGHT_KEY, {}), self._store.now()))

    def get_state(self) -> LoadTestState:
        concurrent = self.get_concurrent()
        return LoadTestState(active=concurrent > 0, concurrent=concurrent)

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    def execute_work(self, params: BaseModel | dict[str, Any] | None = None) -> LoadTestResult:
        """Run one synthetic load request and return what it did.

        Raises:
            SimulationValidationError: if the parameters cannot be parsed.
        """
        request = parse_params(LoadTestRequest, params if params is not None else {})
        token = str(uuid.uuid4())
        started = time.perf_counter()
        concurrent = self._enter(token)
        try:
            buffer, touched = touch_memory(request.memory_kb)
            cpu_started = time.perf_counter()
            burn_cpu_for(request.work_ms / 1000, LIGHT_ROUNDS, "sha256")
            cpu_ms = elapsed_ms(cpu_started)

            if request.hold_ms:
                self._sleep(request.hold_ms / 1000)

            target = calculate_target_response_ms(
                concurrent, request, self._settings.loadtest_max_delay_ms
            )
            padding = max(0.0, target - elapsed_ms(started))
            if padding:
                self._sleep(padding / 1000)
            allocated_kb = round(len(buffer) / 1024, 2)
            del buffer
        finally:
            self._leave(token)

        total = elapsed_ms(started)
        self._record(total)
        self._check_period()
        return LoadTestResult(
            requested_work_ms=request.work_ms,
            actual_cpu_work_ms=cpu_ms,
            hold_ms=request.hold_ms,
            concurrent_requests=concurrent,
            target_response_ms=target,
            degradation_delay_ms=round(padding, 2),
            total_elapsed_ms=total,
            memory_allocated_kb=allocated_kb,
            bytes_touched=touched,
            worker_pid=os.getpid(),
        )

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def _record(self, response_ms: float) -> None:
        now = self._store.now()

        def add_period(period: dict[str, Any] | None) -> dict[str, Any]:
            period = dict(period or {"start": now, "count": 0, "sum": 0.0, "max": 0.0})
            period["count"] = int(period.get("count", 0)) + 1
            period["sum"] = float(period.get("sum", 0.0)) + response_ms
            period["max"] = max(float(period.get("max", 0.0)), response_ms)
            return period

        def add_total(totals: dict[str, Any] | None) -> dict[str, Any]:
            totals = dict(totals or {"count": 0, "sum": 0.0})
            totals["count"] = int(totals.get("count", 0)) + 1
            totals["sum"] = float(totals.get("sum", 0.0)) + response_ms
            return totals

        self._store.modify(PERIOD_KEY, add_period, None)
        self._store.modify(TOTALS_KEY, add_total, None)

    def _check_period(self) -> dict[str, Any] | None:
        """Roll the period over if it is due, returning the summary that was logged."""
        now = self._store.now()
        length = self._settings.loadtest_stats_period_seconds
        finished: list[dict[str, Any]] = []

        def roll(period: dict[str, Any] | None) -> dict[str, Any]:
            finished.clear()
            if not period:
                return {"start": now, "count": 0, "sum": 0.0, "max": 0.0}
            if now - float(period.get("start", now)) < length:
                return period
            if int(period.get("count", 0)) > 0:
                finished.append(dict(period))
            return {"start": now, "count": 0, "sum": 0.0, "max": 0.0}

        self._store.modify(PERIOD_KEY, roll, None)
        if not finished:
            return None

        period = finished[0]
        count = int(period["count"])
        summary = {
            "requestCount": count,
            "averageResponseMs": round(float(period["sum"]) / count, 2),
            "maxResponseMs": round(float(period["max"]), 2),
            "periodSeconds": length,
            "periodStart": from_timestamp(float(period["start"])).isoformat(),
        }
        self._events.info(
            "LOAD_TEST_STATS",
            (
                f"Load test: {count} requests in the last {length}s, "
                f"avg {summary['averageResponseMs']}ms, max {summary['maxResponseMs']}ms"
            ),
            details=summary,
        )
        return summary

    def get_current_stats(self) -> LoadTestStats:
        self._check_period()
        totals = self._store.get(TOTALS_KEY, {}) or {}
        count = int(totals.get("count", 0))
        average = float(totals.get("sum", 0.0)) / count if count else 0.0
        return LoadTestStats(
            current_concurrent_requests=self.get_concurrent(),
            total_requests_processed=count,
            average_response_time_ms=round(average, 2),
            timestamp=from_timestamp(self._store.now()),
        )

    def reset(self) -> None:
        for key in (PERIOD_KEY, INFLIGHT_KEY, TOTALS_KEY):
            self._store.delete(key)


__all__ = [
    "INFLIGHT_KEY",
    "LoadGenerator",
    "PERIOD_KEY",
    "TOTALS_KEY",
    "calculate_target_response_ms",
    "touch_memory",
]
