"""The per-request probe: do every active simulation's share of real work."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Iterable

from perfsim.effectors.base import Effector
from perfsim.effectors.workers import CrashTracker
from perfsim.loadtest import LoadGenerator
from perfsim.models import ProbeResult

logger = logging.getLogger(__name__)


class ProbeAggregator:
    """Ask each effector for its per-probe work and collect what was done.

    Only fast-path reads are involved, so a probe with nothing active costs
    a handful of store reads.  A failing effector is logged and skipped;
    the probe itself never raises for a simulation problem.
    """

    def __init__(
        self,
        effectors: Iterable[Effector],
        load_generator: LoadGenerator,
        crash_tracker: CrashTracker | None = None,
    ) -> None:
        self._effectors = list(effectors)
        self._load = load_generator
        self._crash_tracker = crash_tracker

    def probe(self) -> ProbeResult:
        if self._crash_tracker is not None:
            try:
                self._crash_tracker.record_worker_activity()
            except Exception:  # noqa: BLE001
                logger.exception("Could not record worker activity")

        work_done: dict[str, dict] = {}
        for effector in self._effectors:
            try:
                work = effector.perform_if_active()
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Probe hook for %s failed", effector.simulation_type.value
                )
                continue
            if work is not None:
                work_done[effector.simulation_type.value] = work.model_dump(mode="json")

        return ProbeResult(
            ts=int(time.time() * 1000),
            pid=os.getpid(),
            work_done=work_done,
            load_test=self._load.get_state(),
        )


__all__ = ["ProbeAggregator"]
