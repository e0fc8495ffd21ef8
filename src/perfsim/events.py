"""Sequenced ring-buffer event log shared by every worker."""

from __future__ import annotations

import logging
import os
import uuid
from typing import Any

from perfsim.core import from_timestamp
from perfsim.models import EventEntry, EventLevel
from perfsim.storage import StateStore

EVENTS_KEY = "perfsim_events"
SEQUENCE_KEY = "perfsim_events_seq"

_event_logger = logging.getLogger("perfsim.events")

_LOG_LEVELS: dict[EventLevel, int] = {
    EventLevel.info: logging.INFO,
    EventLevel.success: logging.INFO,
    EventLevel.warn: logging.WARNING,
    EventLevel.error: logging.ERROR,
}


class EventLog:
    """Bounded, sequence-numbered log of lifecycle and diagnostic events.

    The entries live in the shared store, so every worker appends to and
    reads from the same buffer.  The sequence counter is a separate key that
    is never trimmed: a polling client comparing :meth:`get_sequence` with
    the last value it saw can tell something happened even when the entry
    itself has already been evicted.

    Each entry is also written to the ``perfsim.events`` logger as
    ``[timestamp] [LEVEL] event: message`` for server-log visibility.
    """

    def __init__(self, store: StateStore, max_entries: int = 100) -> None:
        self._store = store
        self.max_entries = max_entries

    def log(
        self,
        event: str,
        message: str,
        level: EventLevel | str = EventLevel.info,
        simulation_id: str | None = None,
        simulation_type: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> EventEntry:
        """Append one entry and return it.

        Args:
            event:           Short machine-readable label, e.g. ``SIMULATION_STARTED``.
            message:         Human-readable description.
            level:           One of ``info``, ``warn``, ``error``, ``success``.
            simulation_id:   The simulation this entry belongs to, if any.
            simulation_type: Its type, if any.
            details:         Optional structured payload.
        """
        level = EventLevel(level)
        seq = self._store.increment(SEQUENCE_KEY)

        entry = EventEntry(
            id=str(uuid.uuid4()),
            seq=seq,
            timestamp=from_timestamp(self._store.now()),
            level=level,
            worker_pid=os.getpid(),
            event=event,
            message=message,
            simulation_id=simulation_id,
            simulation_type=str(simulation_type) if simulation_type is not None else None,
            details=details,
        )
        record = entry.model_dump(mode="json")
        max_entries = self.max_entries

        def append(entries: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
            entries = list(entries or [])
            entries.append(record)
            # Oldest entries go first once over capacity.
            if len(entries) > max_entries:
                del entries[: len(entries) - max_entries]
            return entries

        self._store.modify(EVENTS_KEY, append, [])

        _event_logger.log(
            _LOG_LEVELS[level],
            "[%s] [%s] %s: %s",
            entry.timestamp.isoformat(),
            level.value.upper(),
            event,
            message,
        )
        return entry

    def info(self, event: str, message: str, **kwargs: Any) -> EventEntry:
        return self.log(event, message, EventLevel.info, **kwargs)

    def warn(self, event: str, message: str, **kwargs: Any) -> EventEntry:
        return self.log(event, message, EventLevel.warn, **kwargs)

    def error(self, event: str, message: str, **kwargs: Any) -> EventEntry:
        return self.log(event, message, EventLevel.error, **kwargs)

    def success(self, event: str, message: str, **kwargs: Any) -> EventEntry:
        return self.log(event, message, EventLevel.success, **kwargs)

    def get_entries(self) -> list[EventEntry]:
        """All buffered entries, oldest first."""
        raw = self._store.get(EVENTS_KEY, [])
        entries = []
        for item in raw if isinstance(raw, list) else []:
            try:
                entries.append(EventEntry.model_validate(item))
            except ValueError:
                continue
        return entries

    def get_recent_entries(self, limit: int = 50) -> list[EventEntry]:
        """Newest-first slice of at most *limit* entries."""
        if limit <= 0:
            return []
        return list(reversed(self.get_entries()))[:limit]

    def get_count(self) -> int:
        return len(self.get_entries())

    def get_sequence(self) -> int:
        """The latest sequence number handed out (0 before the first entry)."""
        return int(self._store.get(SEQUENCE_KEY, 0) or 0)

    def clear(self) -> None:
        """Empty the buffer.  The sequence counter keeps counting."""
        self._store.set(EVENTS_KEY, [])


__all__ = ["EVENTS_KEY", "EventLog", "SEQUENCE_KEY"]
