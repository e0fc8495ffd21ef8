"""Actions that must run only after the current response has been sent.

A crash simulation has to let its HTTP response reach the client before the
worker dies.  The effector queues the crash with
:meth:`DeferredActions.schedule`; the transport layer calls
:meth:`DeferredActions.run` once the response is handed off.

For WSGI servers, :class:`DeferredResponse` wraps the response body.  PEP
3333 servers call ``close()`` on the body after its last byte is written,
which is exactly the hand-off point.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Iterator

logger = logging.getLogger(__name__)

Action = Callable[[], None]


class DeferredActions:
    """A per-request queue of post-response callbacks."""

    def __init__(self) -> None:
        self._actions: list[tuple[str, Action]] = []
        self._lock = threading.Lock()

    def schedule(self, action: Action, label: str = "") -> None:
        """Queue *action* to run after the response is flushed."""
        with self._lock:
            self._actions.append((label or getattr(action, "__name__", "action"), action))

    @property
    def pending(self) -> list[str]:
        with self._lock:
            return [label for label, _ in self._actions]

    def run(self) -> int:
        """Run and discard every queued action, in scheduling order.

        An action that raises does not prevent the ones after it.  Returns
        the number of actions run.
        """
        with self._lock:
            actions, self._actions = self._actions, []
        for label, action in actions:
            logger.info("Running deferred action %s", label)
            try:
                action()
            except Exception:  # noqa: BLE001
                logger.exception("Deferred action %s failed", label)
        return len(actions)


class DeferredResponse:
    """WSGI response iterable that runs deferred actions from ``close()``."""

    def __init__(self, body: Iterable[bytes], deferred: DeferredActions) -> None:
        self._body = body
        self._deferred = deferred
        self._closed = False

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._body)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        close = getattr(self._body, "close", None)
        try:
            if close is not None:
                close()
        finally:
            self._deferred.run()


__all__ = ["Action", "DeferredActions", "DeferredResponse"]
