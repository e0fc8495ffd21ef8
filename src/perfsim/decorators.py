"""Decorators that plug perfsim into an existing request handler."""

from __future__ import annotations

import functools
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from perfsim.deferred import DeferredResponse
from perfsim.harness import PerfSim

F = TypeVar("F", bound=Callable[..., Any])

HarnessFactory = Callable[[], PerfSim]


def probed(factory: HarnessFactory) -> Callable[[F], F]:
    """Run a probe before every call, so the handler's latency carries the faults.

    *factory* is called once per request because a :class:`PerfSim` holds
    per-request state (its deferred action queue).

    Example::

        @probed(lambda: PerfSim.from_settings())
        def get_orders(request):
            ...
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            factory().probe()
            return func(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator


def wsgi_deferred(factory: HarnessFactory) -> Callable[[Callable[..., Iterable[bytes]]], Callable[..., Any]]:
    """Wrap a WSGI app whose view takes the harness as a third argument.

    The response body is wrapped in a :class:`DeferredResponse`, so any
    crash the view queued runs from the server's ``close()`` call, after
    the last byte went out.

    Example::

        @wsgi_deferred(lambda: PerfSim.from_settings())
        def app(environ, start_response, sim):
            sim.create(SimulationType.crash_failfast)
            start_response("202 Accepted", [])
            return [b"crashing"]
    """

    def decorator(app: Callable[..., Iterable[bytes]]) -> Callable[..., Any]:
        @functools.wraps(app)
        def wrapper(environ: dict[str, Any], start_response: Callable[..., Any]) -> DeferredResponse:
            sim = factory()
            body = app(environ, start_response, sim)
            return DeferredResponse(body, sim.deferred)

        return wrapper

    return decorator


__all__ = ["probed", "wsgi_deferred"]
