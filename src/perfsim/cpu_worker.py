"""Standalone CPU burner launched by the CPU stress effector.

Each process pins one core until its duration elapses or it receives
SIGTERM/SIGINT::

    python -m perfsim.cpu_worker 30
"""

from __future__ import annotations

import os
import signal
import sys
import time
from types import FrameType

import click

from perfsim.core import HEAVY_ROUNDS, hash_work

_running = True


def _request_stop(signum: int, frame: FrameType | None) -> None:
    global _running
    _running = False


def burn(duration_seconds: float) -> int:
    """Hash until the deadline passes or a stop signal arrives; return the op count."""
    deadline = time.monotonic() + duration_seconds
    operations = 0
    while _running and time.monotonic() < deadline:
        hash_work(HEAVY_ROUNDS)
        operations += 1
    return operations


@click.command()
@click.argument("duration_seconds", type=click.IntRange(min=1))
def main(duration_seconds: int) -> None:
    """Burn one CPU core for DURATION_SECONDS."""
    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    pid = os.getpid()
    click.echo(f"[cpu-worker] PID={pid} started, burning CPU for {duration_seconds}s", err=True)
    burn(duration_seconds)
    click.echo(f"[cpu-worker] PID={pid} finished", err=True)
    sys.exit(0)


if __name__ == "__main__":
    main()
