"""perfsim quickstart: working demonstrations of the major features.

Run this file directly to verify your installation:

    python examples/quickstart.py

Every demo uses an in-memory store and short durations so the file runs in
a few seconds.  Crash actions are replaced with a print so the demo process
survives its own crash demo.
"""

from __future__ import annotations

import time

from perfsim import (
    CrashMode,
    MemoryStateStore,
    PerfSim,
    Settings,
    SimulationType,
    SimulationValidationError,
    StorageBackend,
    configure_logging,
    probed,
    wsgi_deferred,
)


def _harness() -> PerfSim:
    settings = Settings(storage_backend=StorageBackend.memory, blocking_iterations=5)
    actions = {mode: (lambda mode=mode: print(f"  (would crash with {mode.value})")) for mode in CrashMode}
    return PerfSim(MemoryStateStore(), settings, crash_actions=actions)


# ---------------------------------------------------------------------------
# Demo 1: Start, list and stop simulations
# ---------------------------------------------------------------------------

def demo_lifecycle(sim: PerfSim) -> None:
    print("\n=== Demo 1: Simulation Lifecycle ===")

    cpu = sim.create(SimulationType.cpu_stress, {"target_load_percent": 25, "duration_seconds": 2})
    print(f"  CPU stress {cpu.id[:8]} started, ends {cpu.scheduled_end_at:%H:%M:%S}")

    memory = sim.create(SimulationType.memory_pressure, {"size_mb": 16})
    print(f"  Allocated {sim.memory.get_total_allocated_mb()}MB as {memory.id[:8]}")

    print(f"  Active: {[s.type.value for s in sim.list()]}")

    sim.stop(cpu.id)
    release = sim.memory.release(memory.id)
    print(f"  Released {release.size_mb}MB; releasing again: {sim.memory.release(memory.id).was_allocated}")

    try:
        sim.create(SimulationType.memory_pressure, {"size_mb": 0})
    except SimulationValidationError as exc:
        print(f"  Rejected invalid parameters: {exc}")


# ---------------------------------------------------------------------------
# Demo 2: Probes do the work of active simulations
# ---------------------------------------------------------------------------

def demo_probe(sim: PerfSim) -> None:
    print("\n=== Demo 2: Probe ===")

    sim.create(SimulationType.request_blocking, {"duration_seconds": 2})

    @probed(lambda: sim)
    def handler() -> str:
        return "ok"

    start = time.perf_counter()
    handler()
    print(f"  Probed handler took {(time.perf_counter() - start) * 1000:.0f}ms inside the blocking window")
    print(f"  Work done: {sim.probe().work_done}")


# ---------------------------------------------------------------------------
# Demo 3: Slow requests and the load test curve
# ---------------------------------------------------------------------------

def demo_latency(sim: PerfSim) -> None:
    print("\n=== Demo 3: Latency ===")

    result = sim.slow.delay({"delay_seconds": 0.2, "blocking_pattern": "cpu_intensive"})
    print(f"  Slow request ({result.blocking_pattern.description}) took {result.elapsed_ms:.0f}ms")

    load = sim.load_test({"work_ms": 20, "memory_kb": 256, "hold_ms": 0, "baseline_delay_ms": 100})
    print(
        f"  Load request: {load.total_elapsed_ms:.0f}ms total, "
        f"{load.actual_cpu_work_ms:.0f}ms CPU, target {load.target_response_ms:.0f}ms"
    )


# ---------------------------------------------------------------------------
# Demo 4: Crashes run after the response is sent
# ---------------------------------------------------------------------------

def demo_crash(sim: PerfSim) -> None:
    print("\n=== Demo 4: Deferred Crash ===")

    @wsgi_deferred(lambda: sim)
    def app(environ, start_response, harness):
        harness.create(SimulationType.crash_failfast)
        start_response("202 Accepted", [("Content-Type", "text/plain")])
        return [b"crash scheduled"]

    response = app({}, lambda status, headers: print(f"  Response status: {status}"))
    print(f"  Body sent: {b''.join(response).decode()}")
    response.close()
    print(f"  Crashes recorded: {sim.crash_tracker.get_crash_stats().crashes_by_type}")


# ---------------------------------------------------------------------------
# Demo 5: Event log
# ---------------------------------------------------------------------------

def demo_events(sim: PerfSim) -> None:
    print("\n=== Demo 5: Event Log ===")

    page = sim.get_recent_events(5)
    print(f"  Sequence {page.sequence}, newest {page.count} events:")
    for entry in page.events:
        print(f"    [{entry.level.value.upper()}] {entry.event}: {entry.message}")


def main() -> None:
    configure_logging("WARNING")
    sim = _harness()
    demo_lifecycle(sim)
    demo_probe(sim)
    demo_latency(sim)
    demo_crash(sim)
    demo_events(sim)
    sim.stop_all()

    print("\n" + "=" * 45)
    print("All demos completed.")


if __name__ == "__main__":
    main()
