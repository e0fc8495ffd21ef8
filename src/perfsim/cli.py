"""CLI entry point for perfsim."""

from __future__ import annotations

import json
import sys
from collections.abc import Sequence

import click
from pydantic import BaseModel

from perfsim.config import Settings, configure_logging
from perfsim.core import SimulationValidationError
from perfsim.harness import PerfSim
from perfsim.models import (
    BlockingPattern,
    CrashMode,
    DegradationMode,
    Simulation,
    SimulationType,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _build_harness() -> PerfSim:
    """Harness on the store the environment selects, shared by every invocation."""
    return PerfSim.from_settings(Settings.from_env())


def _emit_json(payload: BaseModel | Sequence[BaseModel] | dict) -> None:
    if isinstance(payload, BaseModel):
        click.echo(payload.model_dump_json(indent=2))
    elif isinstance(payload, dict):
        click.echo(json.dumps(payload, indent=2, default=str))
    else:
        click.echo(json.dumps([p.model_dump(mode="json") for p in payload], indent=2))


def _describe(simulation: Simulation) -> str:
    ends = simulation.scheduled_end_at.isoformat() if simulation.scheduled_end_at else "until stopped"
    return (
        f"{simulation.id}  {simulation.type.value:<20} {simulation.status.value:<10} "
        f"started {simulation.started_at.isoformat()}  ends {ends}"
    )


def _start(simulation_type: SimulationType, params: dict, json_output: bool) -> Simulation:
    sim = _build_harness()
    try:
        simulation = sim.create(simulation_type, params)
    except SimulationValidationError as exc:
        click.echo(f"Invalid parameters: {exc}", err=True)
        sys.exit(1)
    if json_output:
        _emit_json(simulation)
    else:
        click.echo(_describe(simulation))
    return simulation


json_option = click.option("--json-output", is_flag=True, help="Emit results as JSON.")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.group()
@click.version_option()
@click.option("--log-level", default=None, help="Override PERFSIM_LOG_LEVEL.")
def main(log_level: str | None) -> None:
    """perfsim: inject CPU, memory, blocking, latency and crash faults."""
    configure_logging((log_level or Settings.from_env().log_level).upper())


@main.command("cpu")
@click.option("--target-load", "target_load_percent", type=int, default=None,
              help="Target CPU load percent (1-100).")
@click.option("--level", type=click.Choice(["moderate", "high"]), default=None,
              help="Coarse load level instead of --target-load.")
@click.option("--duration", "duration_seconds", type=int, required=True, help="Seconds to run.")
@json_option
def cpu_command(
    target_load_percent: int | None,
    level: str | None,
    duration_seconds: int,
    json_output: bool,
) -> None:
    """Start a CPU stress simulation."""
    params: dict = {"duration_seconds": duration_seconds}
    if target_load_percent is not None:
        params["target_load_percent"] = target_load_percent
    if level is not None:
        params["level"] = level
    _start(SimulationType.cpu_stress, params, json_output)


@main.group("memory")
def memory_group() -> None:
    """Allocate and release shared memory blocks."""


@memory_group.command("allocate")
@click.option("--size-mb", type=int, required=True, help="Megabytes to allocate.")
@json_option
def memory_allocate(size_mb: int, json_output: bool) -> None:
    """Allocate SIZE_MB of shared memory."""
    _start(SimulationType.memory_pressure, {"size_mb": size_mb}, json_output)


@memory_group.command("release")
@click.argument("allocation_id")
@json_option
def memory_release(allocation_id: str, json_output: bool) -> None:
    """Release one allocation.  Unknown ids succeed with nothing released."""
    result = _build_harness().memory.release(allocation_id)
    if json_output:
        _emit_json(result)
        return
    click.echo(f"Released {result.size_mb}MB (was allocated: {result.was_allocated})")


@memory_group.command("release-all")
@json_option
def memory_release_all(json_output: bool) -> None:
    """Release every allocation and sweep orphaned blocks."""
    results = _build_harness().memory.release_all()
    if json_output:
        _emit_json(results)
        return
    click.echo(f"Released {sum(r.size_mb for r in results)}MB across {len(results)} allocations")


@memory_group.command("status")
@json_option
def memory_status(json_output: bool) -> None:
    """Show how much shared memory is allocated."""
    memory = _build_harness().memory
    status = {
        "total_allocated_mb": memory.get_total_allocated_mb(),
        "allocations": memory.get_active_count(),
    }
    if json_output:
        _emit_json(status)
        return
    click.echo(f"Allocated: {status['total_allocated_mb']}MB in {status['allocations']} allocations")


@main.command("block")
@click.option("--duration", "duration_seconds", type=int, required=True, help="Window length in seconds.")
@click.option("--workers", "concurrent_workers", type=int, default=5, show_default=True,
              help="Nominal number of blocked workers.")
@json_option
def block_command(duration_seconds: int, concurrent_workers: int, json_output: bool) -> None:
    """Open a request-blocking window."""
    _start(
        SimulationType.request_blocking,
        {"duration_seconds": duration_seconds, "concurrent_workers": concurrent_workers},
        json_output,
    )


@main.command("slow")
@click.option("--delay", "delay_seconds", type=float, required=True, help="Seconds to block.")
@click.option("--pattern", "blocking_pattern",
              type=click.Choice([p.value for p in BlockingPattern]),
              default=BlockingPattern.sleep.value, show_default=True)
@json_option
def slow_command(delay_seconds: float, blocking_pattern: str, json_output: bool) -> None:
    """Block this invocation for DELAY seconds."""
    try:
        result = _build_harness().slow.delay(
            {"delay_seconds": delay_seconds, "blocking_pattern": blocking_pattern}
        )
    except SimulationValidationError as exc:
        click.echo(f"Invalid parameters: {exc}", err=True)
        sys.exit(1)
    if json_output:
        _emit_json(result)
    else:
        click.echo(
            f"Slow request ({result.blocking_pattern.value}) took {result.elapsed_ms:.0f}ms "
            f"for {result.requested_seconds}s requested"
        )
    if result.error:
        click.echo(f"Error: {result.error}", err=True)
        sys.exit(1)


@main.command("stop")
@click.argument("simulation_id")
@json_option
def stop_command(simulation_id: str, json_output: bool) -> None:
    """Stop the simulation SIMULATION_ID."""
    simulation = _build_harness().stop(simulation_id)
    if simulation is None:
        click.echo(f"No active simulation with id {simulation_id}", err=True)
        sys.exit(1)
    if json_output:
        _emit_json(simulation)
    else:
        click.echo(_describe(simulation))


@main.command("list")
@click.option("--type", "simulation_type",
              type=click.Choice([t.value for t in SimulationType], case_sensitive=False),
              default=None, help="Only list this type.")
@json_option
def list_command(simulation_type: str | None, json_output: bool) -> None:
    """List active simulations (expiring any that are due)."""
    simulations = _build_harness().list(simulation_type.upper() if simulation_type else None)
    if json_output:
        _emit_json(simulations)
        return
    if not simulations:
        click.echo("No active simulations.")
    for simulation in simulations:
        click.echo(_describe(simulation))


@main.command("probe")
@json_option
def probe_command(json_output: bool) -> None:
    """Run one probe and report the work it did."""
    result = _build_harness().probe()
    if json_output:
        _emit_json(result)
        return
    click.echo(f"Probe by PID {result.pid}")
    if not result.work_done:
        click.echo("  no active simulations")
    for simulation_type, work in result.work_done.items():
        click.echo(f"  {simulation_type}: {work}")
    click.echo(
        f"  load test: active={result.load_test.active} concurrent={result.load_test.concurrent}"
    )


@main.command("metrics")
@json_option
def metrics_command(json_output: bool) -> None:
    """Show CPU, memory and process metrics for this host."""
    snapshot = _build_harness().get_metrics()
    if json_output:
        _emit_json(snapshot)
        return
    cpu, memory, process = snapshot.cpu, snapshot.memory, snapshot.process
    click.echo(
        f"CPU       : {cpu.usage_percent}% of {cpu.cpu_count} cores "
        f"(load {cpu.load_avg_1m} / {cpu.load_avg_5m} / {cpu.load_avg_15m})"
    )
    click.echo(
        f"Memory    : process {memory.process_rss_mb}MB RSS, "
        f"system {memory.system_available_mb}MB free of {memory.system_total_mb}MB"
    )
    click.echo(f"Process   : PID {process.pid}, Python {process.python_version}")
    click.echo(f"Blocking  : {snapshot.request_blocking.active_blocking_simulations} active windows")
    click.echo(
        f"Load test : {snapshot.load_test.total_requests_processed} requests, "
        f"{snapshot.load_test.current_concurrent_requests} in flight"
    )


@main.command("events")
@click.option("--limit", default=20, show_default=True, help="Maximum entries to show.")
@json_option
def events_command(limit: int, json_output: bool) -> None:
    """Show the most recent events, newest first."""
    page = _build_harness().get_recent_events(limit)
    if json_output:
        _emit_json(page)
        return
    click.echo(f"Sequence: {page.sequence}  (showing {page.count})")
    for entry in page.events:
        click.echo(
            f"[{entry.timestamp.isoformat()}] [{entry.level.value.upper()}] "
            f"{entry.event}: {entry.message}"
        )


@main.command("loadtest")
@click.option("--work-ms", type=int, default=100, show_default=True)
@click.option("--memory-kb", type=int, default=10000, show_default=True)
@click.option("--hold-ms", type=int, default=500, show_default=True)
@click.option("--baseline-ms", "baseline_delay_ms", type=int, default=1000, show_default=True)
@click.option("--soft-limit", type=int, default=20, show_default=True)
@click.option("--factor", "degradation_factor", type=int, default=1000, show_default=True)
@click.option("--mode", "degradation_mode",
              type=click.Choice([m.value for m in DegradationMode]),
              default=DegradationMode.linear.value, show_default=True)
@json_option
def loadtest_command(
    work_ms: int,
    memory_kb: int,
    hold_ms: int,
    baseline_delay_ms: int,
    soft_limit: int,
    degradation_factor: int,
    degradation_mode: str,
    json_output: bool,
) -> None:
    """Execute one synthetic load request."""
    try:
        result = _build_harness().load_test(
            {
                "work_ms": work_ms,
                "memory_kb": memory_kb,
                "hold_ms": hold_ms,
                "baseline_delay_ms": baseline_delay_ms,
                "soft_limit": soft_limit,
                "degradation_factor": degradation_factor,
                "degradation_mode": degradation_mode,
            }
        )
    except SimulationValidationError as exc:
        click.echo(f"Invalid parameters: {exc}", err=True)
        sys.exit(1)
    if json_output:
        _emit_json(result)
        return
    click.echo(
        f"Elapsed {result.total_elapsed_ms:.0f}ms (target {result.target_response_ms:.0f}ms, "
        f"{result.concurrent_requests} concurrent)"
    )


@main.command("crash")
@click.argument("mode", type=click.Choice([m.value for m in CrashMode]))
def crash_command(mode: str) -> None:
    """Crash this process with MODE after printing the confirmation."""
    sim = _build_harness()
    simulation = sim.create(CrashMode(mode).simulation_type)
    click.echo(f"Crash {mode} recorded as {simulation.id}; terminating")
    sys.stdout.flush()
    sim.deferred.run()


@main.command("crash-workers")
@click.option("--count", default=1, show_default=True, help="Workers to crash (1-20).")
@click.option("--mode", type=click.Choice([m.value for m in CrashMode]),
              default=CrashMode.failfast.value, show_default=True)
@json_option
def crash_workers_command(count: int, mode: str, json_output: bool) -> None:
    """Ask the running server to crash COUNT of its workers."""
    result = _build_harness().crash_workers(count, mode)
    if json_output:
        _emit_json(result)
        return
    click.echo(
        f"Initiated {result.initiated}/{result.requested} {result.crash_type} crashes "
        f"({result.known_workers} workers known)"
    )


@main.command("stats")
@json_option
def stats_command(json_output: bool) -> None:
    """Show crash and load-test statistics."""
    sim = _build_harness()
    crash = sim.crash_tracker.get_crash_stats()
    load = sim.loadtest.get_current_stats()
    if json_output:
        _emit_json({"crash": crash.model_dump(mode="json"), "load_test": load.model_dump(mode="json")})
        return
    click.echo(f"Crashes   : {crash.total_crashes} ({crash.detected_restarts} restarts detected)")
    for crash_type, count in sorted(crash.crashes_by_type.items()):
        click.echo(f"  {crash_type}: {count}")
    click.echo(f"Workers   : {crash.active_worker_count} active")
    click.echo(
        f"Load test : {load.total_requests_processed} requests, "
        f"avg {load.average_response_time_ms}ms, {load.current_concurrent_requests} in flight"
    )


if __name__ == "__main__":
    main()
