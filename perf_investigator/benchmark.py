"""
Sequential benchmark runner.

Commands are tokenized with shlex and executed without a shell. The runner
exports `PERF_RUN_DURATION` and `PERF_RUN_MODE` so the benchmark can size
itself, and refuses runs that finish well before the requested duration
unless short runs are allowed.
"""

from __future__ import annotations

import logging
import math
import os
import shlex
import subprocess
import time
from typing import Any, Callable

from .errors import BenchmarkError, MetricsError
from .metrics import DEFAULT_AGGREGATE, aggregate_metrics, normalize_aggregate, parse_metrics

logger = logging.getLogger(__name__)

DEFAULT_MIN_DURATION = 60
BINARY_SEARCH_MIN_DURATION = 30
DEFAULT_WARMUP = 10
DEFAULT_DURATION_SLACK_SECONDS = 1.0
ALLOW_SHORT_ENV = "PERF_ALLOW_SHORT"
DURATION_ENV = "PERF_RUN_DURATION"
RUN_MODE_ENV = "PERF_RUN_MODE"
BENCHMARK_MODES = ("full", "binary-search")


def parse_command(command: str, label: str = "Benchmark command") -> list[str]:
    if not isinstance(command, str) or not command.strip():
        raise BenchmarkError(f"{label} must be a non-empty string")
    if "\0" in command:
        raise BenchmarkError(f"{label} contains invalid null byte")
    try:
        argv = shlex.split(command)
    except ValueError as exc:
        raise BenchmarkError(f"{label} could not be parsed: {exc}") from exc
    if not argv:
        raise BenchmarkError(f"{label} must include an executable")
    return argv


def _positive_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 and parsed == parsed and parsed != float("inf") else None


def normalize_benchmark_options(options: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Resolve mode, duration and warmup.

    An explicit duration is honoured as its own minimum; `min_duration`
    raises the floor; otherwise the mode default applies.
    """
    opts = dict(options or {})
    mode = opts.get("mode") or "full"
    if mode not in BENCHMARK_MODES:
        raise BenchmarkError(f"unknown benchmark mode: {mode}")
    default_min = BINARY_SEARCH_MIN_DURATION if mode == "binary-search" else DEFAULT_MIN_DURATION
    requested = _positive_number(opts.get("duration"))
    requested_min = _positive_number(opts.get("min_duration"))
    min_duration = requested_min if requested_min is not None else (requested if requested is not None else default_min)
    duration = max(requested if requested is not None else min_duration, min_duration)
    opts.update(
        {
            "mode": mode,
            "duration": duration,
            "warmup": opts.get("warmup") or DEFAULT_WARMUP,
            "allow_short": opts.get("allow_short") is True,
        }
    )
    return opts


def _format_duration(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def run_benchmark(command: str, options: dict[str, Any] | None = None) -> dict[str, Any]:
    """Run `command` once and return its captured output and timing."""
    argv = parse_command(command)
    opts = normalize_benchmark_options(options)
    set_duration_env = opts.get("set_duration_env", True) is not False

    env = dict(os.environ)
    env.update({str(k): str(v) for k, v in (opts.get("env") or {}).items()})
    if set_duration_env:
        env[DURATION_ENV] = _format_duration(opts["duration"])
    if opts.get("run_mode"):
        env[RUN_MODE_ENV] = str(opts["run_mode"])

    preexec_fn: Callable[[], None] | None = opts.get("preexec_fn")
    display = shlex.join(argv)
    start = time.monotonic()
    try:
        proc = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            env=env,
            cwd=opts.get("cwd"),
            timeout=opts.get("timeout"),
            preexec_fn=preexec_fn,
            check=False,
        )
    except FileNotFoundError as exc:
        raise BenchmarkError(f"Benchmark command not found: {display}") from exc
    except subprocess.TimeoutExpired as exc:
        raise BenchmarkError(f"Benchmark command timed out after {exc.timeout}s: {display}") from exc
    except OSError as exc:
        raise BenchmarkError(f"Benchmark command could not start: {display}: {exc}") from exc
    elapsed = time.monotonic() - start

    if proc.returncode != 0:
        details = (proc.stderr or "").strip() or (proc.stdout or "").strip() or "No error details available"
        raise BenchmarkError(f"Benchmark command failed (exit code {proc.returncode}): {display}\nDetails: {details}")

    allow_short = opts["allow_short"] or os.environ.get(ALLOW_SHORT_ENV) == "1"
    if not allow_short and set_duration_env and elapsed + DEFAULT_DURATION_SLACK_SECONDS < opts["duration"]:
        raise BenchmarkError(f"Benchmark finished too quickly ({elapsed:.2f}s < {opts['duration']}s)")

    return {
        "success": True,
        "output": proc.stdout,
        "duration": opts["duration"],
        "warmup": opts["warmup"],
        "mode": opts["mode"],
        "elapsed_seconds": elapsed,
    }


def resolve_runs(runs: Any) -> int:
    if runs is None:
        return 1
    if isinstance(runs, bool):
        raise BenchmarkError("runs must be a positive number")
    try:
        value = float(runs)
    except (TypeError, ValueError):
        raise BenchmarkError("runs must be a positive number") from None
    if not math.isfinite(value) or value < 1:
        raise BenchmarkError("runs must be a positive number")
    return int(value)


def run_benchmark_series(
    command: str,
    *,
    duration: float | None = None,
    runs: int | None = None,
    aggregate: str | None = None,
    **options: Any,
) -> dict[str, Any]:
    """
    Run `command` `runs` times in sequence and aggregate per metric.

    A single failed run, or one without parseable metrics, fails the series.
    """
    run_count = resolve_runs(runs)
    try:
        aggregate_name = normalize_aggregate(aggregate or DEFAULT_AGGREGATE)
    except MetricsError as exc:
        raise BenchmarkError(str(exc)) from exc
    run_mode = options.pop("run_mode", None) or ("oneshot" if run_count > 1 else "duration")
    env = dict(options.pop("env", None) or {})
    env[RUN_MODE_ENV] = run_mode
    allow_short = options.pop("allow_short", False) is True or run_mode == "oneshot"
    set_duration_env = run_mode != "oneshot" and options.pop("set_duration_env", True) is not False

    samples: list[dict[str, Any]] = []
    for i in range(run_count):
        run_options = {
            **options,
            "duration": duration,
            "env": env,
            "allow_short": allow_short,
            "set_duration_env": set_duration_env,
            "run_mode": run_mode,
        }
        try:
            result = run_benchmark(command, run_options)
        except BenchmarkError as exc:
            raise BenchmarkError(f"Benchmark run {i + 1}/{run_count} failed: {exc}") from exc
        try:
            samples.append(parse_metrics(result["output"]))
        except MetricsError as exc:
            raise BenchmarkError(f"Metrics parse failed on run {i + 1}/{run_count}: {exc}") from exc
        logger.debug("benchmark run %d/%d complete in %.2fs", i + 1, run_count, result["elapsed_seconds"])

    if len(samples) == 1:
        metrics = samples[0]
    else:
        try:
            metrics = aggregate_metrics(samples, aggregate_name)
        except MetricsError as exc:
            raise BenchmarkError(f"Benchmark series could not be aggregated: {exc}") from exc
    return {
        "metrics": metrics,
        "samples": samples,
        "runs": run_count,
        "aggregate": aggregate_name,
    }


def benchmark_config_options(benchmark: dict[str, Any] | None) -> dict[str, Any]:
    """Series keyword arguments from an investigation's `benchmark` block."""
    benchmark = benchmark or {}
    out: dict[str, Any] = {}
    for key in ("duration", "runs", "aggregate"):
        if benchmark.get(key) is not None:
            out[key] = benchmark[key]
    return out
