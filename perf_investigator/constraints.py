"""
Run the benchmark under CPU and memory limits and compare to the baseline.

Limits are applied in the child between fork and exec: CPU as an affinity
mask of `ceil(cpu)` cores, memory as RLIMIT_AS. Both require a POSIX host.
"""

from __future__ import annotations

import math
import os
import re
import sys
from typing import Any, Callable

try:
    import resource
except ImportError:  # Windows
    resource = None

from .benchmark import run_benchmark_series
from .errors import BenchmarkError, PhaseError
from .metrics import compute_delta

MEMORY_UNITS = {"": 1, "b": 1, "k": 1024, "kb": 1024, "m": 1024**2, "mb": 1024**2, "g": 1024**3, "gb": 1024**3}
MEMORY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")


def parse_memory_limit(raw: str | int | None) -> int | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, int) and not isinstance(raw, bool):
        value, unit = float(raw), ""
    else:
        m = MEMORY_RE.match(str(raw))
        if not m:
            raise PhaseError(f"invalid memory limit: {raw!r} (examples: 512m, 2g, 1048576)")
        value, unit = float(m.group(1)), m.group(2).lower()
    if unit not in MEMORY_UNITS:
        raise PhaseError(f"invalid memory unit in {raw!r}")
    limit = int(value * MEMORY_UNITS[unit])
    if limit <= 0:
        raise PhaseError("memory limit must be positive")
    return limit


def parse_cpu_limit(raw: str | float | None) -> float | None:
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise PhaseError(f"invalid cpu limit: {raw!r}") from None
    if not math.isfinite(value) or value <= 0:
        raise PhaseError("cpu limit must be a positive number of cores")
    return value


def build_limiter(cpu: float | None, memory_bytes: int | None) -> Callable[[], None]:
    if sys.platform == "win32" or resource is None:
        raise BenchmarkError("resource constraints require a POSIX host")
    cores: set[int] | None = None
    if cpu is not None:
        if not hasattr(os, "sched_setaffinity"):
            raise BenchmarkError("cpu constraints require sched_setaffinity (Linux)")
        available = sorted(os.sched_getaffinity(0))
        cores = set(available[: max(1, math.ceil(cpu))])

    def limit() -> None:
        if cores is not None:
            os.sched_setaffinity(0, cores)
        if memory_bytes is not None:
            resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))

    return limit


def run_constrained(
    command: str,
    *,
    cpu: str | float | None = None,
    memory: str | int | None = None,
    baseline_metrics: dict[str, Any],
    benchmark_options: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Benchmark `command` under the given limits.

    Returns the raw constrained metrics alongside the delta to
    `baseline_metrics`, so drift in the baseline itself stays visible.
    """
    cpu_limit = parse_cpu_limit(cpu)
    memory_limit = parse_memory_limit(memory)
    if cpu_limit is None and memory_limit is None:
        raise PhaseError("constraints phase requires cpu and/or memory limits")
    if not baseline_metrics:
        raise PhaseError("constraints phase requires a recorded baseline")

    options = dict(benchmark_options or {})
    options["preexec_fn"] = build_limiter(cpu_limit, memory_limit)
    series = run_benchmark_series(command, **options)
    constraints = {
        "cpu": None if cpu_limit is None else str(cpu),
        "memory": None if memory_limit is None else str(memory),
        "memoryBytes": memory_limit,
    }
    return {
        "constraints": constraints,
        "metrics": series["metrics"],
        "runs": series["runs"],
        "aggregate": series["aggregate"],
        "delta": compute_delta(series["metrics"], baseline_metrics),
    }
