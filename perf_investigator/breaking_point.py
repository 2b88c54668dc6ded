"""
Breaking-point search.

Bisects an integer parameter range for the smallest value at which a probe
fails. The parameter reaches the benchmark through an environment variable.
The top of the range is probed first so a range with no failure costs one
probe; after that the search narrows `[lo, hi]` keeping `hi` a known failure.
Probes never run concurrently.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Callable

from .benchmark import run_benchmark_series
from .errors import BenchmarkError, PhaseError
from .fsutil import utc_now

logger = logging.getLogger(__name__)

Probe = Callable[[int], dict[str, Any]]


def max_probes(min_value: int, max_value: int) -> int:
    span = max_value - min_value + 1
    return math.ceil(math.log2(span)) + 1 if span > 1 else 1


def benchmark_probe(
    command: str,
    param_env: str,
    benchmark_options: dict[str, Any] | None = None,
) -> Probe:
    """A probe that passes when the benchmark series succeeds at `value`."""
    options = {"mode": "binary-search", **(benchmark_options or {})}

    def probe(value: int) -> dict[str, Any]:
        env = {**(options.get("env") or {}), param_env: str(value)}
        try:
            series = run_benchmark_series(command, **{**options, "env": env})
        except BenchmarkError as exc:
            return {"ok": False, "error": str(exc).splitlines()[0]}
        return {"ok": True, "metrics": series["metrics"]}

    return probe


def _validate_range(param_env: str, min_value: Any, max_value: Any) -> tuple[int, int]:
    if not isinstance(param_env, str) or not param_env.strip():
        raise PhaseError("breaking-point search requires param_env")
    for label, value in (("min", min_value), ("max", max_value)):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise PhaseError(f"breaking-point {label} must be a number")
        if int(value) != value:
            raise PhaseError(f"breaking-point {label} must be an integer")
    lo, hi = int(min_value), int(max_value)
    if lo > hi:
        raise PhaseError(f"breaking-point range is empty ({lo} > {hi})")
    return lo, hi


def search_breaking_point(
    command: str | None,
    *,
    param_env: str,
    min_value: int,
    max_value: int,
    probe: Probe | None = None,
    benchmark_options: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Locate the smallest failing value in `[min_value, max_value]`.

    `breakingPoint` is None when the top of the range passes. Every probe is
    recorded in `history` in the order it ran.
    """
    lo, hi = _validate_range(param_env, min_value, max_value)
    if probe is None:
        if not command:
            raise PhaseError("breaking-point search requires a benchmark command")
        probe = benchmark_probe(command, param_env, benchmark_options)

    limit = max_probes(lo, hi)
    history: list[dict[str, Any]] = []

    def run(value: int) -> bool:
        if len(history) >= limit:
            raise BenchmarkError(f"breaking-point probe limit reached ({limit})")
        outcome = probe(value)
        ok = bool(outcome.get("ok"))
        record: dict[str, Any] = {"value": value, "ok": ok, "at": utc_now()}
        if outcome.get("metrics") is not None:
            record["metrics"] = outcome["metrics"]
        if outcome.get("error"):
            record["error"] = outcome["error"]
        history.append(record)
        logger.info("breaking-point probe %s=%s -> %s", param_env, value, "pass" if ok else "fail")
        return ok

    breaking_point: int | None
    if run(hi):
        breaking_point = None
    else:
        while lo < hi:
            mid = (lo + hi) // 2
            if run(mid):
                lo = mid + 1
            else:
                hi = mid
        breaking_point = hi

    return {
        "breakingPoint": breaking_point,
        "history": history,
        "paramEnv": param_env,
        "min": int(min_value),
        "max": int(max_value),
        "probes": len(history),
    }
