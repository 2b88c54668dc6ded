"""
Optimization experiments: re-benchmark after a change and judge it against
the baseline.

Each metric has a direction (is lower or higher better) and a relative
tolerance band in percent. A move inside the band is noise.
"""

from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any, Callable

from .benchmark import run_benchmark_series
from .errors import PhaseError
from .fsutil import utc_now
from .metrics import compute_delta

VERDICT_IMPROVED = "improved"
VERDICT_REGRESSED = "regressed"
VERDICT_NO_CHANGE = "no-significant-change"

DEFAULT_TOLERANCE_PCT = 5.0
DEFAULT_TOLERANCES: dict[str, float] = {"default": DEFAULT_TOLERANCE_PCT}
HIGHER_IS_BETTER_HINTS = ("throughput", "rps", "qps", "ops", "per_sec", "requests", "hits")


def metric_name(key: str) -> str:
    return key.rsplit(".", 1)[-1]


def metric_direction(key: str, directions: dict[str, str] | None = None) -> str:
    directions = directions or {}
    for candidate in (key, metric_name(key)):
        if candidate in directions:
            value = str(directions[candidate]).lower()
            if value not in {"lower", "higher"}:
                raise PhaseError(f"direction for {candidate} must be 'lower' or 'higher'")
            return value
    lowered = metric_name(key).lower()
    return "higher" if any(hint in lowered for hint in HIGHER_IS_BETTER_HINTS) else "lower"


def validate_tolerances(tolerances: Any) -> dict[str, float]:
    """Metric -> finite percent band; anything else is rejected as a PhaseError."""
    if tolerances is None:
        return {}
    if not isinstance(tolerances, dict):
        raise PhaseError("tolerances must be an object mapping metrics to percentages")
    out: dict[str, float] = {}
    for key, value in tolerances.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise PhaseError(f"tolerance for {key} must be a finite number, got {value!r}")
        out[key] = abs(float(value))
    return out


def validate_directions(directions: Any) -> dict[str, str]:
    if directions is None:
        return {}
    if not isinstance(directions, dict):
        raise PhaseError("directions must be an object mapping metrics to 'lower' or 'higher'")
    out: dict[str, str] = {}
    for key, value in directions.items():
        lowered = value.lower() if isinstance(value, str) else None
        if lowered not in {"lower", "higher"}:
            raise PhaseError(f"direction for {key} must be 'lower' or 'higher'")
        out[key] = lowered
    return out


def metric_tolerance(key: str, tolerances: dict[str, float] | None = None) -> float:
    merged = {**DEFAULT_TOLERANCES, **validate_tolerances(tolerances)}
    for candidate in (key, metric_name(key)):
        if candidate in merged:
            return merged[candidate]
    return merged["default"]


def load_policy_file(
    path: Path | None,
    validate: Callable[[Any], dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Read a JSON policy object; `validate` normalizes it or raises PhaseError."""
    if path is None:
        return {}
    try:
        loaded = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PhaseError(f"policy file not found: {path}") from exc
    except ValueError as exc:
        raise PhaseError(f"invalid policy json: {path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise PhaseError(f"policy file must contain an object: {path}")
    return validate(loaded) if validate else loaded


def classify_delta(
    delta: dict[str, Any],
    tolerances: dict[str, float] | None = None,
    directions: dict[str, str] | None = None,
) -> dict[str, Any]:
    """
    Judge each shared metric; any regression wins over any improvement.

    A metric whose baseline is zero has no percent change and is judged on
    the sign of its absolute delta.
    """
    tolerances = validate_tolerances(tolerances)
    directions = validate_directions(directions)
    improvements: list[str] = []
    regressions: list[str] = []
    percent = delta.get("percent") or {}
    for key, absolute in sorted((delta.get("metrics") or {}).items()):
        pct = percent.get(key)
        if pct is None:
            if absolute == 0:
                continue
            magnitude_exceeds = True
        else:
            magnitude_exceeds = abs(pct) > metric_tolerance(key, tolerances)
        if not magnitude_exceeds:
            continue
        better = absolute < 0 if metric_direction(key, directions) == "lower" else absolute > 0
        (improvements if better else regressions).append(key)

    if regressions:
        verdict = VERDICT_REGRESSED
    elif improvements:
        verdict = VERDICT_IMPROVED
    else:
        verdict = VERDICT_NO_CHANGE
    return {"verdict": verdict, "improvements": improvements, "regressions": regressions}


def run_experiment(
    command: str,
    change_summary: str,
    *,
    baseline_metrics: dict[str, Any],
    benchmark_options: dict[str, Any] | None = None,
    tolerances: dict[str, float] | None = None,
    directions: dict[str, str] | None = None,
) -> dict[str, Any]:
    if not isinstance(change_summary, str) or not change_summary.strip():
        raise PhaseError("optimization experiments require a change summary stating why the change should help")
    if not baseline_metrics:
        raise PhaseError("optimization experiments require a recorded baseline")
    tolerances = validate_tolerances(tolerances)
    directions = validate_directions(directions)

    series = run_benchmark_series(command, **(benchmark_options or {}))
    delta = compute_delta(series["metrics"], baseline_metrics)
    judged = classify_delta(delta, tolerances=tolerances, directions=directions)
    return {
        "change": change_summary.strip(),
        "metrics": series["metrics"],
        "runs": series["runs"],
        "aggregate": series["aggregate"],
        "delta": delta,
        "recordedAt": utc_now(),
        **judged,
    }
