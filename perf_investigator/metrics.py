"""
Benchmark metric markers, aggregation, and deltas.

A benchmark reports metrics on stdout in one of two forms:

  - a JSON block between `PERF_METRICS_START` and `PERF_METRICS_END`
    (preferred when present);
  - one or more `PERF_METRICS key=value ...` lines; a `scenario=<name>` token
    scopes that line's values under `scenarios.<name>`.

Scenario-scoped metrics are flattened to `scenarios.<name>.<metric>` keys for
aggregation and comparison.
"""

from __future__ import annotations

import json
import math
import re
import statistics
from typing import Any

from .errors import MetricsError
from .schemas import validate_metrics

LINE_MARKER = "PERF_METRICS"
BLOCK_START = "PERF_METRICS_START"
BLOCK_END = "PERF_METRICS_END"
AGGREGATES = ("median", "mean", "min", "max")
DEFAULT_AGGREGATE = "median"


def _as_number(key: str, raw: str) -> float | int:
    try:
        value = int(raw)
    except ValueError:
        try:
            value = float(raw)
        except ValueError:
            raise MetricsError(f"Metric {key} must be a number (got {raw!r})") from None
    if isinstance(value, float) and not math.isfinite(value):
        raise MetricsError(f"Metric {key} must be a finite number")
    return value


def _parse_block(output: str) -> dict[str, Any] | None:
    start = output.find(BLOCK_START)
    if start == -1:
        return None
    end = output.find(BLOCK_END, start + len(BLOCK_START))
    if end == -1:
        return None
    raw = output[start + len(BLOCK_START) : end].strip()
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise MetricsError(f"Failed to parse metrics JSON: {exc}") from exc
    return parsed


def _parse_lines(output: str) -> dict[str, Any]:
    metrics: dict[str, Any] = {}
    saw_marker = False
    for line in re.split(r"\r?\n", output):
        idx = line.find(LINE_MARKER)
        if idx == -1:
            continue
        saw_marker = True
        rest = line[idx + len(LINE_MARKER) :].strip()
        scenario: str | None = None
        line_metrics: dict[str, Any] = {}
        for token in rest.split():
            key, sep, raw_value = token.partition("=")
            key = key.strip()
            if not sep or not key:
                continue
            if key == "scenario":
                scenario = raw_value.strip()
                continue
            line_metrics[key] = _as_number(key, raw_value.strip())
        if not line_metrics:
            continue
        if scenario:
            metrics.setdefault("scenarios", {}).setdefault(scenario, {}).update(line_metrics)
        else:
            metrics.update(line_metrics)
    if not saw_marker:
        raise MetricsError("Metrics markers not found")
    return metrics


def parse_metrics(output: str) -> dict[str, Any]:
    """Extract metrics from benchmark output. Raises MetricsError when none are usable."""
    if not isinstance(output, str):
        raise MetricsError("Output must be a string")
    metrics = _parse_block(output)
    if metrics is None:
        metrics = _parse_lines(output)
    errors = validate_metrics(metrics)
    if errors:
        if metrics == {}:
            raise MetricsError("No metrics parsed from benchmark output")
        raise MetricsError(f"Invalid metrics: {'; '.join(errors)}")
    flatten_metrics(metrics)
    return metrics


def flatten_metrics(metrics: Any) -> dict[str, float]:
    if not isinstance(metrics, dict):
        raise MetricsError("metrics must be an object")
    flat: dict[str, float] = {}
    for key, value in metrics.items():
        if key == "scenarios":
            if not isinstance(value, dict):
                raise MetricsError("metrics.scenarios must be an object")
            for scenario_name, scenario_metrics in value.items():
                if not isinstance(scenario_metrics, dict):
                    raise MetricsError(f"metrics.scenarios.{scenario_name} must be an object")
                for metric_name, metric_value in scenario_metrics.items():
                    if not _is_number(metric_value):
                        raise MetricsError(f"metric {scenario_name}.{metric_name} must be a number")
                    flat[f"scenarios.{scenario_name}.{metric_name}"] = metric_value
            continue
        if not _is_number(value):
            raise MetricsError(f"metric {key} must be a number")
        flat[key] = value
    return flat


def unflatten_metrics(flat: dict[str, float]) -> dict[str, Any]:
    metrics: dict[str, Any] = {}
    for key, value in flat.items():
        if not key.startswith("scenarios."):
            metrics[key] = value
            continue
        parts = key.split(".")
        if len(parts) < 3:
            raise MetricsError(f"invalid scenario metric key: {key}")
        scenario_name, metric_name = parts[1], ".".join(parts[2:])
        metrics.setdefault("scenarios", {}).setdefault(scenario_name, {})[metric_name] = value
    return metrics


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def normalize_aggregate(aggregate: str | None) -> str:
    name = (aggregate or DEFAULT_AGGREGATE).strip().lower()
    if name not in AGGREGATES:
        raise MetricsError(f"Unsupported aggregate: {aggregate}")
    return name


def aggregate_values(values: list[float], aggregate: str | None = None) -> float:
    if not values:
        raise MetricsError("cannot aggregate an empty sample")
    name = normalize_aggregate(aggregate)
    if name == "median":
        return statistics.median(values)
    if name == "mean":
        return statistics.fmean(values)
    if name == "min":
        return min(values)
    return max(values)


def aggregate_metrics(samples: list[dict[str, Any]], aggregate: str | None = None) -> dict[str, Any]:
    """Aggregate each metric key independently across runs."""
    if not isinstance(samples, list) or not samples:
        raise MetricsError("samples must be a non-empty list")
    name = normalize_aggregate(aggregate)
    flattened = [flatten_metrics(s) for s in samples]
    keys = sorted(flattened[0])
    for sample in flattened[1:]:
        if sorted(sample) != keys:
            raise MetricsError("Metric sets differ across runs")
    return unflatten_metrics({k: aggregate_values([s[k] for s in flattened], name) for k in keys})


def compute_delta(current: dict[str, Any], baseline: dict[str, Any]) -> dict[str, Any]:
    """
    Per-key `current - baseline` over the keys both sides report.

    Keys reported by only one side are listed under `unmatched` rather than
    guessed at.
    """
    cur = flatten_metrics(current)
    base = flatten_metrics(baseline)
    shared = sorted(set(cur) & set(base))
    if not shared:
        raise MetricsError("no metrics in common with the baseline")
    absolute: dict[str, float] = {}
    percent: dict[str, float | None] = {}
    for key in shared:
        absolute[key] = cur[key] - base[key]
        percent[key] = None if base[key] == 0 else round((cur[key] - base[key]) / abs(base[key]) * 100.0, 4)
    return {
        "metrics": absolute,
        "percent": percent,
        "unmatched": sorted(set(cur) ^ set(base)),
    }


def summarize_delta(delta: dict[str, Any], limit: int = 3) -> str:
    percent = delta.get("percent") or {}
    parts = []
    for key in sorted(percent)[:limit]:
        pct = percent[key]
        parts.append(f"{key}={'n/a' if pct is None else f'{pct:+.1f}%'}")
    return ",".join(parts) if parts else "n/a"
