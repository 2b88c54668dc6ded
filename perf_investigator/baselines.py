"""
Named benchmark baselines (`perf/baselines/<version>.json`).

Writing a version replaces its whole record atomically. Consolidation copies
the active baseline, re-validated, into the investigation's final report.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from . import fsutil
from .errors import InvestigationStateError
from .paths import PerfPaths
from .schemas import assert_valid, validate_baseline

logger = logging.getLogger(__name__)


def build_baseline(version: str, command: str, metrics: dict[str, Any], **extra: Any) -> dict[str, Any]:
    record: dict[str, Any] = {
        "version": version,
        "command": command,
        "metrics": metrics,
        "recordedAt": fsutil.utc_now(),
    }
    for key, value in extra.items():
        if value is not None:
            record[key] = value
    return record


def write_baseline(
    paths: PerfPaths,
    version: str,
    command: str,
    metrics: dict[str, Any],
    **extra: Any,
) -> Path:
    """Validate and persist a baseline; returns its path."""
    path = paths.baseline_path(version)
    record = build_baseline(version, command, metrics, **extra)
    assert_valid(validate_baseline(record), f"Invalid baseline {version}")
    fsutil.atomic_write_text(path, fsutil.dump_json(record))
    logger.info("wrote baseline %s to %s", version, path)
    return path


def read_baseline(paths: PerfPaths, version: str) -> dict[str, Any] | None:
    path = paths.baseline_path(version)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        record = json.loads(raw)
    except ValueError as exc:
        logger.critical("Corrupted baseline at %s: %s", path, exc)
        return None
    errors = validate_baseline(record)
    if errors:
        logger.critical("Invalid baseline at %s: %s", path, "; ".join(errors))
        return None
    return record


def list_baselines(paths: PerfPaths) -> list[str]:
    if not paths.baseline_dir.is_dir():
        return []
    return sorted(p.stem for p in paths.baseline_dir.glob("*.json") if not p.name.startswith("."))


def active_baseline(paths: PerfPaths, investigation: dict[str, Any]) -> dict[str, Any]:
    """The baseline for the investigation's current benchmark version."""
    version = (investigation.get("benchmark") or {}).get("version")
    if not version:
        raise InvestigationStateError("no benchmark version configured; run the setup phase first")
    record = read_baseline(paths, version)
    if record is None:
        raise InvestigationStateError(f"baseline {version} not found; run the baseline phase first")
    return record


def consolidate_baseline(paths: PerfPaths, investigation: dict[str, Any], version: str) -> Path:
    """Write the final report for `investigation` around baseline `version`."""
    record = read_baseline(paths, version)
    if record is None:
        raise InvestigationStateError(f"baseline {version} not found or invalid")
    report_path = paths.report_path(investigation["id"])
    experiments = investigation.get("experiments") or []
    report = {
        "investigationId": investigation["id"],
        "scenario": investigation.get("scenario"),
        "baseline": record,
        "baselinePath": paths.rel(paths.baseline_path(version)),
        "breakingPoint": investigation.get("breakingPoint"),
        "constraintResults": len(investigation.get("constraintResults") or []),
        "experiments": [
            {"change": e.get("change"), "verdict": e.get("verdict")} for e in experiments if isinstance(e, dict)
        ],
        "decision": investigation.get("decision"),
        "consolidatedAt": fsutil.utc_now(),
    }
    fsutil.atomic_write_text(report_path, fsutil.dump_json(report))
    return report_path
