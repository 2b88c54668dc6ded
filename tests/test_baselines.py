from __future__ import annotations

import logging

import pytest

from conftest import load_json
from perf_investigator import baselines, state_store
from perf_investigator.errors import InvestigationStateError, PathSafetyError
from perf_investigator.paths import PerfPaths


def test_write_read_and_replace(perf_paths: PerfPaths) -> None:
    path = baselines.write_baseline(perf_paths, "v1", "python bench.py", {"latency_ms": 12}, runs=3, aggregate="median")
    assert path == perf_paths.baseline_dir / "v1.json"
    record = baselines.read_baseline(perf_paths, "v1")
    assert record["metrics"] == {"latency_ms": 12}
    assert record["runs"] == 3

    baselines.write_baseline(perf_paths, "v1", "python bench.py", {"latency_ms": 9})
    replaced = load_json(path)
    assert replaced["metrics"] == {"latency_ms": 9}
    assert "runs" not in replaced


def test_invalid_baseline_is_not_written(perf_paths: PerfPaths) -> None:
    with pytest.raises(InvestigationStateError):
        baselines.write_baseline(perf_paths, "v1", "python bench.py", {})
    with pytest.raises(PathSafetyError):
        baselines.write_baseline(perf_paths, "../v1", "python bench.py", {"a": 1})
    assert baselines.list_baselines(perf_paths) == []


def test_corrupt_baseline_reads_as_missing(perf_paths: PerfPaths, caplog: pytest.LogCaptureFixture) -> None:
    perf_paths.ensure_dirs()
    perf_paths.baseline_path("v2").write_text("{", encoding="utf-8")
    with caplog.at_level(logging.CRITICAL):
        assert baselines.read_baseline(perf_paths, "v2") is None
    assert len(caplog.records) == 1
    assert baselines.read_baseline(perf_paths, "v3") is None


def test_list_is_sorted(perf_paths: PerfPaths) -> None:
    for version in ("v2", "v10", "v1"):
        baselines.write_baseline(perf_paths, version, "python bench.py", {"a": 1})
    assert baselines.list_baselines(perf_paths) == ["v1", "v10", "v2"]


def test_active_baseline_needs_setup_and_record(perf_paths: PerfPaths) -> None:
    doc = state_store.initialize_investigation(perf_paths)
    with pytest.raises(InvestigationStateError, match="setup phase"):
        baselines.active_baseline(perf_paths, doc)
    doc["benchmark"] = {"command": "python bench.py", "version": "v1"}
    with pytest.raises(InvestigationStateError, match="baseline phase"):
        baselines.active_baseline(perf_paths, doc)
    baselines.write_baseline(perf_paths, "v1", "python bench.py", {"a": 1})
    assert baselines.active_baseline(perf_paths, doc)["version"] == "v1"


def test_consolidate_writes_report(perf_paths: PerfPaths) -> None:
    doc = state_store.initialize_investigation(perf_paths, investigation_id="perf-report", scenario="cart")
    doc["experiments"] = [{"change": "cache", "verdict": "improved", "metrics": {"a": 1}}]
    doc["decision"] = {"verdict": "ship", "rationale": "faster"}
    baselines.write_baseline(perf_paths, "v1", "python bench.py", {"a": 2})

    report_path = baselines.consolidate_baseline(perf_paths, doc, "v1")

    assert report_path == perf_paths.report_dir / "perf-report.json"
    report = load_json(report_path)
    assert report["investigationId"] == "perf-report"
    assert report["baseline"]["metrics"] == {"a": 2}
    assert report["baselinePath"] == ".claude/perf/baselines/v1.json"
    assert report["experiments"] == [{"change": "cache", "verdict": "improved"}]
    assert report["decision"]["verdict"] == "ship"

    with pytest.raises(InvestigationStateError):
        baselines.consolidate_baseline(perf_paths, doc, "v9")
