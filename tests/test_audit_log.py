from __future__ import annotations

import os
from typing import Any

import pytest

from perf_investigator import audit_log
from perf_investigator.audit_log import REQUIRED_FIELDS, append_phase_log, read_log
from perf_investigator.errors import AuditLogError
from perf_investigator.paths import PerfPaths
from perf_investigator.phases import Phase

INV_ID = "perf-20260101-000000-abcd1234"

VALID_ENTRIES: dict[Phase, dict[str, Any]] = {
    Phase.SETUP: {"scenario": "checkout p95", "command": "python bench.py", "version": "v1"},
    Phase.BASELINE: {"command": "python bench.py", "metrics": {"latency_ms": 12}, "baseline_path": ".claude/perf/baselines/v1.json"},
    Phase.BREAKING_POINT: {"param_env": "LOAD", "min": 1, "max": 500, "breaking_point": 300},
    Phase.CONSTRAINTS: {"constraints": {"cpu": "1"}, "delta": {"metrics": {"latency_ms": 4}}},
    Phase.HYPOTHESES: {"hypotheses": [{"id": "H1", "hypothesis": "lock contention", "confidence": "high"}]},
    Phase.CODE_PATHS: {"paths": [{"file": "app/cart.py", "score": 3, "symbols": ["checkout"]}], "keywords": ["checkout"]},
    Phase.PROFILING: {"tool": "cprofile", "command": "python bench.py", "hotspots": ["cart.py:10(checkout)"]},
    Phase.OPTIMIZATION: {"change": "cache prices", "delta": {"metrics": {"latency_ms": -3}}, "verdict": "improved"},
    Phase.DECISION: {"verdict": "ship", "rationale": "p95 dropped 20%"},
    Phase.CONSOLIDATION: {"version": "v1", "path": ".claude/perf/baselines/v1.json"},
}


def entry_for(phase: Phase, **overrides: Any) -> dict[str, Any]:
    return {"id": INV_ID, "user_quote": "why is checkout slow?", **VALID_ENTRIES[phase], **overrides}


def test_every_phase_has_a_renderer_and_fixture() -> None:
    assert set(REQUIRED_FIELDS) == set(audit_log.RENDERERS) == set(VALID_ENTRIES)


@pytest.mark.parametrize("phase", list(VALID_ENTRIES))
def test_append_renders_standard_sections(perf_paths: PerfPaths, phase: Phase) -> None:
    text = append_phase_log(perf_paths, phase.value, entry_for(phase))
    assert text.startswith(f"## {phase.title} - ")
    assert '**User Quote:** "why is checkout slow?"' in text
    assert "**Summary**" in text
    assert "**Evidence**" in text
    assert read_log(perf_paths, INV_ID) == text


@pytest.mark.parametrize(
    ("phase", "field"),
    [(phase, field) for phase, fields in REQUIRED_FIELDS.items() for field in ("id", "user_quote", *fields)],
)
def test_missing_required_field_raises_before_write(perf_paths: PerfPaths, phase: Phase, field: str) -> None:
    entry = entry_for(phase)
    entry.pop(field)
    with pytest.raises(AuditLogError, match=field):
        append_phase_log(perf_paths, phase, entry)
    assert not perf_paths.log_dir.exists()


def test_empty_strings_count_as_missing(perf_paths: PerfPaths) -> None:
    with pytest.raises(AuditLogError, match="non-empty user_quote"):
        append_phase_log(perf_paths, "decision", entry_for(Phase.DECISION, user_quote="   "))
    with pytest.raises(AuditLogError, match="non-empty metrics"):
        append_phase_log(perf_paths, "baseline", entry_for(Phase.BASELINE, metrics={}))


def test_empty_hypotheses_and_paths_are_evidence(perf_paths: PerfPaths) -> None:
    append_phase_log(perf_paths, "hypotheses", entry_for(Phase.HYPOTHESES, hypotheses=[]))
    text = append_phase_log(perf_paths, "code-paths", entry_for(Phase.CODE_PATHS, paths=[]))
    assert "- Paths count: 0" in text


def test_type_checks(perf_paths: PerfPaths) -> None:
    with pytest.raises(AuditLogError, match="numeric min/max"):
        append_phase_log(perf_paths, "breaking-point", entry_for(Phase.BREAKING_POINT, min="1"))
    with pytest.raises(AuditLogError, match="delta object"):
        append_phase_log(perf_paths, "optimization", entry_for(Phase.OPTIMIZATION, delta="-3"))
    with pytest.raises(AuditLogError, match="list of hypotheses"):
        append_phase_log(perf_paths, "hypotheses", entry_for(Phase.HYPOTHESES, hypotheses="H1"))


def test_unknown_kind_and_unsafe_id(perf_paths: PerfPaths) -> None:
    with pytest.raises(AuditLogError, match="invalid perf phase"):
        append_phase_log(perf_paths, "warmup", entry_for(Phase.SETUP))
    with pytest.raises(AuditLogError, match="no log entry type"):
        append_phase_log(perf_paths, "complete", entry_for(Phase.SETUP))
    with pytest.raises(AuditLogError, match="valid investigation id"):
        append_phase_log(perf_paths, "setup", entry_for(Phase.SETUP, id="../escape"))


def test_entries_append_in_order(perf_paths: PerfPaths) -> None:
    first = append_phase_log(perf_paths, "setup", entry_for(Phase.SETUP))
    second = append_phase_log(perf_paths, "decision", entry_for(Phase.DECISION))
    assert read_log(perf_paths, INV_ID) == first + second


def test_each_entry_is_one_write(perf_paths: PerfPaths, monkeypatch: pytest.MonkeyPatch) -> None:
    writes: list[int] = []
    real_write = os.write

    def counting_write(fd: int, data: bytes) -> int:
        writes.append(len(data))
        return real_write(fd, data)

    monkeypatch.setattr(os, "write", counting_write)
    text = append_phase_log(perf_paths, "setup", entry_for(Phase.SETUP))
    assert writes == [len(text.encode("utf-8"))]


def test_rendered_details() -> None:
    text = audit_log.render_entry(
        Phase.BREAKING_POINT,
        entry_for(
            Phase.BREAKING_POINT,
            history=[{"value": 500, "ok": False}, {"value": 250, "ok": True}],
            summary="knee found",
            evidence=["grafana screenshot"],
            date="2026-01-02",
        ),
    )
    assert text.splitlines()[0] == "## Breaking Point - 2026-01-02"
    assert "- knee found" in text
    assert "- Range: 1..500" in text
    assert "- Breaking point: 300" in text
    assert '- History: [{"ok":false,"value":500},{"ok":true,"value":250}]' in text
    assert "- grafana screenshot" in text
