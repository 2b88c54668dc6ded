"""
Append-only investigation log (`perf/investigations/<id>.md`).

Every entry carries the user's literal words, a summary, and evidence. An
entry missing any of its required fields is rejected before the file is
touched. Entries are appended with one write each and never rewritten.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable

from .errors import AuditLogError, PathSafetyError
from .fsutil import append_text, utc_today
from .paths import PerfPaths
from .phases import Phase, parse_phase

logger = logging.getLogger(__name__)

COMMON_FIELDS = ("id", "user_quote")
REQUIRED_FIELDS: dict[Phase, tuple[str, ...]] = {
    Phase.SETUP: ("scenario", "command", "version"),
    Phase.BASELINE: ("command", "metrics", "baseline_path"),
    Phase.BREAKING_POINT: ("param_env", "min", "max"),
    Phase.CONSTRAINTS: ("constraints", "delta"),
    Phase.HYPOTHESES: ("hypotheses",),
    Phase.CODE_PATHS: ("paths",),
    Phase.PROFILING: ("tool", "command"),
    Phase.OPTIMIZATION: ("change", "delta", "verdict"),
    Phase.DECISION: ("verdict", "rationale"),
    Phase.CONSOLIDATION: ("version", "path"),
}
# Fields where an empty list/object is still meaningful evidence.
EMPTY_ALLOWED = {"hypotheses", "paths"}


def _is_missing(field: str, value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return False
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0 and field not in EMPTY_ALLOWED
    return False


def validate_entry(kind: Phase, entry: Any) -> None:
    if not isinstance(entry, dict):
        raise AuditLogError(f"{kind.value} log requires an input object")
    for field in COMMON_FIELDS + REQUIRED_FIELDS[kind]:
        if _is_missing(field, entry.get(field)):
            raise AuditLogError(f"{kind.value} log requires a non-empty {field}")
    for field in ("min", "max"):
        if kind is Phase.BREAKING_POINT and (
            isinstance(entry[field], bool) or not isinstance(entry[field], (int, float))
        ):
            raise AuditLogError("breaking-point log requires numeric min/max")
    if kind is Phase.BASELINE and not isinstance(entry["metrics"], dict):
        raise AuditLogError("baseline log requires a metrics object")
    for field in ("constraints", "delta"):
        if field in REQUIRED_FIELDS[kind] and not isinstance(entry[field], dict):
            raise AuditLogError(f"{kind.value} log requires a {field} object")
    if kind in (Phase.HYPOTHESES, Phase.CODE_PATHS) and not isinstance(entry[REQUIRED_FIELDS[kind][0]], list):
        raise AuditLogError(f"{kind.value} log requires a list of {REQUIRED_FIELDS[kind][0]}")


def _compact(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _run_lines(entry: dict[str, Any]) -> list[str | None]:
    return [
        f"- Duration: {entry['duration']}s" if entry.get("duration") is not None else None,
        f"- Runs: {entry['runs']}" if entry.get("runs") is not None else None,
        f"- Aggregate: {entry['aggregate']}" if entry.get("aggregate") else None,
    ]


def _git_history(entry: dict[str, Any]) -> str:
    history = entry.get("git_history")
    return " | ".join(history) if isinstance(history, list) and history else "n/a"


def _setup(e: dict[str, Any]) -> tuple[list[str | None], list[str | None]]:
    summary = [f"- Scenario: {e['scenario']}", f"- Command: `{e['command']}`", f"- Version: {e['version']}", *_run_lines(e)]
    return summary, [f"- Command: `{e['command']}`", f"- Version: {e['version']}"]


def _baseline(e: dict[str, Any]) -> tuple[list[str | None], list[str | None]]:
    scenarios = e.get("scenarios") or []
    names = ", ".join(str(s.get("name")) for s in scenarios if isinstance(s, dict) and s.get("name"))
    summary = [
        f"- Scenarios: {names}" if names else None,
        f"- Baseline command: `{e['command']}`",
        *_run_lines(e),
        f"- Metrics: {_compact(e['metrics'])}",
    ]
    return summary, [f"- Baseline file: {e['baseline_path']}"]


def _breaking_point(e: dict[str, Any]) -> tuple[list[str | None], list[str | None]]:
    bp = e.get("breaking_point")
    history = e.get("history")
    summary = [f"- Param env: {e['param_env']}", f"- Range: {e['min']}..{e['max']}", f"- Breaking point: {'n/a' if bp is None else bp}"]
    probes = [{"value": h.get("value"), "ok": h.get("ok")} for h in history] if isinstance(history, list) else None
    return summary, [f"- History: {_compact(probes) if probes is not None else 'n/a'}"]


def _constraints(e: dict[str, Any]) -> tuple[list[str | None], list[str | None]]:
    c = e["constraints"]
    summary = [f"- CPU: {c.get('cpu') or 'n/a'}", f"- Memory: {c.get('memory') or 'n/a'}"]
    evidence = [f"- Delta: {_compact(e['delta'].get('metrics', {}))}"]
    if e.get("metrics"):
        evidence.append(f"- Constrained metrics: {_compact(e['metrics'])}")
    return summary, evidence


def _hypotheses(e: dict[str, Any]) -> tuple[list[str | None], list[str | None]]:
    lines: list[str | None] = []
    for item in e["hypotheses"]:
        if not isinstance(item, dict):
            continue
        label = f"{item['id']}: " if item.get("id") else ""
        confidence = f" [{item['confidence']}]" if item.get("confidence") else ""
        evidence = f" (evidence: {item['evidence']})" if item.get("evidence") else ""
        lines.append(f"- {label}{item.get('hypothesis') or 'n/a'}{confidence}{evidence}")
    evidence_lines: list[str | None] = [f"- Git history: {_git_history(e)}"]
    if e.get("hypotheses_file"):
        evidence_lines.append(f"- Hypotheses file: {e['hypotheses_file']}")
    return (lines or ["- n/a"]), evidence_lines


def _code_paths(e: dict[str, Any]) -> tuple[list[str | None], list[str | None]]:
    keywords = e.get("keywords") or []
    lines: list[str | None] = [f"- Keywords: {', '.join(keywords) if keywords else 'n/a'}"]
    for p in e["paths"]:
        score = f" (score: {p['score']})" if isinstance(p.get("score"), (int, float)) else ""
        symbols = f" [{', '.join(p['symbols'])}]" if p.get("symbols") else ""
        lines.append(f"- {p.get('file') or 'n/a'}{score}{symbols}")
    if not e["paths"]:
        lines.append("- n/a")
    return lines, [f"- Repo map: {e.get('repo_map_status') or 'n/a'}", f"- Paths count: {len(e['paths'])}"]


def _profiling(e: dict[str, Any]) -> tuple[list[str | None], list[str | None]]:
    artifacts = e.get("artifacts") or []
    hotspots = e.get("hotspots") or []
    return (
        [f"- Tool: {e['tool']}", f"- Command: `{e['command']}`"],
        [
            f"- Artifacts: {', '.join(artifacts)}" if artifacts else "- Artifacts: n/a",
            f"- Hotspots: {', '.join(hotspots)}" if hotspots else "- Hotspots: n/a",
        ],
    )


def _optimization(e: dict[str, Any]) -> tuple[list[str | None], list[str | None]]:
    summary = [f"- Change: {e['change']}", f"- Verdict: {e['verdict']}", *_run_lines(e)]
    return summary, [f"- Delta: {_compact(e['delta'].get('metrics', {}))}", f"- Git history: {_git_history(e)}"]


def _decision(e: dict[str, Any]) -> tuple[list[str | None], list[str | None]]:
    count = e.get("results_count")
    return (
        [f"- Verdict: {e['verdict']}", f"- Rationale: {e['rationale']}"],
        [f"- Results count: {count if isinstance(count, int) else 'n/a'}"],
    )


def _consolidation(e: dict[str, Any]) -> tuple[list[str | None], list[str | None]]:
    evidence = [f"- Baseline file: {e['path']}"]
    if e.get("report_path"):
        evidence.append(f"- Report: {e['report_path']}")
    return [f"- Version: {e['version']}", f"- Baseline file: {e['path']}"], evidence


RENDERERS: dict[Phase, Callable[[dict[str, Any]], tuple[list[str | None], list[str | None]]]] = {
    Phase.SETUP: _setup,
    Phase.BASELINE: _baseline,
    Phase.BREAKING_POINT: _breaking_point,
    Phase.CONSTRAINTS: _constraints,
    Phase.HYPOTHESES: _hypotheses,
    Phase.CODE_PATHS: _code_paths,
    Phase.PROFILING: _profiling,
    Phase.OPTIMIZATION: _optimization,
    Phase.DECISION: _decision,
    Phase.CONSOLIDATION: _consolidation,
}


def render_entry(kind: Phase, entry: dict[str, Any]) -> str:
    summary, evidence = RENDERERS[kind](entry)
    if entry.get("summary"):
        summary = [f"- {entry['summary']}", *summary]
    for item in entry.get("evidence") or []:
        evidence.append(f"- {item}")
    quote = str(entry["user_quote"]).replace("\n", " ").strip()
    lines = [
        f"## {kind.title} - {entry.get('date') or utc_today()}",
        "",
        f'**User Quote:** "{quote}"',
        "",
        "**Summary**",
        *summary,
        "",
        "**Evidence**",
        *evidence,
        "",
    ]
    return "\n".join(line for line in lines if line is not None) + "\n"


def append_phase_log(paths: PerfPaths, kind: str | Phase, entry: dict[str, Any]) -> str:
    """Validate, render and append one entry; returns the rendered text."""
    try:
        phase = parse_phase(kind)
    except ValueError as exc:
        raise AuditLogError(str(exc)) from exc
    if phase not in RENDERERS:
        raise AuditLogError(f"no log entry type for phase {phase.value}")
    validate_entry(phase, entry)
    try:
        log_path = paths.log_path(entry["id"])
    except PathSafetyError as exc:
        raise AuditLogError(f"{phase.value} log requires a valid investigation id: {exc}") from exc
    text = render_entry(phase, entry)
    append_text(log_path, text)
    logger.debug("appended %s entry to %s", phase.value, log_path)
    return text


def read_log(paths: PerfPaths, investigation_id: str) -> str | None:
    try:
        return paths.log_path(investigation_id).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
