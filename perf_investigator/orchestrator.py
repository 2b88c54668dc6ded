"""
Phase state machine.

`run_phase` advances an investigation by exactly one phase: it loads (or
creates) the stored investigation, runs the single handler registered for the
phase, persists the handler's partial update through the optimistic store,
and appends one audit log entry. Handlers do all their validation and
external work before anything is written.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from . import audit_log, baselines, state_store
from .benchmark import benchmark_config_options, parse_command, resolve_runs, run_benchmark_series
from .breaking_point import search_breaking_point
from .checkpoint import commit_checkpoint, recent_commits
from .code_paths import CodePathSource, keyword_source, normalize_suggestions, tokenize
from .constraints import run_constrained
from .errors import InvestigationStateError, MetricsError, PhaseError, UpdateFailedError
from .fsutil import utc_now
from .metrics import normalize_aggregate, summarize_delta
from .optimization import run_experiment
from .paths import PerfPaths, assert_safe_identifier, ensure_within
from .phases import INITIAL_PHASE, Phase, parse_phase
from .profiling import run_profiling

logger = logging.getLogger(__name__)


@dataclass
class PhaseContext:
    paths: PerfPaths
    investigation: dict[str, Any]
    inputs: dict[str, Any]
    code_path_source: CodePathSource | None = None


@dataclass
class PhaseResult:
    """
    What a handler hands back.

    `updates` replace fields; `appends` holds new entries for list fields and
    is applied to the state as it stands at write time.
    """

    updates: dict[str, Any]
    log: dict[str, Any]
    summary: dict[str, Any] = field(default_factory=dict)
    appends: dict[str, list[Any]] = field(default_factory=dict)


@dataclass
class PhaseOutcome:
    phase: Phase
    next_phase: Phase
    investigation: dict[str, Any]
    log_entry: str
    summary: dict[str, Any] = field(default_factory=dict)
    checkpoint: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "next_phase": self.next_phase.value,
            "investigation_id": self.investigation["id"],
            "version": self.investigation["_version"],
            "status": self.investigation["status"],
            "summary": self.summary,
            "checkpoint": self.checkpoint,
        }


Handler = Callable[[PhaseContext], PhaseResult]
HANDLERS: dict[Phase, Handler] = {}


def handles(phase: Phase) -> Callable[[Handler], Handler]:
    def register(fn: Handler) -> Handler:
        HANDLERS[phase] = fn
        return fn

    return register


def _text(inputs: dict[str, Any], key: str, phase: Phase, required: bool = True) -> str | None:
    value = inputs.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise PhaseError(f"{phase.value} phase requires {key}")
        return None
    if not isinstance(value, str):
        raise PhaseError(f"{phase.value} phase input {key} must be a string")
    return value.strip()


def _string_list(value: Any, label: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return [v.strip() for v in value if v.strip()]
    raise PhaseError(f"{label} must be a list of strings or a comma-separated string")


def _benchmark(investigation: dict[str, Any], phase: Phase) -> dict[str, Any]:
    bench = investigation.get("benchmark")
    if not isinstance(bench, dict) or not bench.get("command"):
        raise PhaseError(f"{phase.value} phase requires a benchmark; run the setup phase first")
    return bench


def _series_options(ctx: PhaseContext) -> dict[str, Any]:
    """Series kwargs: investigation defaults, overridden per call by inputs."""
    options = benchmark_config_options(ctx.investigation.get("benchmark"))
    for key in ("duration", "runs", "aggregate"):
        if ctx.inputs.get(key) is not None:
            options[key] = ctx.inputs[key]
    if ctx.inputs.get("allow_short") is True:
        options["allow_short"] = True
    if ctx.inputs.get("timeout") is not None:
        options["timeout"] = ctx.inputs["timeout"]
    options["cwd"] = str(ctx.paths.project_dir)
    return options


@handles(Phase.SETUP)
def _setup(ctx: PhaseContext) -> PhaseResult:
    phase = Phase.SETUP
    scenario = _text(ctx.inputs, "scenario", phase)
    command = _text(ctx.inputs, "command", phase)
    version = assert_safe_identifier(_text(ctx.inputs, "version", phase), "baseline version")
    parse_command(command)

    # Every key is set so a re-run replaces the whole block.
    bench: dict[str, Any] = {"command": command, "version": version, "duration": None, "runs": None, "aggregate": None}
    if ctx.inputs.get("duration") is not None:
        bench["duration"] = ctx.inputs["duration"]
    if ctx.inputs.get("runs") is not None:
        bench["runs"] = resolve_runs(ctx.inputs["runs"])
    if ctx.inputs.get("aggregate") is not None:
        try:
            bench["aggregate"] = normalize_aggregate(ctx.inputs["aggregate"])
        except MetricsError as exc:
            raise PhaseError(str(exc)) from exc

    scenarios = ctx.inputs.get("scenarios")
    if scenarios is not None and not isinstance(scenarios, list):
        raise PhaseError("scenarios must be a list")
    existing = ctx.investigation.get("scenario") or {}
    scenario_block = {
        "description": scenario,
        "metrics": _string_list(ctx.inputs.get("metrics"), "metrics") or list(existing.get("metrics") or []),
        "successCriteria": _text(ctx.inputs, "success_criteria", phase, required=False)
        or existing.get("successCriteria")
        or "",
        "scenarios": scenarios if scenarios is not None else list(existing.get("scenarios") or []),
    }
    return PhaseResult(
        updates={"scenario": scenario_block, "benchmark": bench},
        log={
            "scenario": scenario,
            "command": command,
            "version": version,
            "duration": bench.get("duration"),
            "runs": bench.get("runs"),
            "aggregate": bench.get("aggregate"),
        },
        summary={"benchmark": bench},
    )


@handles(Phase.BASELINE)
def _baseline(ctx: PhaseContext) -> PhaseResult:
    bench = _benchmark(ctx.investigation, Phase.BASELINE)
    options = _series_options(ctx)
    series = run_benchmark_series(bench["command"], **options)
    path = baselines.write_baseline(
        ctx.paths,
        bench["version"],
        bench["command"],
        series["metrics"],
        runs=series["runs"],
        aggregate=series["aggregate"],
        duration=options.get("duration"),
        samples=series["samples"] if series["runs"] > 1 else None,
    )
    rel_path = ctx.paths.rel(path)
    entry = {
        "version": bench["version"],
        "command": bench["command"],
        "metrics": series["metrics"],
        "runs": series["runs"],
        "aggregate": series["aggregate"],
        "path": rel_path,
        "recordedAt": utc_now(),
    }
    return PhaseResult(
        updates={},
        appends={"baselines": [entry]},
        log={
            "command": bench["command"],
            "metrics": series["metrics"],
            "baseline_path": rel_path,
            "duration": options.get("duration"),
            "runs": series["runs"],
            "aggregate": series["aggregate"],
            "scenarios": (ctx.investigation.get("scenario") or {}).get("scenarios"),
        },
        summary={"baseline_path": rel_path, "metrics": series["metrics"]},
    )


@handles(Phase.BREAKING_POINT)
def _breaking_point(ctx: PhaseContext) -> PhaseResult:
    phase = Phase.BREAKING_POINT
    bench = _benchmark(ctx.investigation, phase)
    param_env = _text(ctx.inputs, "param_env", phase)
    for key in ("min", "max"):
        if ctx.inputs.get(key) is None:
            raise PhaseError(f"{phase.value} phase requires {key}")
    options = _series_options(ctx)
    options.pop("runs", None)
    result = search_breaking_point(
        bench["command"],
        param_env=param_env,
        min_value=ctx.inputs["min"],
        max_value=ctx.inputs["max"],
        benchmark_options=options,
    )
    history = [{**record, "paramEnv": param_env} for record in result["history"]]
    return PhaseResult(
        updates={"breakingPoint": result["breakingPoint"]},
        appends={"breakingPointHistory": history},
        log={
            "param_env": param_env,
            "min": result["min"],
            "max": result["max"],
            "breaking_point": result["breakingPoint"],
            "history": result["history"],
        },
        summary={"breakingPoint": result["breakingPoint"], "probes": result["probes"]},
    )


@handles(Phase.CONSTRAINTS)
def _constraints(ctx: PhaseContext) -> PhaseResult:
    bench = _benchmark(ctx.investigation, Phase.CONSTRAINTS)
    baseline = baselines.active_baseline(ctx.paths, ctx.investigation)
    result = run_constrained(
        bench["command"],
        cpu=ctx.inputs.get("cpu"),
        memory=ctx.inputs.get("memory"),
        baseline_metrics=baseline["metrics"],
        benchmark_options=_series_options(ctx),
    )
    entry = {**result, "baselineVersion": baseline["version"], "recordedAt": utc_now()}
    return PhaseResult(
        updates={},
        appends={"constraintResults": [entry]},
        log={"constraints": result["constraints"], "delta": result["delta"], "metrics": result["metrics"]},
        summary={"constraints": result["constraints"], "delta": summarize_delta(result["delta"])},
    )


def _load_hypotheses_file(paths: PerfPaths, raw: str) -> list[Any]:
    path = ensure_within(paths.project_dir / raw, paths.project_dir)
    try:
        loaded = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PhaseError(f"hypotheses file not found: {raw}") from exc
    except ValueError as exc:
        raise PhaseError(f"invalid hypotheses json: {raw}: {exc}") from exc
    if isinstance(loaded, dict):
        loaded = loaded.get("hypotheses")
    if not isinstance(loaded, list):
        raise PhaseError("hypotheses file must contain a list or {\"hypotheses\": [...]}")
    return loaded


def normalize_hypotheses(raw: list[Any], start: int = 1) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for item in raw:
        if isinstance(item, str):
            item = {"hypothesis": item}
        if not isinstance(item, dict) or not isinstance(item.get("hypothesis"), str) or not item["hypothesis"].strip():
            raise PhaseError("each hypothesis needs a non-empty hypothesis text")
        entry = {"id": str(item.get("id") or f"H{start + len(out)}"), "hypothesis": item["hypothesis"].strip()}
        for key in ("confidence", "evidence"):
            if item.get(key):
                entry[key] = str(item[key])
        out.append(entry)
    return out


@handles(Phase.HYPOTHESES)
def _hypotheses(ctx: PhaseContext) -> PhaseResult:
    recorded = ctx.investigation.get("hypotheses") or []
    raw = ctx.inputs.get("hypotheses")
    hypotheses_file = _text(ctx.inputs, "hypotheses_file", Phase.HYPOTHESES, required=False)
    if raw is None and hypotheses_file is None:
        raise PhaseError("hypotheses phase requires hypotheses or hypotheses_file")
    if raw is not None and not isinstance(raw, list):
        raise PhaseError("hypotheses must be a list")

    consumed_file = None
    if not raw and hypotheses_file and not recorded:
        raw = _load_hypotheses_file(ctx.paths, hypotheses_file)
        consumed_file = hypotheses_file
    elif hypotheses_file and recorded:
        logger.info("hypotheses already recorded; ignoring %s", hypotheses_file)
    new = normalize_hypotheses(raw or [], start=len(recorded) + 1)
    return PhaseResult(
        updates={},
        appends={"hypotheses": new},
        log={
            "hypotheses": new,
            "hypotheses_file": consumed_file,
            "git_history": recent_commits(ctx.paths.project_dir),
        },
        summary={"added": len(new), "total": len(recorded) + len(new)},
    )


@handles(Phase.CODE_PATHS)
def _code_paths(ctx: PhaseContext) -> PhaseResult:
    description = (ctx.investigation.get("scenario") or {}).get("description") or ""
    keywords = _string_list(ctx.inputs.get("keywords"), "keywords") or tokenize(description)
    if not keywords:
        raise PhaseError("code-paths phase requires keywords or a scenario description")
    source = ctx.code_path_source or keyword_source(ctx.paths.project_dir)
    suggestions = normalize_suggestions(source(description, keywords))
    return PhaseResult(
        updates={},
        appends={"codePaths": suggestions},
        log={
            "paths": suggestions,
            "keywords": keywords,
            "repo_map_status": "keyword-scan" if ctx.code_path_source is None else "external",
        },
        summary={"paths": [s["file"] for s in suggestions]},
    )


@handles(Phase.PROFILING)
def _profiling(ctx: PhaseContext) -> PhaseResult:
    phase = Phase.PROFILING
    command = _text(ctx.inputs, "command", phase, required=False)
    tool = _text(ctx.inputs, "tool", phase, required=False)
    if command is None and tool is None:
        raise PhaseError("profiling phase requires command or tool")
    if command is None:
        command = _benchmark(ctx.investigation, phase)["command"]
    tool = (tool or "cprofile").lower()
    output = None
    if tool == "cprofile":
        count = len(ctx.investigation.get("profilingResults") or []) + 1
        output = ctx.paths.report_dir / f"{ctx.investigation['id']}-profile-{count}.prof"
    result = run_profiling(
        command,
        tool=tool,
        output=output,
        artifacts=_string_list(ctx.inputs.get("artifacts"), "artifacts"),
        hotspots=_string_list(ctx.inputs.get("hotspots"), "hotspots"),
        cwd=ctx.paths.project_dir,
        timeout_seconds=ctx.inputs.get("timeout") or 300,
    )
    result["artifacts"] = [ctx.paths.rel(Path(a)) if Path(a).is_absolute() else a for a in result["artifacts"]]
    entry = {**result, "recordedAt": utc_now()}
    return PhaseResult(
        updates={},
        appends={"profilingResults": [entry]},
        log={
            "tool": result["tool"],
            "command": result["command"],
            "artifacts": result["artifacts"],
            "hotspots": result["hotspots"],
        },
        summary={"artifacts": result["artifacts"], "hotspots": result["hotspots"][:5]},
    )


@handles(Phase.OPTIMIZATION)
def _optimization(ctx: PhaseContext) -> PhaseResult:
    phase = Phase.OPTIMIZATION
    change = _text(ctx.inputs, "change", phase)
    bench = _benchmark(ctx.investigation, phase)
    baseline = baselines.active_baseline(ctx.paths, ctx.investigation)
    experiment = run_experiment(
        _text(ctx.inputs, "command", phase, required=False) or bench["command"],
        change,
        baseline_metrics=baseline["metrics"],
        benchmark_options=_series_options(ctx),
        tolerances=ctx.inputs.get("tolerances"),
        directions=ctx.inputs.get("directions"),
    )
    result = {
        "change": experiment["change"],
        "verdict": experiment["verdict"],
        "baselineVersion": baseline["version"],
        "percent": experiment["delta"]["percent"],
    }
    return PhaseResult(
        updates={},
        appends={"experiments": [experiment], "results": [result]},
        log={
            "change": experiment["change"],
            "delta": experiment["delta"],
            "verdict": experiment["verdict"],
            "runs": experiment["runs"],
            "aggregate": experiment["aggregate"],
            "git_history": recent_commits(ctx.paths.project_dir),
        },
        summary={
            "verdict": experiment["verdict"],
            "improvements": experiment["improvements"],
            "regressions": experiment["regressions"],
            "delta": summarize_delta(experiment["delta"]),
        },
    )


@handles(Phase.DECISION)
def _decision(ctx: PhaseContext) -> PhaseResult:
    verdict = _text(ctx.inputs, "verdict", Phase.DECISION)
    rationale = _text(ctx.inputs, "rationale", Phase.DECISION)
    decision = {"verdict": verdict, "rationale": rationale}
    return PhaseResult(
        updates={"decision": decision},
        log={**decision, "results_count": len(ctx.investigation.get("results") or [])},
        summary={"decision": decision},
    )


@handles(Phase.CONSOLIDATION)
def _consolidation(ctx: PhaseContext) -> PhaseResult:
    version = _text(ctx.inputs, "version", Phase.CONSOLIDATION, required=False)
    if version is None:
        version = (ctx.investigation.get("benchmark") or {}).get("version")
    version = assert_safe_identifier(version, "baseline version")
    report = baselines.consolidate_baseline(ctx.paths, ctx.investigation, version)
    baseline_rel = ctx.paths.rel(ctx.paths.baseline_path(version))
    report_rel = ctx.paths.rel(report)
    return PhaseResult(
        updates={"report": report_rel},
        log={"version": version, "path": baseline_rel, "report_path": report_rel},
        summary={"report": report_rel, "baseline": baseline_rel},
    )


def _load_or_initialize(paths: PerfPaths, pinned: Phase | None, resume: bool) -> dict[str, Any]:
    investigation = state_store.read_investigation(paths)
    if investigation is not None:
        return investigation
    if resume:
        raise InvestigationStateError(f"no investigation to resume under {paths.perf_dir}")
    return state_store.initialize_investigation(paths, phase=pinned or INITIAL_PHASE)


def run_phase(
    paths: PerfPaths,
    phase: str | Phase | None = None,
    inputs: dict[str, Any] | None = None,
    *,
    resume: bool = False,
    allow_phase_override: bool = False,
    code_path_source: CodePathSource | None = None,
    checkpoint: bool = False,
) -> PhaseOutcome:
    """
    Execute one phase and advance the investigation.

    `phase` pins the phase to run; by default the recorded phase runs. Running
    anything other than the recorded phase (or re-running the one just
    finished) requires `allow_phase_override`.
    """
    inputs = dict(inputs or {})
    pinned = parse_phase(phase) if phase is not None else None
    if pinned is Phase.COMPLETE:
        raise PhaseError("complete is terminal and cannot be run")
    user_quote = inputs.get("user_quote")
    if not isinstance(user_quote, str) or not user_quote.strip():
        raise PhaseError("every phase requires a non-empty user_quote")

    investigation = _load_or_initialize(paths, pinned, resume)
    current = pinned or parse_phase(investigation["phase"])
    if current is Phase.COMPLETE:
        raise PhaseError("investigation is already complete")
    next_phase = current.next()
    state_store.check_transition(
        investigation,
        {**investigation, "phase": next_phase.value},
        allow_phase_override=allow_phase_override,
    )

    ctx = PhaseContext(paths=paths, investigation=investigation, inputs=inputs, code_path_source=code_path_source)
    logger.info("running phase %s for %s", current.value, investigation["id"])
    result = HANDLERS[current](ctx)

    entry = {**result.log, "id": investigation["id"], "user_quote": user_quote}
    audit_log.validate_entry(current, entry)

    updates = {**result.updates, "phase": next_phase.value}
    if next_phase is Phase.COMPLETE:
        updates["status"] = "complete"
    saved = state_store.update_investigation(
        updates, paths, allow_phase_override=allow_phase_override, appends=result.appends
    )
    if saved is None:
        raise UpdateFailedError(f"could not persist {current.value} phase for {investigation['id']}; retry the phase")
    logger.info("investigation %s advanced %s -> %s", saved["id"], current.value, next_phase.value)

    text = audit_log.append_phase_log(paths, current, entry)
    outcome = PhaseOutcome(
        phase=current,
        next_phase=next_phase,
        investigation=saved,
        log_entry=text,
        summary=result.summary,
    )
    if checkpoint:
        delta = result.summary.get("delta")
        outcome.checkpoint = commit_checkpoint(
            paths.project_dir,
            current.value,
            saved["id"],
            baseline_version=(saved.get("benchmark") or {}).get("version"),
            delta_summary=delta if isinstance(delta, str) else None,
        )
    return outcome
