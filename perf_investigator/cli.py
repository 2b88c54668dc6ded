#!/usr/bin/env python3
"""
Perf Investigator CLI

Runs one investigation phase per invocation and inspects the state kept under
`<project>/<state-root>/perf/`.

Exit codes: 0 success, 1 operational failure (benchmark, persistence, lock),
2 invalid input or state.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from . import audit_log, baselines, state_store
from .errors import (
    AuditLogError,
    BenchmarkError,
    InvestigationStateError,
    MetricsError,
    PathSafetyError,
    PhaseError,
    UpdateFailedError,
)
from .optimization import load_policy_file, validate_directions, validate_tolerances
from .orchestrator import run_phase
from .paths import PerfPaths, resolve_perf_paths
from .phases import PHASE_NAMES

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

# (exception type, error code, exit code); first match wins.
ERROR_CODES: list[tuple[type[BaseException], str, int]] = [
    (PathSafetyError, "path_safety", 2),
    (PhaseError, "phase_error", 2),
    (InvestigationStateError, "invalid_state", 2),
    (AuditLogError, "audit_log", 2),
    (MetricsError, "metrics", 2),
    (BenchmarkError, "benchmark_failed", 1),
    (UpdateFailedError, "update_failed", 1),
    (TimeoutError, "lock_timeout", 1),
    (OSError, "io_error", 1),
]
HANDLED_ERRORS = tuple(t for t, _code, _exit in ERROR_CODES)


def parse_assignment(raw: str) -> tuple[str, Any]:
    """`key=value`; the value is read as JSON when it parses, else kept as text."""
    if "=" not in raw:
        raise argparse.ArgumentTypeError(f"expected key=value, got {raw!r}")
    key, value = raw.split("=", 1)
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError(f"missing key in {raw!r}")
    try:
        return key, json.loads(value)
    except ValueError:
        return key, value


def _paths(args: argparse.Namespace) -> PerfPaths:
    return resolve_perf_paths(args.project_dir, args.state_root)


def _emit(args: argparse.Namespace, payload: Any, text_lines: list[str]) -> None:
    if args.format == "json":
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        for line in text_lines:
            print(line)


def _load_inputs(args: argparse.Namespace) -> dict[str, Any]:
    inputs: dict[str, Any] = {}
    if args.inputs_file:
        try:
            loaded = json.loads(Path(args.inputs_file).read_text(encoding="utf-8"))
        except ValueError as exc:
            raise PhaseError(f"invalid inputs json: {args.inputs_file}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise PhaseError(f"inputs file must contain an object: {args.inputs_file}")
        inputs.update(loaded)
    for key, value in args.set or []:
        inputs[key] = value
    if args.user_quote is not None:
        inputs["user_quote"] = args.user_quote
    if args.allow_short:
        inputs["allow_short"] = True
    tolerances = load_policy_file(
        Path(args.tolerances_file) if args.tolerances_file else None, validate_tolerances
    )
    if tolerances:
        inputs["tolerances"] = tolerances
    directions = load_policy_file(
        Path(args.directions_file) if args.directions_file else None, validate_directions
    )
    if directions:
        inputs["directions"] = directions
    return inputs


def run_project(args: argparse.Namespace) -> int:
    paths = _paths(args)
    outcome = run_phase(
        paths,
        args.phase,
        _load_inputs(args),
        resume=args.resume,
        allow_phase_override=args.allow_phase_override,
        checkpoint=args.checkpoint,
    )
    payload = outcome.to_dict()
    lines = [
        f"investigation: {payload['investigation_id']}",
        f"phase: {payload['phase']} -> {payload['next_phase']}",
        f"version: {payload['version']}",
    ]
    for key, value in sorted(outcome.summary.items()):
        lines.append(f"{key}: {value if isinstance(value, str) else json.dumps(value, sort_keys=True)}")
    if outcome.checkpoint is not None:
        lines.append(f"checkpoint: {outcome.checkpoint.get('message') or outcome.checkpoint.get('reason')}")
    _emit(args, payload, lines)
    return 0


def status_project(args: argparse.Namespace) -> int:
    paths = _paths(args)
    investigation = state_store.read_investigation(paths)
    if investigation is None:
        raise InvestigationStateError(f"no investigation found under {paths.rel(paths.perf_dir)}")
    lines = [
        f"investigation: {investigation['id']}",
        f"status: {investigation['status']}",
        f"phase: {investigation['phase']}",
        f"version: {investigation['_version']}",
        f"scenario: {investigation['scenario']['description'] or 'n/a'}",
        f"baselines: {len(investigation['baselines'])}",
        f"breaking_point: {'n/a' if investigation['breakingPoint'] is None else investigation['breakingPoint']}",
        f"experiments: {len(investigation['experiments'])}",
    ]
    decision = investigation.get("decision")
    if decision:
        lines.append(f"decision: {decision['verdict']}")
    _emit(args, investigation, lines)
    return 0


def baseline_show_project(args: argparse.Namespace) -> int:
    paths = _paths(args)
    record = baselines.read_baseline(paths, args.version)
    if record is None:
        raise InvestigationStateError(f"baseline {args.version} not found or invalid")
    lines = [
        f"version: {record['version']}",
        f"command: {record['command']}",
        f"recorded_at: {record['recordedAt']}",
        f"metrics: {json.dumps(record['metrics'], sort_keys=True)}",
    ]
    _emit(args, record, lines)
    return 0


def baseline_list_project(args: argparse.Namespace) -> int:
    versions = baselines.list_baselines(_paths(args))
    _emit(args, {"baselines": versions}, [f"baselines: {len(versions)}", *versions])
    return 0


def log_project(args: argparse.Namespace) -> int:
    paths = _paths(args)
    investigation_id = args.id
    if investigation_id is None:
        investigation = state_store.read_investigation(paths)
        if investigation is None:
            raise InvestigationStateError("no investigation found; pass --id")
        investigation_id = investigation["id"]
    text = audit_log.read_log(paths, investigation_id)
    if text is None:
        raise InvestigationStateError(f"no log for investigation {investigation_id}")
    if args.format == "json":
        _emit(args, {"id": investigation_id, "log": text}, [])
    else:
        sys.stdout.write(text)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Phase-based performance investigation engine")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_common_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--project-dir", default=".", help="Project root (default: current directory).")
        p.add_argument(
            "--state-root",
            help="Project-relative state directory (defaults to AI_STATE_DIR or .claude).",
        )
        p.add_argument("--format", choices=["text", "json"], default="text")
        p.add_argument("--log-level", choices=LOG_LEVELS, default="WARNING")

    p_run = sub.add_parser("run", help="Run one investigation phase and advance the state machine.")
    add_common_args(p_run)
    p_run.add_argument("--phase", choices=PHASE_NAMES, help="Phase to run (default: the recorded phase).")
    p_run.add_argument("--user-quote", help="The user's literal words that prompted this phase.")
    p_run.add_argument(
        "--set",
        action="append",
        type=parse_assignment,
        metavar="KEY=VALUE",
        help="Phase input; VALUE is parsed as JSON when possible. Repeatable.",
    )
    p_run.add_argument("--inputs-file", help="JSON object of phase inputs (applied before --set).")
    p_run.add_argument("--resume", action="store_true", help="Fail instead of creating a new investigation.")
    p_run.add_argument("--allow-phase-override", action="store_true")
    p_run.add_argument("--allow-short", action="store_true", help="Accept benchmark runs shorter than the duration.")
    p_run.add_argument("--tolerances-file", help="JSON object of per-metric tolerance percentages.")
    p_run.add_argument("--directions-file", help="JSON object mapping metrics to 'lower' or 'higher'.")
    p_run.add_argument("--checkpoint", action="store_true", help="Commit the working tree after the phase.")
    p_run.set_defaults(func=run_project)

    p_status = sub.add_parser("status", help="Show the stored investigation.")
    add_common_args(p_status)
    p_status.set_defaults(func=status_project)

    p_baseline_show = sub.add_parser("baseline-show", help="Show one recorded baseline.")
    add_common_args(p_baseline_show)
    p_baseline_show.add_argument("--version", required=True)
    p_baseline_show.set_defaults(func=baseline_show_project)

    p_baseline_list = sub.add_parser("baseline-list", help="List recorded baseline versions.")
    add_common_args(p_baseline_list)
    p_baseline_list.set_defaults(func=baseline_list_project)

    p_log = sub.add_parser("log", help="Print an investigation's audit log.")
    add_common_args(p_log)
    p_log.add_argument("--id", help="Investigation id (default: the stored investigation).")
    p_log.set_defaults(func=log_project)

    return parser


def _fail(args: argparse.Namespace, exc: BaseException) -> int:
    code, exit_code = next((c, e) for t, c, e in ERROR_CODES if isinstance(exc, t))
    if getattr(args, "format", "text") == "json":
        print(json.dumps({"status": "fail", "error": {"code": code, "message": str(exc)}}, indent=2, sort_keys=True))
    print(f"error: {exc}", file=sys.stderr)
    return exit_code


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        return args.func(args)
    except HANDLED_ERRORS as exc:
        return _fail(args, exc)


if __name__ == "__main__":
    raise SystemExit(main())
