from __future__ import annotations

import json
from pathlib import Path

from conftest import load_json, run_cli

QUOTE = "the nightly export takes forever"


def run_setup(project_dir: Path, bench_command: str, *extra: str) -> dict:
    proc = run_cli(
        project_dir,
        "run",
        "--user-quote",
        QUOTE,
        "--set",
        "scenario=nightly export",
        "--set",
        f"command={bench_command}",
        "--set",
        "version=v1",
        "--set",
        "runs=2",
        *extra,
        "--format",
        "json",
    )
    return json.loads(proc.stdout)


def test_run_setup_and_baseline_then_inspect(project_dir: Path, bench_command: str) -> None:
    setup = run_setup(project_dir, bench_command)
    assert setup["phase"] == "setup"
    assert setup["next_phase"] == "baseline"
    assert setup["version"] == 2
    assert setup["summary"]["benchmark"]["runs"] == 2

    baseline = json.loads(
        run_cli(project_dir, "run", "--user-quote", QUOTE, "--allow-short", "--format", "json").stdout
    )
    assert baseline["phase"] == "baseline"
    assert baseline["summary"]["metrics"] == {"latency_ms": 100.0, "throughput": 100.0}
    stored = load_json(project_dir / ".claude" / "perf" / "baselines" / "v1.json")
    assert stored["runs"] == 2
    assert len(stored["samples"]) == 2

    status = json.loads(run_cli(project_dir, "status", "--format", "json").stdout)
    assert status["phase"] == "breaking-point"
    assert status["_version"] == 3
    assert status["id"] == setup["investigation_id"]

    listed = json.loads(run_cli(project_dir, "baseline-list", "--format", "json").stdout)
    assert listed == {"baselines": ["v1"]}

    shown = json.loads(run_cli(project_dir, "baseline-show", "--version", "v1", "--format", "json").stdout)
    assert shown["aggregate"] == "median"

    text_log = run_cli(project_dir, "log").stdout
    assert text_log.startswith("## Setup - ")
    assert "## Baseline - " in text_log

    json_log = json.loads(run_cli(project_dir, "log", "--format", "json").stdout)
    assert json_log["id"] == setup["investigation_id"]
    assert json_log["log"] == text_log


def test_text_output(project_dir: Path, bench_command: str) -> None:
    run_setup(project_dir, bench_command)
    status = run_cli(project_dir, "status").stdout
    assert "phase: baseline" in status
    assert "version: 2" in status
    assert run_cli(project_dir, "baseline-list").stdout.strip() == "baselines: 0"


def test_custom_state_root(project_dir: Path, bench_command: str) -> None:
    run_setup(project_dir, bench_command, "--state-root", ".codex")
    assert (project_dir / ".codex" / "perf" / "investigation.json").exists()
    assert not (project_dir / ".claude").exists()


def test_validation_errors_exit_2_with_json_payload(project_dir: Path, bench_command: str) -> None:
    proc = run_cli(project_dir, "run", "--set", "scenario=x", "--format", "json", expect_code=2)
    payload = json.loads(proc.stdout)
    assert payload["status"] == "fail"
    assert payload["error"]["code"] == "phase_error"
    assert "user_quote" in payload["error"]["message"]
    assert "user_quote" in proc.stderr

    escaped = run_cli(project_dir, "status", "--state-root", "../outside", "--format", "json", expect_code=2)
    assert json.loads(escaped.stdout)["error"]["code"] == "path_safety"

    missing = run_cli(project_dir, "status", expect_code=2)
    assert missing.stdout == ""
    assert "no investigation found" in missing.stderr


def test_benchmark_failure_exits_1(project_dir: Path, bench_command: str) -> None:
    run_setup(project_dir, bench_command)
    (project_dir / "bench.py").write_text("import sys\nsys.exit(5)\n", encoding="utf-8")
    proc = run_cli(project_dir, "run", "--user-quote", QUOTE, "--allow-short", "--format", "json", expect_code=1)
    payload = json.loads(proc.stdout)
    assert payload["error"]["code"] == "benchmark_failed"
    assert "exit code 5" in payload["error"]["message"]
    status = json.loads(run_cli(project_dir, "status", "--format", "json").stdout)
    assert status["phase"] == "baseline"


def test_inputs_file_and_policy_files(project_dir: Path, bench_command: str) -> None:
    inputs = project_dir / "inputs.json"
    inputs.write_text(
        json.dumps({"scenario": "export", "command": bench_command, "version": "v7", "user_quote": QUOTE}),
        encoding="utf-8",
    )
    tolerances = project_dir / "tol.json"
    tolerances.write_text(json.dumps({"default": 1.0}), encoding="utf-8")
    payload = json.loads(
        run_cli(
            project_dir,
            "run",
            "--inputs-file",
            str(inputs),
            "--tolerances-file",
            str(tolerances),
            "--format",
            "json",
        ).stdout
    )
    assert payload["summary"]["benchmark"]["version"] == "v7"

    bad = run_cli(project_dir, "run", "--user-quote", QUOTE, "--tolerances-file", str(project_dir / "nope.json"), expect_code=2)
    assert "policy file not found" in bad.stderr

    tolerances.write_text(json.dumps({"latency_ms": "tight"}), encoding="utf-8")
    malformed = run_cli(
        project_dir, "run", "--user-quote", QUOTE, "--tolerances-file", str(tolerances), "--format", "json", expect_code=2
    )
    assert json.loads(malformed.stdout)["error"]["code"] == "phase_error"
    assert "Traceback" not in malformed.stderr


def test_corrupt_state_logs_critical_and_reports_missing(project_dir: Path) -> None:
    state = project_dir / ".claude" / "perf"
    state.mkdir(parents=True)
    (state / "investigation.json").write_text("{broken", encoding="utf-8")
    proc = run_cli(project_dir, "status", expect_code=2)
    assert proc.stderr.count("CRITICAL") == 1
    assert "no investigation found" in proc.stderr
