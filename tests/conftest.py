from __future__ import annotations

import json
import os
import shlex
import subprocess
import sys
from pathlib import Path

import pytest

from perf_investigator.paths import PerfPaths, resolve_perf_paths


REPO_ROOT = Path(__file__).resolve().parents[1]

BENCH_SCRIPT = """\
import json
import os
import sys
from pathlib import Path

load = int(os.environ.get("LOAD", "1"))
fail_at = int(os.environ.get("BENCH_FAIL_AT", "0"))
if fail_at and load >= fail_at:
    print(f"overloaded at {load}", file=sys.stderr)
    sys.exit(3)

latency_file = Path("latency.txt")
latency = float(latency_file.read_text().strip()) if latency_file.exists() else 100.0
print("warming up")
print("PERF_METRICS_START")
print(json.dumps({"latency_ms": latency, "throughput": round(10000.0 / latency, 4)}))
print("PERF_METRICS_END")
"""


def run_cmd(
    args: list[str],
    cwd: Path,
    expect_code: int = 0,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    proc = subprocess.run(
        args,
        cwd=str(cwd),
        text=True,
        capture_output=True,
        check=False,
        env={**os.environ, **(env or {})},
    )
    if proc.returncode != expect_code:
        raise AssertionError(
            f"command failed\ncwd={cwd}\nargs={args}\n"
            f"expected={expect_code} got={proc.returncode}\n"
            f"stdout:\n{proc.stdout}\n\nstderr:\n{proc.stderr}"
        )
    return proc


def run_cli(project_dir: Path, *cli_args: str, expect_code: int = 0) -> subprocess.CompletedProcess[str]:
    args = [sys.executable, "-m", "perf_investigator.cli", *cli_args, "--project-dir", str(project_dir)]
    pythonpath = os.pathsep.join(p for p in (str(REPO_ROOT), os.environ.get("PYTHONPATH", "")) if p)
    return run_cmd(args, cwd=REPO_ROOT, expect_code=expect_code, env={"PYTHONPATH": pythonpath, "AI_STATE_DIR": ""})


def init_git_repo(path: Path) -> None:
    run_cmd(["git", "init"], cwd=path)
    run_cmd(["git", "config", "user.email", "test@example.com"], cwd=path)
    run_cmd(["git", "config", "user.name", "Perf Test"], cwd=path)


def load_json(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "proj"
    project.mkdir()
    return project


@pytest.fixture()
def perf_paths(project_dir: Path, monkeypatch: pytest.MonkeyPatch) -> PerfPaths:
    monkeypatch.delenv("AI_STATE_DIR", raising=False)
    return resolve_perf_paths(project_dir)


@pytest.fixture()
def bench_command(project_dir: Path) -> str:
    """A benchmark printing a metrics block; LOAD >= BENCH_FAIL_AT makes it exit 3."""
    script = project_dir / "bench.py"
    script.write_text(BENCH_SCRIPT, encoding="utf-8")
    return f"{shlex.quote(sys.executable)} bench.py"


@pytest.fixture(autouse=True)
def _no_retry_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("perf_investigator.state_store._sleep_for_retry", lambda: None)
