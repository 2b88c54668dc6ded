"""
Profiler execution.

`cprofile` wraps a Python command in `python -m cProfile` and reads the top
cumulative functions back out of the stats file; any other tool runs its
command as given and reports the artifacts it was told to expect.
"""

from __future__ import annotations

import io
import os
import pstats
import shlex
import subprocess
import sys
from pathlib import Path
from typing import Any

from .benchmark import parse_command
from .errors import BenchmarkError, PhaseError

DEFAULT_PROFILE_TIMEOUT_SECONDS = 300
DEFAULT_HOTSPOT_LIMIT = 10
PYTHON_EXECUTABLES = {"python", "python3", Path(sys.executable).name}


def _cprofile_argv(command: str, artifact: Path) -> list[str]:
    argv = parse_command(command, "Profiling command")
    if Path(argv[0]).name in PYTHON_EXECUTABLES:
        argv = argv[1:]
    if not argv or argv == ["-m"]:
        raise PhaseError("cprofile needs a script or module to run")
    # `script.py args` or `-m module args`; cProfile accepts both after -o.
    return [sys.executable, "-m", "cProfile", "-o", str(artifact), *argv]


def cprofile_hotspots(stats_path: Path, limit: int = DEFAULT_HOTSPOT_LIMIT) -> list[str]:
    stats = pstats.Stats(str(stats_path), stream=io.StringIO())
    rows = []
    for (filename, lineno, func), (_cc, _nc, _tt, ct, _callers) in stats.stats.items():
        rows.append((ct, f"{Path(filename).name}:{lineno}({func})"))
    rows.sort(key=lambda r: (-r[0], r[1]))
    return [f"{label} cum={ct:.4f}s" for ct, label in rows[:limit]]


def run_profiling(
    command: str,
    *,
    tool: str = "cprofile",
    output: Path | None = None,
    artifacts: list[str] | None = None,
    hotspots: list[str] | None = None,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    timeout_seconds: float = DEFAULT_PROFILE_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    """Run one profiler invocation and describe what it produced."""
    if not tool or not isinstance(tool, str):
        raise PhaseError("profiling requires a tool")
    tool = tool.strip().lower()
    artifact_list = [str(a) for a in (artifacts or [])]

    if tool == "cprofile":
        if output is None:
            raise PhaseError("cprofile requires an output path for its stats file")
        output.parent.mkdir(parents=True, exist_ok=True)
        argv = _cprofile_argv(command, output)
    else:
        argv = parse_command(command, "Profiling command")

    try:
        proc = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            cwd=str(cwd) if cwd else None,
            env={**os.environ, **(env or {})},
            timeout=timeout_seconds,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise BenchmarkError(f"Profiling command timed out after {exc.timeout}s") from exc
    except OSError as exc:
        raise BenchmarkError(f"Profiling command could not start: {exc}") from exc
    if proc.returncode != 0:
        details = (proc.stderr or proc.stdout or "").strip() or f"exit code {proc.returncode}"
        raise BenchmarkError(f"Profiling command failed: {details}")

    found_hotspots = list(hotspots or [])
    if tool == "cprofile" and output is not None:
        if not output.exists():
            raise BenchmarkError(f"cProfile did not write {output}")
        artifact_list.insert(0, str(output))
        if not found_hotspots:
            found_hotspots = cprofile_hotspots(output)

    return {
        "tool": tool,
        "command": shlex.join(argv),
        "artifacts": artifact_list,
        "hotspots": found_hotspots,
    }
