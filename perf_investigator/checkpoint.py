from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any


def build_checkpoint_message(phase: str, investigation_id: str, baseline_version: str | None = None, delta_summary: str | None = None) -> str:
    if not phase:
        raise ValueError("phase is required")
    if not investigation_id:
        raise ValueError("id is required")
    return f"perf: phase {phase} [{investigation_id}] baseline={baseline_version or 'n/a'} delta={delta_summary or 'n/a'}"


def _git(project_dir: Path, *args: str) -> subprocess.CompletedProcess[str]:
    """Run git; a missing git binary reads as a failed command."""
    cmd = ["git", "-C", str(project_dir), *args]
    try:
        return subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as exc:
        return subprocess.CompletedProcess(cmd, 127, stdout="", stderr=str(exc))


def last_commit_message(project_dir: Path) -> str | None:
    proc = _git(project_dir, "log", "-1", "--pretty=%B")
    if proc.returncode != 0:
        return None
    return proc.stdout.strip()


def recent_commits(project_dir: Path, limit: int = 5) -> list[str]:
    """One-line summaries of the latest commits; empty outside a git repo."""
    proc = _git(project_dir, "log", f"-{limit}", "--pretty=%h %s")
    if proc.returncode != 0:
        return []
    return [line.strip() for line in proc.stdout.splitlines() if line.strip()]


def commit_checkpoint(
    project_dir: Path,
    phase: str,
    investigation_id: str,
    baseline_version: str | None = None,
    delta_summary: str | None = None,
) -> dict[str, Any]:
    """Commit the working tree after a phase. Skips cleanly when there is nothing to record."""
    if _git(project_dir, "rev-parse", "--is-inside-work-tree").returncode != 0:
        return {"ok": False, "reason": "not a git repo"}
    status = _git(project_dir, "status", "--porcelain")
    if status.returncode != 0:
        return {"ok": False, "reason": (status.stderr or "git status failed").strip()}
    if not status.stdout.strip():
        return {"ok": False, "reason": "nothing to commit"}

    message = build_checkpoint_message(phase, investigation_id, baseline_version, delta_summary)
    if last_commit_message(project_dir) == message:
        return {"ok": False, "reason": "duplicate checkpoint"}
    for args in (("add", "-A"), ("commit", "-m", message)):
        proc = _git(project_dir, *args)
        if proc.returncode != 0:
            return {"ok": False, "reason": (proc.stderr or proc.stdout).strip() or f"git {args[0]} failed"}
    return {"ok": True, "message": message}
