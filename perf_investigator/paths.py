"""
State directory layout for perf investigations.

    <project>/<state-root>/perf/investigation.json
    <project>/<state-root>/perf/investigations/<id>.md
    <project>/<state-root>/perf/baselines/<version>.json
    <project>/<state-root>/perf/reports/<id>.json
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

from .errors import PathSafetyError

DEFAULT_STATE_ROOT = ".claude"
STATE_ROOT_ENV = "AI_STATE_DIR"
INVESTIGATION_FILE = "investigation.json"
LOG_DIR = "investigations"
BASELINE_DIR = "baselines"
REPORT_DIR = "reports"
LOCK_FILE = ".lock"

SAFE_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9._-]+$")


def assert_safe_identifier(value: object, label: str = "identifier") -> str:
    if not isinstance(value, str) or not value:
        raise PathSafetyError(f"{label} is required")
    if "\0" in value or ".." in value or "/" in value or "\\" in value:
        raise PathSafetyError(f"{label} contains invalid characters: {value!r}")
    if not SAFE_IDENTIFIER_RE.match(value):
        raise PathSafetyError(f"{label} contains invalid characters: {value!r}")
    return value


def ensure_within(target: Path, base: Path) -> Path:
    resolved_target = target.resolve()
    resolved_base = base.resolve()
    if resolved_target != resolved_base and resolved_base not in resolved_target.parents:
        raise PathSafetyError(f"path traversal detected: {target} escapes {base}")
    return resolved_target


def resolve_project_dir(raw_project_dir: str | os.PathLike[str]) -> Path:
    text = os.fspath(raw_project_dir)
    if not text:
        raise PathSafetyError("project directory must be a non-empty path")
    if "\0" in text:
        raise PathSafetyError("project directory contains a NUL byte")
    return Path(text).resolve()


@dataclass(frozen=True)
class PerfPaths:
    """Explicit handle on one project's perf state directory."""

    project_dir: Path
    perf_dir: Path

    @property
    def investigation_path(self) -> Path:
        return self.perf_dir / INVESTIGATION_FILE

    @property
    def log_dir(self) -> Path:
        return self.perf_dir / LOG_DIR

    @property
    def baseline_dir(self) -> Path:
        return self.perf_dir / BASELINE_DIR

    @property
    def report_dir(self) -> Path:
        return self.perf_dir / REPORT_DIR

    @property
    def lock_path(self) -> Path:
        return self.perf_dir / LOCK_FILE

    def log_path(self, investigation_id: str) -> Path:
        safe_id = assert_safe_identifier(investigation_id, "investigation id")
        return ensure_within(self.log_dir / f"{safe_id}.md", self.log_dir)

    def baseline_path(self, version: str) -> Path:
        safe_version = assert_safe_identifier(version, "baseline version")
        return ensure_within(self.baseline_dir / f"{safe_version}.json", self.baseline_dir)

    def report_path(self, investigation_id: str) -> Path:
        safe_id = assert_safe_identifier(investigation_id, "investigation id")
        return ensure_within(self.report_dir / f"{safe_id}.json", self.report_dir)

    def ensure_dirs(self) -> None:
        for d in (self.perf_dir, self.log_dir, self.baseline_dir, self.report_dir):
            d.mkdir(parents=True, exist_ok=True)

    def rel(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.project_dir))
        except ValueError:
            return str(path)


def resolve_perf_paths(
    project_dir: str | os.PathLike[str],
    raw_state_root: str | None = None,
) -> PerfPaths:
    """
    Build the handle for `project_dir`.

    The state root comes from `raw_state_root`, then AI_STATE_DIR, then
    `.claude`, and must stay inside the project directory.
    """
    base = resolve_project_dir(project_dir)
    state_root = raw_state_root or os.environ.get(STATE_ROOT_ENV) or DEFAULT_STATE_ROOT
    if "\0" in state_root:
        raise PathSafetyError("state root contains a NUL byte")
    if Path(state_root).is_absolute():
        raise PathSafetyError(f"state root must be project-relative: {state_root}")
    perf_dir = ensure_within(base / state_root / "perf", base)
    return PerfPaths(project_dir=base, perf_dir=perf_dir)
