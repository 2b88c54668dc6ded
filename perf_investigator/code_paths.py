"""
Candidate code paths for a scenario.

A suggestion service is any callable `(description, keywords) -> list of
{file, score, symbols}`. The default scans project source files for keyword
hits; a symbol index can be plugged in instead.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Callable, Protocol

from .errors import PhaseError

SOURCE_PATTERNS = [
    "**/*.py",
    "**/*.js",
    "**/*.ts",
    "**/*.go",
    "**/*.rs",
    "**/*.java",
    "**/*.rb",
]
IGNORED_PARTS = {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build", ".claude", ".tox"}
DEFAULT_MAX_PATHS = 10
MAX_FILE_BYTES = 512 * 1024
SYMBOL_RE = re.compile(r"^\s*(?:async\s+)?(?:def|class|function|func|fn)\s+([A-Za-z_][A-Za-z0-9_]*)", re.MULTILINE)
STOP_WORDS = {"the", "and", "for", "with", "when", "slow", "fast", "from", "into", "under", "over"}


class CodePathSource(Protocol):
    def __call__(self, description: str, keywords: list[str]) -> list[dict[str, Any]]: ...


def tokenize(value: str) -> list[str]:
    out: list[str] = []
    for tok in re.findall(r"[a-z0-9_]+", value.lower()):
        if len(tok) < 3 or tok in STOP_WORDS:
            continue
        if tok not in out:
            out.append(tok)
    return out


def _source_files(project_dir: Path, patterns: list[str]) -> list[Path]:
    out: list[Path] = []
    seen: set[Path] = set()
    for pat in patterns:
        for p in sorted(project_dir.glob(pat)):
            if not p.is_file() or p in seen:
                continue
            rel_parts = p.relative_to(project_dir).parts
            if any(part in IGNORED_PARTS for part in rel_parts):
                continue
            seen.add(p)
            out.append(p)
    return out


def scan_code_paths(
    project_dir: Path,
    description: str,
    keywords: list[str],
    max_paths: int = DEFAULT_MAX_PATHS,
    patterns: list[str] | None = None,
) -> list[dict[str, Any]]:
    """Rank source files by keyword hits; ties break on path."""
    tokens = tokenize(" ".join(keywords)) or tokenize(description)
    if not tokens:
        return []
    ranked: list[dict[str, Any]] = []
    for path in _source_files(project_dir, patterns or SOURCE_PATTERNS):
        if path.stat().st_size > MAX_FILE_BYTES:
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        lowered = text.lower()
        rel = str(path.relative_to(project_dir))
        hits = sum(lowered.count(tok) for tok in tokens) + sum(2 for tok in tokens if tok in rel.lower())
        if hits == 0:
            continue
        symbols = [s for s in SYMBOL_RE.findall(text) if any(tok in s.lower() for tok in tokens)]
        ranked.append({"file": rel, "score": hits, "symbols": symbols[:8]})
    ranked.sort(key=lambda e: (-e["score"], e["file"]))
    return ranked[:max_paths]


def keyword_source(project_dir: Path, max_paths: int = DEFAULT_MAX_PATHS) -> Callable[[str, list[str]], list[dict[str, Any]]]:
    def suggest(description: str, keywords: list[str]) -> list[dict[str, Any]]:
        return scan_code_paths(project_dir, description, keywords, max_paths=max_paths)

    return suggest


def normalize_suggestions(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        raise PhaseError("code path suggestions must be a list")
    out: list[dict[str, Any]] = []
    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("file"), str) or not item["file"]:
            continue
        entry: dict[str, Any] = {"file": item["file"]}
        score = item.get("score")
        if isinstance(score, (int, float)) and not isinstance(score, bool):
            entry["score"] = score
        symbols = item.get("symbols")
        entry["symbols"] = [str(s) for s in symbols] if isinstance(symbols, list) else []
        out.append(entry)
    return out
