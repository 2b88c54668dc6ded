"""
Investigation state store.

One JSON document per state directory (`perf/investigation.json`), validated
before every write, replaced atomically, and updated through an optimistic
compare-and-swap loop keyed on `_version`.
"""

from __future__ import annotations

import copy
import json
import logging
import random
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Callable

from . import fsutil
from .errors import InvestigationStateError, PhaseError, VersionConflictError
from .paths import PerfPaths, assert_safe_identifier
from .phases import INITIAL_PHASE, Phase, parse_phase
from .schemas import assert_valid, validate_investigation

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
MAX_UPDATE_ATTEMPTS = 5
RETRY_DELAY_MIN_MS = 10
RETRY_DELAY_MAX_MS = 60

LIST_FIELDS = (
    "baselines",
    "hypotheses",
    "codePaths",
    "experiments",
    "results",
    "breakingPointHistory",
    "constraintResults",
    "profilingResults",
)


def generate_investigation_id() -> str:
    now = datetime.now(timezone.utc)
    return f"perf-{now.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(4)}"


def is_plain_object(value: Any) -> bool:
    return isinstance(value, dict)


def read_investigation(paths: PerfPaths) -> dict[str, Any] | None:
    """
    Return the stored investigation, or None.

    A file that does not parse or fails schema validation is reported once at
    CRITICAL and treated exactly like a missing file.
    """
    path = paths.investigation_path
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.critical("Unreadable investigation state at %s: %s", path, exc)
        return None
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        logger.critical("Corrupted investigation.json at %s: %s", path, exc)
        return None
    errors = validate_investigation(parsed)
    if errors:
        logger.critical("Invalid investigation state at %s: %s", path, "; ".join(errors))
        return None
    return parsed


def _stored_version(paths: PerfPaths) -> int:
    """Version currently on disk; unreadable or invalid state counts as 0."""
    try:
        parsed = json.loads(paths.investigation_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return 0
    if not isinstance(parsed, dict) or validate_investigation(parsed):
        return 0
    version = parsed.get("_version")
    return version if isinstance(version, int) else 0


def prepare_next(doc: dict[str, Any]) -> dict[str, Any]:
    """Stamp `updatedAt`, bump `_version`, and validate. Pure; no I/O."""
    if not is_plain_object(doc):
        raise InvestigationStateError("investigation state must be an object")
    current = doc.get("_version") or 0
    if not isinstance(current, int) or current < 0:
        raise InvestigationStateError(f"invalid _version: {current!r}")
    next_doc = dict(doc)
    next_doc["updatedAt"] = fsutil.utc_now()
    next_doc["_version"] = current + 1
    assert_valid(validate_investigation(next_doc), "Invalid investigation state")
    return next_doc


def write_investigation(
    doc: dict[str, Any],
    paths: PerfPaths,
    expected_version: int | None = None,
) -> dict[str, Any]:
    """
    Persist `doc` as the next version and return what was written.

    Validation happens before any filesystem access. With `expected_version`,
    the stored version is checked under the write lock and a mismatch raises
    VersionConflictError without writing.
    """
    next_doc = prepare_next(doc)
    paths.ensure_dirs()
    content = fsutil.dump_json(next_doc)
    if expected_version is None:
        fsutil.atomic_write_text(paths.investigation_path, content)
        return next_doc
    with fsutil.write_lock(paths.lock_path, purpose="investigation-update"):
        actual = _stored_version(paths)
        if actual != expected_version:
            raise VersionConflictError(expected_version, actual)
        fsutil.atomic_write_text(paths.investigation_path, content)
    return next_doc


def merge_updates(current: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """
    Apply partial `updates` to a copy of `current`.

    Top-level keys replace; a dict merged into a dict merges one level deep;
    None clears the field. `_version` in `updates` is ignored.
    """
    merged = copy.deepcopy(current)
    for key, value in updates.items():
        if key == "_version":
            continue
        if value is None:
            merged[key] = None
        elif is_plain_object(value) and is_plain_object(merged.get(key)):
            merged[key] = {**merged[key], **copy.deepcopy(value)}
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _has_subset(target: Any, subset: Any) -> bool:
    if not is_plain_object(subset):
        return target == subset
    if not is_plain_object(target):
        return False
    return all(_has_subset(target.get(k), v) for k, v in subset.items())


def updates_applied(doc: dict[str, Any] | None, updates: dict[str, Any]) -> bool:
    if not doc:
        return False
    for key, value in updates.items():
        if key == "_version":
            continue
        if not _has_subset(doc.get(key), value):
            return False
    return True


def check_transition(
    current: dict[str, Any],
    proposed: dict[str, Any],
    allow_phase_override: bool = False,
) -> None:
    """Enforce id immutability, append-only lists, and forward-only phases."""
    if not current:
        return
    if "id" in current and proposed.get("id") != current.get("id"):
        raise InvestigationStateError(
            f"investigation id is immutable ({current.get('id')!r} -> {proposed.get('id')!r})"
        )
    for field in LIST_FIELDS:
        old = current.get(field) or []
        new = proposed.get(field)
        if not isinstance(new, list) or new[: len(old)] != old:
            raise InvestigationStateError(f"{field} is append-only; existing entries cannot change")
    if allow_phase_override or "phase" not in current:
        return
    before = parse_phase(current["phase"])
    after = parse_phase(proposed.get("phase", before))
    if after.index < before.index:
        raise PhaseError(f"phase cannot move backward ({before.value} -> {after.value})")
    if after.index > before.index + 1:
        raise PhaseError(f"phase cannot skip ahead ({before.value} -> {after.value})")


def _sleep_for_retry() -> None:
    time.sleep(random.randint(RETRY_DELAY_MIN_MS, RETRY_DELAY_MAX_MS) / 1000.0)


def transact(
    paths: PerfPaths,
    transform: Callable[[dict[str, Any]], dict[str, Any]],
    verify: Callable[[dict[str, Any]], bool] | None = None,
    max_attempts: int = MAX_UPDATE_ATTEMPTS,
) -> dict[str, Any] | None:
    """
    Optimistic read-transform-write loop.

    `transform` receives the current document (or {}) and returns the full
    next document; it must be pure, since it runs again on every retry.
    Returns the persisted document, or None once attempts are exhausted.
    Validation and invariant errors raised by `transform` propagate at once.
    """
    for attempt in range(1, max_attempts + 1):
        current = read_investigation(paths) or {}
        expected = current.get("_version") or 0
        proposed = transform(copy.deepcopy(current))
        proposed["_version"] = expected
        try:
            written = write_investigation(proposed, paths, expected_version=expected)
        except (VersionConflictError, TimeoutError) as exc:
            logger.debug("investigation update attempt %d/%d lost: %s", attempt, max_attempts, exc)
        else:
            after = read_investigation(paths)
            if (
                after is not None
                and after.get("_version", 0) >= expected + 1
                and (verify(after) if verify else after == written)
            ):
                return after
            logger.debug("investigation update attempt %d/%d not visible after write", attempt, max_attempts)
        if attempt < max_attempts:
            _sleep_for_retry()

    logger.error("update_investigation: failed to apply updates after %d attempts", max_attempts)
    return None


def append_entries(current: dict[str, Any], appends: dict[str, list[Any]]) -> dict[str, Any]:
    """Extend list fields of `current` (a copy) with new entries."""
    merged = copy.deepcopy(current)
    for field, entries in appends.items():
        if field not in LIST_FIELDS:
            raise InvestigationStateError(f"{field} is not an append-only list")
        merged[field] = [*(current.get(field) or []), *copy.deepcopy(entries)]
    return merged


def entries_present(doc: dict[str, Any] | None, appends: dict[str, list[Any]]) -> bool:
    if not doc:
        return False
    return all(entry in (doc.get(field) or []) for field, entries in appends.items() for entry in entries)


def update_investigation(
    updates: dict[str, Any],
    paths: PerfPaths,
    allow_phase_override: bool = False,
    appends: dict[str, list[Any]] | None = None,
) -> dict[str, Any] | None:
    """
    Merge `updates` into the stored investigation. None means the update failed.

    `appends` maps list fields to new entries; they are added to whatever the
    list holds when the write is attempted, so concurrent appends from other
    writers survive a retry.
    """
    if not is_plain_object(updates):
        raise InvestigationStateError("updates must be an object")
    appends = appends or {}
    if not is_plain_object(appends) or not all(isinstance(v, list) for v in appends.values()):
        raise InvestigationStateError("appends must map list fields to lists")
    overlap = sorted(set(appends) & set(updates))
    if overlap:
        raise InvestigationStateError(f"fields both replaced and appended: {', '.join(overlap)}")

    def apply(current: dict[str, Any]) -> dict[str, Any]:
        merged = append_entries(merge_updates(current, updates), appends)
        check_transition(current, merged, allow_phase_override=allow_phase_override)
        return merged

    def verify(doc: dict[str, Any]) -> bool:
        return updates_applied(doc, updates) and entries_present(doc, appends)

    return transact(paths, apply, verify=verify)


def new_investigation(
    *,
    investigation_id: str | None = None,
    phase: str | Phase = INITIAL_PHASE,
    scenario: str = "",
    metrics: list[str] | None = None,
    success_criteria: str = "",
    scenarios: list[Any] | None = None,
) -> dict[str, Any]:
    resolved_phase = parse_phase(phase)
    inv_id = assert_safe_identifier(investigation_id or generate_investigation_id(), "investigation id")
    now = fsutil.utc_now()
    return {
        "schemaVersion": SCHEMA_VERSION,
        "id": inv_id,
        "status": "in_progress",
        "phase": resolved_phase.value,
        "createdAt": now,
        "updatedAt": now,
        "_version": 0,
        "scenario": {
            "description": scenario or "",
            "metrics": list(metrics or []),
            "successCriteria": success_criteria or "",
            "scenarios": list(scenarios) if isinstance(scenarios, list) else [],
        },
        "baselines": [],
        "hypotheses": [],
        "codePaths": [],
        "experiments": [],
        "results": [],
        "breakingPoint": None,
        "breakingPointHistory": [],
        "constraintResults": [],
        "profilingResults": [],
        "decision": None,
    }


def initialize_investigation(paths: PerfPaths, **options: Any) -> dict[str, Any]:
    """Create and persist a fresh investigation, replacing any stored one."""
    state = new_investigation(**options)
    written = write_investigation(state, paths)
    logger.info("initialized investigation %s at phase %s", written["id"], written["phase"])
    return written
