from __future__ import annotations

import json
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0
DEFAULT_LOCK_STALE_SECONDS = 30.0


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def utc_today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def dump_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.tmp.", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        try:
            if tmp_path.exists():
                tmp_path.unlink()
        except FileNotFoundError:
            pass


def append_text(path: Path, content: str) -> None:
    """Append `content` with a single write on an O_APPEND descriptor."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
    try:
        written = os.write(fd, data)
        if written != len(data):
            raise OSError(f"short append to {path}: {written}/{len(data)} bytes")
        os.fsync(fd)
    finally:
        os.close(fd)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except OSError:
        # EPERM: alive, owned by someone else.
        return True


def _read_lock_metadata(lock_path: Path) -> dict[str, Any]:
    try:
        obj = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return obj if isinstance(obj, dict) else {}


def _lock_stale_reason(lock_path: Path, stale_seconds: float, meta: dict[str, Any]) -> str | None:
    created = meta.get("created_epoch")
    pid = meta.get("pid")
    if isinstance(created, (int, float)) and (time.time() - float(created)) > stale_seconds:
        return "age_exceeded"
    if isinstance(pid, int) and not _pid_alive(pid):
        return "owner_process_missing"
    if not meta:
        # The owner may still be between O_EXCL create and writing metadata.
        try:
            age = time.time() - lock_path.stat().st_mtime
        except FileNotFoundError:
            return None
        return "invalid_metadata" if age > 1.0 else None
    return None


def _break_stale_lock(lock_path: Path, stale_token: Any) -> None:
    """
    Remove the lock judged stale, and only that one.

    The lock is claimed by rename, so of several takers only one gets the
    file. If what it got is a newer lock than the one judged stale, it is
    linked back into place.
    """
    claimed = lock_path.with_name(f"{lock_path.name}.stale.{os.getpid()}.{time.time_ns()}")
    try:
        os.rename(lock_path, claimed)
    except FileNotFoundError:
        return
    try:
        if _read_lock_metadata(claimed).get("token") != stale_token:
            try:
                os.link(claimed, lock_path)
            except FileExistsError:
                pass
    finally:
        claimed.unlink(missing_ok=True)


@contextmanager
def write_lock(
    lock_path: Path,
    timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    stale_seconds: float = DEFAULT_LOCK_STALE_SECONDS,
    purpose: str = "write",
):
    """
    Exclusive lock file held only around a compare-and-rename.

    A lock whose owner died or that outlived `stale_seconds` is taken over.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    token = f"{os.getpid()}-{time.time_ns()}"
    start = time.monotonic()

    while True:
        try:
            fd = os.open(lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            meta = _read_lock_metadata(lock_path)
            if _lock_stale_reason(lock_path, stale_seconds, meta):
                _break_stale_lock(lock_path, meta.get("token"))
                continue
            if (time.monotonic() - start) >= timeout_seconds:
                owner = _read_lock_metadata(lock_path)
                raise TimeoutError(
                    f"lock_timeout: unable to acquire {lock_path.name}; owner={owner if owner else 'unknown'}"
                )
            time.sleep(0.005)
            continue
        payload = {
            "token": token,
            "pid": os.getpid(),
            "created_epoch": time.time(),
            "created_at": utc_now(),
            "purpose": purpose,
        }
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, sort_keys=True)
            f.write("\n")
        break

    try:
        yield
    finally:
        if _read_lock_metadata(lock_path).get("token") == token:
            try:
                lock_path.unlink()
            except FileNotFoundError:
                pass
