from __future__ import annotations

import json
import os
import time
from pathlib import Path

import pytest

from perf_investigator.fsutil import _break_stale_lock, append_text, atomic_write_text, write_lock


def write_lock_file(path: Path, pid: int, created_epoch: float) -> None:
    path.write_text(json.dumps({"token": "other", "pid": pid, "created_epoch": created_epoch}), encoding="utf-8")


def test_atomic_write_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "state" / "doc.json"
    atomic_write_text(target, "one\n")
    atomic_write_text(target, "two\n")
    assert target.read_text(encoding="utf-8") == "two\n"
    assert [p.name for p in target.parent.iterdir()] == ["doc.json"]


def test_append_text_accumulates(tmp_path: Path) -> None:
    log = tmp_path / "log.md"
    append_text(log, "a\n")
    append_text(log, "b\n")
    assert log.read_text(encoding="utf-8") == "a\nb\n"


def test_lock_is_released(tmp_path: Path) -> None:
    lock = tmp_path / ".lock"
    with write_lock(lock):
        meta = json.loads(lock.read_text(encoding="utf-8"))
        assert meta["pid"] == os.getpid()
    assert not lock.exists()


def test_live_lock_times_out(tmp_path: Path) -> None:
    lock = tmp_path / ".lock"
    write_lock_file(lock, os.getpid(), time.time())
    with pytest.raises(TimeoutError, match="lock_timeout"):
        with write_lock(lock, timeout_seconds=0.05):
            pass
    assert lock.exists()


def test_stale_lock_is_taken_over(tmp_path: Path) -> None:
    lock = tmp_path / ".lock"
    write_lock_file(lock, os.getpid(), time.time() - 3600)
    with write_lock(lock, timeout_seconds=0.5, stale_seconds=30):
        assert json.loads(lock.read_text(encoding="utf-8"))["token"] != "other"
    assert not lock.exists()


def test_stale_break_leaves_a_replaced_lock_alone(tmp_path: Path) -> None:
    lock = tmp_path / ".lock"
    # Another taker already swapped the stale lock for its own fresh one.
    lock.write_text(json.dumps({"token": "fresh", "pid": os.getpid(), "created_epoch": time.time()}), encoding="utf-8")
    _break_stale_lock(lock, "old")
    assert json.loads(lock.read_text(encoding="utf-8"))["token"] == "fresh"
    assert [p.name for p in tmp_path.iterdir()] == [".lock"]

    _break_stale_lock(lock, "fresh")
    assert list(tmp_path.iterdir()) == []
