from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest

from perf_investigator import constraints
from perf_investigator.constraints import parse_cpu_limit, parse_memory_limit, run_constrained
from perf_investigator.errors import PhaseError

linux_only = pytest.mark.skipif(not sys.platform.startswith("linux"), reason="needs sched_setaffinity")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("512m", 512 * 1024**2),
        ("2g", 2 * 1024**3),
        ("2GB", 2 * 1024**3),
        ("1024k", 1024 * 1024),
        ("1048576", 1048576),
        (4096, 4096),
        (None, None),
        ("", None),
    ],
)
def test_parse_memory_limit(raw: Any, expected: int | None) -> None:
    assert parse_memory_limit(raw) == expected


@pytest.mark.parametrize("raw", ["lots", "12q", "0m", "-1g"])
def test_parse_memory_limit_rejects(raw: str) -> None:
    with pytest.raises(PhaseError):
        parse_memory_limit(raw)


def test_parse_cpu_limit() -> None:
    assert parse_cpu_limit("1.5") == 1.5
    assert parse_cpu_limit(None) is None
    for bad in ("0", "-2", "many", "inf"):
        with pytest.raises(PhaseError):
            parse_cpu_limit(bad)


def test_requires_a_limit_and_a_baseline() -> None:
    with pytest.raises(PhaseError, match="cpu and/or memory"):
        run_constrained("python bench.py", baseline_metrics={"latency_ms": 1})
    with pytest.raises(PhaseError, match="recorded baseline"):
        run_constrained("python bench.py", cpu=1, baseline_metrics={})


def test_limits_are_passed_to_the_series(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, Any] = {}

    def fake_series(command: str, **options: Any) -> dict[str, Any]:
        seen.update(options)
        return {"metrics": {"latency_ms": 120}, "samples": [], "runs": 1, "aggregate": "median"}

    monkeypatch.setattr(constraints, "run_benchmark_series", fake_series)
    monkeypatch.setattr(constraints, "build_limiter", lambda cpu, mem: ("limiter", cpu, mem))

    result = run_constrained("python bench.py", memory="512m", baseline_metrics={"latency_ms": 100})

    assert seen["preexec_fn"] == ("limiter", None, 512 * 1024**2)
    assert result["constraints"] == {"cpu": None, "memory": "512m", "memoryBytes": 512 * 1024**2}
    assert result["delta"]["metrics"] == {"latency_ms": 20}
    assert result["delta"]["percent"] == {"latency_ms": 20.0}


@linux_only
def test_constrained_run_against_real_benchmark(project_dir: Path, bench_command: str) -> None:
    result = run_constrained(
        bench_command,
        cpu="1",
        memory="4g",
        baseline_metrics={"latency_ms": 100.0, "throughput": 100.0},
        benchmark_options={"allow_short": True, "cwd": str(project_dir)},
    )
    assert result["constraints"]["cpu"] == "1"
    assert result["metrics"]["latency_ms"] == 100.0
    assert result["delta"]["metrics"] == {"latency_ms": 0.0, "throughput": 0.0}
