from __future__ import annotations


class PerfError(RuntimeError):
    """Base class for investigation engine failures."""


class PathSafetyError(PerfError, ValueError):
    """A caller-supplied identifier or root would escape its base directory."""


class InvestigationStateError(PerfError, ValueError):
    """Schema or invariant violation; nothing was written."""


class PhaseError(InvestigationStateError):
    """Unknown or terminal phase, or a phase handler is missing inputs."""


class VersionConflictError(PerfError):
    """Another writer persisted a newer version first."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"version_conflict: expected _version={expected}, found {actual}")
        self.expected = expected
        self.actual = actual


class UpdateFailedError(PerfError):
    """Optimistic update retries exhausted; retry the whole operation."""


class AuditLogError(PerfError, ValueError):
    pass


class MetricsError(PerfError, ValueError):
    pass


class BenchmarkError(PerfError):
    """Benchmark subprocess failed or produced no usable metrics."""
