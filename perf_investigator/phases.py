from __future__ import annotations

from enum import Enum

from .errors import PhaseError


class Phase(str, Enum):
    SETUP = "setup"
    BASELINE = "baseline"
    BREAKING_POINT = "breaking-point"
    CONSTRAINTS = "constraints"
    HYPOTHESES = "hypotheses"
    CODE_PATHS = "code-paths"
    PROFILING = "profiling"
    OPTIMIZATION = "optimization"
    DECISION = "decision"
    CONSOLIDATION = "consolidation"
    COMPLETE = "complete"

    @property
    def index(self) -> int:
        return PHASE_ORDER.index(self)

    @property
    def title(self) -> str:
        return self.value.replace("-", " ").title()

    def next(self) -> Phase:
        if self is Phase.COMPLETE:
            raise PhaseError("investigation is already complete")
        return PHASE_ORDER[self.index + 1]


PHASE_ORDER: list[Phase] = list(Phase)
PHASE_NAMES: list[str] = [p.value for p in PHASE_ORDER]
INITIAL_PHASE = Phase.SETUP
TERMINAL_PHASE = Phase.COMPLETE


def parse_phase(raw: str | Phase) -> Phase:
    if isinstance(raw, Phase):
        return raw
    try:
        return Phase(str(raw).strip().lower())
    except ValueError:
        raise PhaseError(f"invalid perf phase: {raw!r} (expected one of: {', '.join(PHASE_NAMES)})") from None
