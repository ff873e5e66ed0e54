"""Shared phase enumerations and execution ordering."""

from __future__ import annotations

from enum import Enum


class PhaseName(str, Enum):
    """Enumeration of the audit pipeline phases."""

    SCAN = "scan"
    ANALYZE = "analyze"
    STRATEGIZE = "strategize"
    INVESTIGATE = "investigate"
    REPORT = "report"
    VERIFY = "verify"


PHASE_SEQUENCE = [
    PhaseName.SCAN,
    PhaseName.ANALYZE,
    PhaseName.STRATEGIZE,
    PhaseName.INVESTIGATE,
    PhaseName.REPORT,
    PhaseName.VERIFY,
]

# Fan-out phases whose worker outputs pass through the quality gate.
GATED_PHASES = frozenset({PhaseName.ANALYZE, PhaseName.INVESTIGATE})

# Phases that consume earlier outputs and pick a context mode before dispatch.
SYNTHESIS_PHASES = frozenset({PhaseName.STRATEGIZE, PhaseName.REPORT})

# Phases whose workers report findings.
FINDING_PHASES = frozenset({PhaseName.INVESTIGATE, PhaseName.VERIFY})


def normalize_phase(phase: PhaseName | str) -> PhaseName:
    """Resolve ``phase`` into a concrete ``PhaseName`` enum member."""
    if isinstance(phase, PhaseName):
        return phase
    try:
        return PhaseName(str(phase).strip().lower())
    except ValueError as error:
        valid = ", ".join(item.value for item in PhaseName)
        raise KeyError(f"Unknown phase '{phase}'. Expected one of: {valid}") from error


def phase_index(phase: PhaseName | str) -> int:
    return PHASE_SEQUENCE.index(normalize_phase(phase))


def previous_phase(phase: PhaseName | str) -> PhaseName | None:
    index = phase_index(phase)
    if index == 0:
        return None
    return PHASE_SEQUENCE[index - 1]


def next_phase(phase: PhaseName | str) -> PhaseName | None:
    index = phase_index(phase)
    if index + 1 >= len(PHASE_SEQUENCE):
        return None
    return PHASE_SEQUENCE[index + 1]


__all__ = [
    "FINDING_PHASES",
    "GATED_PHASES",
    "PHASE_SEQUENCE",
    "PhaseName",
    "SYNTHESIS_PHASES",
    "next_phase",
    "normalize_phase",
    "phase_index",
    "previous_phase",
]
