"""Read-only views over the active run, its archives and its findings."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .memory.schema import SEVERITY_ORDER, Finding, ItemStatus, PhaseStatus, Run
from .memory.store import STATE_FILE_NAME
from .phases import GATED_PHASES, PHASE_SEQUENCE, PhaseName, next_phase, normalize_phase
from .stacking import severity_breakdown


@dataclass(slots=True)
class PhaseLine:
    phase: PhaseName
    status: PhaseStatus
    progress: Optional[str] = None


@dataclass(slots=True)
class StatusSummary:
    """Compact description of where a run stands."""

    run_number: int
    tier: str
    current_phase: PhaseName
    current_status: PhaseStatus
    updated: str
    phases: List[PhaseLine] = field(default_factory=list)
    progress: Optional[str] = None
    next_step: Optional[str] = None
    stacked_on: Optional[int] = None
    severities: Dict[str, int] = field(default_factory=dict)

    def render(self) -> str:
        header = f"Audit #{self.run_number} ({self.tier})"
        if self.stacked_on is not None:
            header += f", stacked on #{self.stacked_on}"
        lines = [header]
        current = f"Phase: {self.current_phase.value} [{self.current_status.value}]"
        if self.progress:
            current += f" - {self.progress}"
        lines.append(current)
        lines.append(f"Updated: {self.updated}")
        for entry in self.phases:
            suffix = f" ({entry.progress})" if entry.progress else ""
            lines.append(f"  {entry.phase.value:<12} {entry.status.value}{suffix}")
        active = {level: count for level, count in self.severities.items() if count}
        if active:
            lines.append("Findings: " + ", ".join(f"{count} {level}" for level, count in active.items()))
        if self.next_step:
            lines.append(f"Next: {self.next_step}")
        return "\n".join(lines)


def _batch_progress(run: Run, phase: PhaseName) -> Optional[str]:
    state = run.phase(phase)
    if phase not in GATED_PHASES or state.batches_total == 0:
        return None
    return f"{state.batches_completed}/{state.batches_total} batches"


def current_phase(run: Run) -> PhaseName:
    """First in-progress phase, else the last complete one, else the first phase."""
    for phase in PHASE_SEQUENCE:
        if run.phase(phase).status == PhaseStatus.IN_PROGRESS:
            return phase
    completed = [phase for phase in PHASE_SEQUENCE if run.phase(phase).status == PhaseStatus.COMPLETE]
    if completed:
        return completed[-1]
    return PHASE_SEQUENCE[0]


def next_step(run: Run) -> Optional[str]:
    phase = current_phase(run)
    status = run.phase(phase).status
    if status == PhaseStatus.IN_PROGRESS:
        return f"resume {phase.value}"
    if status == PhaseStatus.PENDING:
        return f"run {phase.value}"
    upcoming = next_phase(phase)
    if upcoming is None:
        return None
    return f"run {upcoming.value}"


def summarize(run: Run) -> StatusSummary:
    phase = current_phase(run)
    return StatusSummary(
        run_number=run.run_number,
        tier=run.config.tier,
        current_phase=phase,
        current_status=run.phase(phase).status,
        updated=run.updated_at.strftime("%Y-%m-%d"),
        phases=[
            PhaseLine(phase=entry, status=run.phase(entry).status, progress=_batch_progress(run, entry))
            for entry in PHASE_SEQUENCE
        ],
        progress=_batch_progress(run, phase) if run.phase(phase).status == PhaseStatus.IN_PROGRESS else None,
        next_step=next_step(run),
        stacked_on=run.prior_run.run_number if run.prior_run else None,
        severities=severity_breakdown(run.findings),
    )


def count_history(history_dir: Path | str) -> int:
    """Number of archived runs under ``history_dir``."""
    root = Path(history_dir)
    if not root.is_dir():
        return 0
    return sum(1 for entry in root.iterdir() if entry.is_dir() and (entry / STATE_FILE_NAME).exists())


def query_findings(
    findings: Iterable[Finding],
    *,
    severity: Optional[str] = None,
    subsystem: Optional[str] = None,
    include_inactive: bool = False,
) -> List[Finding]:
    """Filter findings by severity and by a substring of their file or title.

    Results are ordered from most to least severe, then by id.
    """
    wanted_severity = severity.strip().lower() if severity else None
    needle = subsystem.strip().lower() if subsystem else None
    selected: List[Finding] = []
    for finding in findings:
        if not include_inactive and not finding.active:
            continue
        if wanted_severity and finding.severity.value != wanted_severity:
            continue
        if needle:
            haystack = f"{finding.target_file or ''} {finding.title}".lower()
            if needle not in haystack:
                continue
        selected.append(finding)
    rank = {level: index for index, level in enumerate(SEVERITY_ORDER)}
    selected.sort(key=lambda finding: (-rank[finding.severity], finding.id))
    return selected


# Named documents and the phase that writes them.
DOCUMENT_ALIASES: Dict[str, PhaseName] = {
    "architecture": PhaseName.SCAN,
    "strategies": PhaseName.STRATEGIZE,
}


def phase_artifacts(run: Run, audit_dir: Path | str, phase: PhaseName | str) -> List[Path]:
    """Output files written by succeeded items of ``phase``, each listed once."""
    phase_name = DOCUMENT_ALIASES.get(str(phase).strip().lower()) or normalize_phase(phase)
    root = Path(audit_dir)
    paths: List[Path] = []
    for item in run.phase(phase_name).items.values():
        path = root / item.output_path
        if item.status == ItemStatus.SUCCEEDED and path not in paths and path.is_file():
            paths.append(path)
    return paths


__all__ = [
    "DOCUMENT_ALIASES",
    "PhaseLine",
    "StatusSummary",
    "count_history",
    "current_phase",
    "next_step",
    "phase_artifacts",
    "query_findings",
    "summarize",
]
