"""Typed records persisted in the run state document."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..phases import PHASE_SEQUENCE, PhaseName, normalize_phase


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class PhaseStatus(str, Enum):
    """Lifecycle states for a phase."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class ItemStatus(str, Enum):
    """Lifecycle states for a single work item."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NEEDS_RETRY = "needs_retry"


TERMINAL_ITEM_STATUSES = frozenset({ItemStatus.SUCCEEDED, ItemStatus.FAILED})


class WriteMode(str, Enum):
    """How a worker treats its output location."""

    CREATE = "create"
    APPEND = "append"


class BatchStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"


class ChangeKind(str, Enum):
    """Per-file classification between two runs."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    UNCHANGED = "unchanged"


class ChangeMagnitude(str, Enum):
    MINOR = "minor"
    MAJOR = "major"


class FindingStatus(str, Enum):
    """Verdict recorded by the worker that produced a finding."""

    CONFIRMED = "confirmed"
    POTENTIAL = "potential"
    NOT_VULNERABLE = "not_vulnerable"
    NEEDS_REVIEW = "needs_review"


class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ORDER = [
    Severity.INFO,
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]


class EvolutionTag(str, Enum):
    """How a finding relates to the previous run it was stacked on."""

    NEW = "new"
    RECURRENT = "recurrent"
    REGRESSION = "regression"
    RESOLVED = "resolved"
    RESOLVED_BY_REMOVAL = "resolved_by_removal"


class RecheckTag(str, Enum):
    """Re-examination required for a carried-forward finding."""

    RECHECK = "RECHECK"
    VERIFY = "VERIFY"
    RESOLVED_BY_REMOVAL = "RESOLVED_BY_REMOVAL"


class GapPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RunConfig(RecordModel):
    """Settings captured when the run started."""

    tier: str = "standard"
    max_concurrency: Optional[int] = None
    worker_classes: Dict[str, str] = Field(default_factory=dict)


class PriorRunRef(RecordModel):
    """Pointer to the archived run a stacked run builds on."""

    run_number: int
    archive_dir: str
    revision: Optional[str] = None


class WorkItem(RecordModel):
    """One worker invocation within a phase."""

    id: str
    phase: PhaseName
    worker_class: str = "default"
    scope: List[str] = Field(default_factory=list)
    output_path: str
    status: ItemStatus = ItemStatus.QUEUED
    retry_count: int = 0
    write_mode: WriteMode = WriteMode.CREATE
    split_from: Optional[str] = None
    catalog_ids: List[str] = Field(default_factory=list)
    checklist_ids: List[str] = Field(default_factory=list)
    synthetic: bool = False
    estimate: int = 0
    score: Optional[float] = None
    feedback: Optional[str] = None
    error: Optional[str] = None
    quality_gap: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ITEM_STATUSES


class Batch(RecordModel):
    """Bounded group of work items dispatched together."""

    index: int
    item_ids: List[str] = Field(default_factory=list)
    status: BatchStatus = BatchStatus.PENDING


class QualityGap(RecordModel):
    """Output accepted below the quality threshold."""

    item_id: str
    score: float
    reason: str
    retried: bool = False


class CoverageGap(RecordModel):
    """Declared scope that no work item touched."""

    kind: str
    ref: str
    priority: GapPriority
    reason: str = ""
    dispatched: bool = False


class CoverageSummary(RecordModel):
    scope_ratio: float = 1.0
    pattern_ratio: float = 1.0
    checklist_ratio: float = 1.0
    gaps: List[CoverageGap] = Field(default_factory=list)


class PhaseState(RecordModel):
    """Progress record for a single phase."""

    status: PhaseStatus = PhaseStatus.PENDING
    items_total: int = 0
    items_completed: int = 0
    batches_total: int = 0
    batches_completed: int = 0
    retries_used: int = 0
    items: Dict[str, WorkItem] = Field(default_factory=dict)
    batches: List[Batch] = Field(default_factory=list)
    quality_gaps: List[QualityGap] = Field(default_factory=list)
    coverage: Optional[CoverageSummary] = None
    coverage_checked: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def refresh_counters(self) -> None:
        """Recompute the item and batch counters from the recorded items."""
        self.items_total = len(self.items)
        self.items_completed = sum(1 for item in self.items.values() if item.is_terminal)
        self.batches_total = len(self.batches)
        self.batches_completed = sum(1 for batch in self.batches if batch.status == BatchStatus.DONE)


class DeltaRecord(RecordModel):
    """Classification of one file between a prior run and the current tree."""

    path: str
    kind: ChangeKind
    magnitude: Optional[ChangeMagnitude] = None
    lines_changed: int = 0


class DeltaSummary(RecordModel):
    base_revision: Optional[str] = None
    head_revision: Optional[str] = None
    prior_total: int = 0
    counts: Dict[str, int] = Field(default_factory=dict)
    massive_rewrite: bool = False
    records: List[DeltaRecord] = Field(default_factory=list)


class Finding(RecordModel):
    """Worker-reported finding whose identity persists across runs."""

    id: str
    title: str = ""
    status: FindingStatus = FindingStatus.POTENTIAL
    severity: Severity = Severity.MEDIUM
    prior_severity: Optional[Severity] = None
    target_file: Optional[str] = None
    summary: str = ""
    detail_path: Optional[str] = None
    evolution: Optional[EvolutionTag] = None
    recheck: Optional[RecheckTag] = None
    active: bool = True
    run_number: Optional[int] = None


def _seed_phases() -> Dict[str, PhaseState]:
    return {phase.value: PhaseState() for phase in PHASE_SEQUENCE}


class Run(RecordModel):
    """One execution of the full pipeline."""

    skill: str = "rampart"
    run_number: int = 1
    revision: Optional[str] = None
    config: RunConfig = Field(default_factory=RunConfig)
    prior_run: Optional[PriorRunRef] = None
    phases: Dict[str, PhaseState] = Field(default_factory=_seed_phases)
    file_index: List[str] = Field(default_factory=list)
    findings: List[Finding] = Field(default_factory=list)
    carried_findings: List[Finding] = Field(default_factory=list)
    delta: Optional[DeltaSummary] = None
    archived: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def phase(self, name: PhaseName | str) -> PhaseState:
        key = normalize_phase(name).value
        state = self.phases.get(key)
        if state is None:
            state = PhaseState()
            self.phases[key] = state
        return state

    @property
    def active_findings(self) -> List[Finding]:
        return [finding for finding in self.findings if finding.active]


__all__ = [
    "Batch",
    "BatchStatus",
    "ChangeKind",
    "ChangeMagnitude",
    "CoverageGap",
    "CoverageSummary",
    "DeltaRecord",
    "DeltaSummary",
    "EvolutionTag",
    "Finding",
    "FindingStatus",
    "GapPriority",
    "ItemStatus",
    "PhaseState",
    "PhaseStatus",
    "PriorRunRef",
    "QualityGap",
    "RecheckTag",
    "RecordModel",
    "Run",
    "RunConfig",
    "SEVERITY_ORDER",
    "Severity",
    "TERMINAL_ITEM_STATUSES",
    "WorkItem",
    "WriteMode",
    "utc_now",
]
