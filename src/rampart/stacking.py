"""Delta computation and finding reclassification for stacked runs.

A stacked run reuses an archived run as its baseline. ``compute_delta``
classifies every file of the prior index and the current tree, and
``reclassify_findings`` maps the prior run's findings through that delta so
later phases know which ones need a full re-check, a light verification, or
none at all because the file is gone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from .memory.schema import (
    SEVERITY_ORDER,
    ChangeKind,
    ChangeMagnitude,
    DeltaRecord,
    DeltaSummary,
    EvolutionTag,
    Finding,
    FindingStatus,
    RecheckTag,
    Severity,
)

LOGGER = logging.getLogger(__name__)

MAJOR_CHANGE_LINES = 10
MASSIVE_REWRITE_RATIO = 0.70

_OPEN_STATUSES = {FindingStatus.CONFIRMED, FindingStatus.POTENTIAL, FindingStatus.NEEDS_REVIEW}
_CLOSED_TAGS = {EvolutionTag.RESOLVED, EvolutionTag.RESOLVED_BY_REMOVAL}


@dataclass(slots=True)
class FileChange:
    """Single entry reported by a change-list provider."""

    path: str
    kind: ChangeKind
    lines_changed: int = 0


class ChangeListProvider(Protocol):
    """Anything that can list file changes between two revisions."""

    def changed_files(self, base: str | None, head: str | None = None) -> List[FileChange]:
        ...


@dataclass(slots=True)
class DeltaSet:
    """Per-file classification plus the massive-rewrite verdict."""

    records: Dict[str, DeltaRecord] = field(default_factory=dict)
    prior_total: int = 0
    massive_rewrite: bool = False

    def kind_of(self, path: str | None) -> Optional[ChangeKind]:
        if path is None:
            return None
        record = self.records.get(_normalise_path(path))
        return record.kind if record else None

    def counts(self) -> Dict[str, int]:
        totals = {kind.value: 0 for kind in ChangeKind}
        for record in self.records.values():
            totals[record.kind.value] += 1
        return totals

    def paths(self, kind: ChangeKind) -> List[str]:
        return sorted(path for path, record in self.records.items() if record.kind == kind)

    def to_summary(self, *, base_revision: str | None = None, head_revision: str | None = None) -> DeltaSummary:
        return DeltaSummary(
            base_revision=base_revision,
            head_revision=head_revision,
            prior_total=self.prior_total,
            counts=self.counts(),
            massive_rewrite=self.massive_rewrite,
            records=[self.records[path] for path in sorted(self.records)],
        )

    @classmethod
    def from_summary(cls, summary: DeltaSummary) -> "DeltaSet":
        return cls(
            records={record.path: record for record in summary.records},
            prior_total=summary.prior_total,
            massive_rewrite=summary.massive_rewrite,
        )


def _normalise_path(path: str) -> str:
    cleaned = str(path).replace("\\", "/").strip()
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned


def is_massive_rewrite(
    modified: int,
    added: int,
    prior_total: int,
    *,
    ratio: float = MASSIVE_REWRITE_RATIO,
) -> bool:
    """Return whether ``(modified + added) / prior_total`` reaches ``ratio``."""
    if prior_total <= 0:
        return added > 0
    return (modified + added) / prior_total >= ratio


def compute_delta(
    prior_index: Iterable[str],
    current_files: Iterable[str],
    changes: Iterable[FileChange] | Mapping[str, FileChange] = (),
    *,
    major_threshold: int = MAJOR_CHANGE_LINES,
    massive_ratio: float = MASSIVE_REWRITE_RATIO,
) -> DeltaSet:
    """Classify every path in the union of ``prior_index`` and ``current_files``."""
    prior = {_normalise_path(path) for path in prior_index if path}
    current = {_normalise_path(path) for path in current_files if path}
    if isinstance(changes, Mapping):
        change_entries: Iterable[FileChange] = changes.values()
    else:
        change_entries = changes
    changed: Dict[str, FileChange] = {}
    for change in change_entries:
        changed[_normalise_path(change.path)] = change

    records: Dict[str, DeltaRecord] = {}
    for path in sorted(prior):
        if path not in current:
            records[path] = DeltaRecord(path=path, kind=ChangeKind.DELETED)
            continue
        change = changed.get(path)
        if change is None:
            records[path] = DeltaRecord(path=path, kind=ChangeKind.UNCHANGED)
            continue
        lines = max(int(change.lines_changed or 0), 0)
        magnitude = ChangeMagnitude.MAJOR if lines >= major_threshold else ChangeMagnitude.MINOR
        records[path] = DeltaRecord(
            path=path,
            kind=ChangeKind.MODIFIED,
            magnitude=magnitude,
            lines_changed=lines,
        )

    for path in sorted(current - prior):
        change = changed.get(path)
        records[path] = DeltaRecord(
            path=path,
            kind=ChangeKind.ADDED,
            lines_changed=max(int(change.lines_changed or 0), 0) if change else 0,
        )

    delta = DeltaSet(records=records, prior_total=len(prior))
    counts = delta.counts()
    delta.massive_rewrite = is_massive_rewrite(
        counts[ChangeKind.MODIFIED.value],
        counts[ChangeKind.ADDED.value],
        len(prior),
        ratio=massive_ratio,
    )
    LOGGER.info(
        "Delta: %d added, %d modified, %d deleted, %d unchanged (massive rewrite: %s)",
        counts[ChangeKind.ADDED.value],
        counts[ChangeKind.MODIFIED.value],
        counts[ChangeKind.DELETED.value],
        counts[ChangeKind.UNCHANGED.value],
        delta.massive_rewrite,
    )
    return delta


def escalate_severity(severity: Severity | str) -> Severity:
    """Return the next severity level, capped at ``critical``."""
    current = Severity(severity)
    index = SEVERITY_ORDER.index(current)
    return SEVERITY_ORDER[min(index + 1, len(SEVERITY_ORDER) - 1)]


def reclassify_findings(
    prior_findings: Iterable[Finding],
    delta: DeltaSet,
    *,
    massive_rewrite: bool | None = None,
) -> List[Finding]:
    """Tag prior findings with the re-examination their file's delta requires.

    The function never mutates its inputs and returns the same tags when fed
    its own output.
    """
    massive = delta.massive_rewrite if massive_rewrite is None else massive_rewrite
    results: List[Finding] = []
    for finding in prior_findings:
        update: Dict[str, object] = {}
        if finding.prior_severity is None:
            update["prior_severity"] = finding.severity
        kind = delta.kind_of(finding.target_file)

        if kind == ChangeKind.DELETED:
            update.update(
                recheck=RecheckTag.RESOLVED_BY_REMOVAL,
                evolution=EvolutionTag.RESOLVED_BY_REMOVAL,
                active=False,
            )
        elif kind in (ChangeKind.MODIFIED, ChangeKind.ADDED):
            update["recheck"] = RecheckTag.RECHECK
        elif kind == ChangeKind.UNCHANGED:
            update["recheck"] = RecheckTag.RECHECK if massive else RecheckTag.VERIFY

        if massive and kind != ChangeKind.DELETED and finding.status == FindingStatus.NOT_VULNERABLE:
            # Dismissals are not carried across a massive rewrite.
            update.update(status=FindingStatus.NEEDS_REVIEW, recheck=RecheckTag.RECHECK)

        results.append(finding.model_copy(update=update, deep=True))
    results.sort(key=lambda item: item.id)
    return results


def tag_evolution(
    prior_findings: Iterable[Finding],
    current_findings: Iterable[Finding],
    *,
    delta: DeltaSet | None = None,
    history: Mapping[str, Finding] | None = None,
) -> List[Finding]:
    """Assign evolution tags to the current run's findings.

    ``history`` is the ledger's latest-record projection; it lets a finding
    that was resolved two runs ago be recognised as a regression.
    """
    prior_by_id = {finding.id: finding for finding in prior_findings}
    known = dict(history or {})
    for finding_id, finding in prior_by_id.items():
        known.setdefault(finding_id, finding)

    tagged: List[Finding] = []
    seen: set[str] = set()
    for finding in current_findings:
        seen.add(finding.id)
        previous = known.get(finding.id)
        if previous is None:
            tagged.append(finding.model_copy(update={"evolution": EvolutionTag.NEW}, deep=True))
            continue
        was_closed = previous.evolution in _CLOSED_TAGS or not previous.active
        if finding.status not in _OPEN_STATUSES:
            tag = EvolutionTag.RESOLVED if not was_closed and previous.status in _OPEN_STATUSES else EvolutionTag.RECURRENT
            tagged.append(
                finding.model_copy(
                    update={"evolution": tag, "prior_severity": previous.severity},
                    deep=True,
                )
            )
            continue
        if was_closed:
            tagged.append(
                finding.model_copy(
                    update={
                        "evolution": EvolutionTag.REGRESSION,
                        "prior_severity": previous.severity,
                        "severity": escalate_severity(previous.severity),
                        "active": True,
                    },
                    deep=True,
                )
            )
            continue
        tagged.append(
            finding.model_copy(
                update={"evolution": EvolutionTag.RECURRENT, "prior_severity": previous.severity},
                deep=True,
            )
        )

    for finding_id, previous in sorted(prior_by_id.items()):
        if finding_id in seen:
            continue
        if previous.status not in _OPEN_STATUSES or previous.evolution in _CLOSED_TAGS or not previous.active:
            continue
        removed = delta is not None and delta.kind_of(previous.target_file) == ChangeKind.DELETED
        tag = EvolutionTag.RESOLVED_BY_REMOVAL if removed else EvolutionTag.RESOLVED
        tagged.append(previous.model_copy(update={"evolution": tag, "active": False}, deep=True))

    return tagged


def severity_breakdown(findings: Sequence[Finding]) -> Dict[str, int]:
    totals = {level.value: 0 for level in SEVERITY_ORDER}
    for finding in findings:
        if finding.active:
            totals[finding.severity.value] += 1
    return totals


__all__ = [
    "ChangeListProvider",
    "DeltaSet",
    "FileChange",
    "MAJOR_CHANGE_LINES",
    "MASSIVE_REWRITE_RATIO",
    "compute_delta",
    "escalate_severity",
    "is_massive_rewrite",
    "reclassify_findings",
    "severity_breakdown",
    "tag_evolution",
]
