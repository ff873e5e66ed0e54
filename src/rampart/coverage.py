"""Coverage verification of processed work items against the declared scope.

The declared scope has three dimensions: code units (files, some flagged as
externally reachable), catalog patterns and checklist entries. After a phase
finishes, every dimension is compared with what the succeeded work items
actually covered. Gaps are prioritised, and only the critical and high ones
turn into follow-up work.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence, Set

from .catalog import CatalogEntry, IndexedScope
from .memory.schema import CoverageGap, CoverageSummary, GapPriority, ItemStatus, WorkItem
from .phases import PhaseName, normalize_phase

LOGGER = logging.getLogger(__name__)

ACTIONABLE_PRIORITIES = frozenset({GapPriority.CRITICAL, GapPriority.HIGH})
_PRIORITY_ORDER = {
    GapPriority.CRITICAL: 0,
    GapPriority.HIGH: 1,
    GapPriority.MEDIUM: 2,
    GapPriority.LOW: 3,
}
_SLUG_PATTERN = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(slots=True)
class ScopeUnit:
    id: str
    path: str
    externally_reachable: bool = False


@dataclass(slots=True)
class PatternRef:
    id: str
    severity: str = "medium"
    files: List[str] = field(default_factory=list)


@dataclass(slots=True)
class DeclaredScope:
    """Everything a phase is expected to cover."""

    units: List[ScopeUnit] = field(default_factory=list)
    patterns: List[PatternRef] = field(default_factory=list)
    checklist: List[str] = field(default_factory=list)

    @classmethod
    def from_index(cls, scope: IndexedScope, catalog: Sequence[CatalogEntry] = ()) -> "DeclaredScope":
        """Declare one unit per indexed file plus the catalog entries that apply."""
        units = [
            ScopeUnit(id=path, path=path, externally_reachable=scope.is_entry_point(path))
            for path in scope.files
        ]
        patterns: List[PatternRef] = []
        checklist: List[str] = []
        for entry in catalog:
            matched = entry.matching_files(scope)
            if not matched:
                continue
            patterns.append(PatternRef(id=entry.id, severity=entry.severity, files=matched))
            for check in entry.checklist:
                if check not in checklist:
                    checklist.append(check)
        return cls(units=units, patterns=patterns, checklist=checklist)


@dataclass(slots=True)
class CoverageReport:
    scope_ratio: float = 1.0
    pattern_ratio: float = 1.0
    checklist_ratio: float = 1.0
    gaps: List[CoverageGap] = field(default_factory=list)
    pattern_files: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def actionable(self) -> List[CoverageGap]:
        return [gap for gap in self.gaps if gap.priority in ACTIONABLE_PRIORITIES]

    @property
    def complete(self) -> bool:
        return not self.gaps

    def to_summary(self) -> CoverageSummary:
        return CoverageSummary(
            scope_ratio=self.scope_ratio,
            pattern_ratio=self.pattern_ratio,
            checklist_ratio=self.checklist_ratio,
            gaps=[gap.model_copy() for gap in self.gaps],
        )


def _ratio(covered: int, total: int) -> float:
    if total == 0:
        return 1.0
    return round(covered / total, 4)


def _severity_priority(severity: str) -> GapPriority:
    if severity.lower() in {"critical", "high"}:
        return GapPriority.HIGH
    return GapPriority.MEDIUM


def verify_coverage(declared: DeclaredScope, processed: Iterable[WorkItem]) -> CoverageReport:
    """Compare ``declared`` with the scope of the succeeded items in ``processed``."""
    covered_paths: Set[str] = set()
    covered_patterns: Set[str] = set()
    covered_checks: Set[str] = set()
    for item in processed:
        if item.status != ItemStatus.SUCCEEDED:
            continue
        covered_paths.update(item.scope)
        covered_patterns.update(item.catalog_ids)
        covered_checks.update(item.checklist_ids)

    gaps: List[CoverageGap] = []
    units_covered = 0
    for unit in declared.units:
        if unit.path in covered_paths:
            units_covered += 1
            continue
        if unit.externally_reachable:
            gaps.append(
                CoverageGap(
                    kind="unit",
                    ref=unit.path,
                    priority=GapPriority.CRITICAL,
                    reason="externally reachable unit was not analysed",
                )
            )
        else:
            gaps.append(CoverageGap(kind="unit", ref=unit.path, priority=GapPriority.MEDIUM, reason="unit was not analysed"))

    patterns_covered = 0
    for pattern in declared.patterns:
        if pattern.id in covered_patterns:
            patterns_covered += 1
            continue
        gaps.append(
            CoverageGap(
                kind="pattern",
                ref=pattern.id,
                priority=_severity_priority(pattern.severity),
                reason=f"{pattern.severity} pattern was not checked",
            )
        )

    checks_covered = 0
    for check in declared.checklist:
        if check in covered_checks:
            checks_covered += 1
            continue
        gaps.append(CoverageGap(kind="checklist", ref=check, priority=GapPriority.LOW, reason="checklist entry not addressed"))

    gaps.sort(key=lambda gap: (_PRIORITY_ORDER[gap.priority], gap.kind, gap.ref))
    report = CoverageReport(
        scope_ratio=_ratio(units_covered, len(declared.units)),
        pattern_ratio=_ratio(patterns_covered, len(declared.patterns)),
        checklist_ratio=_ratio(checks_covered, len(declared.checklist)),
        gaps=gaps,
        pattern_files={pattern.id: list(pattern.files) for pattern in declared.patterns},
    )
    LOGGER.info(
        "Coverage: units %.0f%%, patterns %.0f%%, checklist %.0f%% (%d gap(s), %d actionable)",
        report.scope_ratio * 100,
        report.pattern_ratio * 100,
        report.checklist_ratio * 100,
        len(gaps),
        len(report.actionable),
    )
    return report


def gap_item_id(gap: CoverageGap, *, max_length: int = 60) -> str:
    slug = _SLUG_PATTERN.sub("-", gap.ref).strip("-") or "gap"
    if len(slug) > max_length:
        digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
        slug = f"{slug[: max_length - 9].rstrip('-')}-{digest}"
    return f"gap-{gap.kind}-{slug}"


def follow_up_items(
    report: CoverageReport,
    *,
    phase: PhaseName | str,
    limit: int,
    worker_class: str = "default",
    max_scope: int = 40,
) -> List[WorkItem]:
    """Turn critical and high gaps into synthetic items, at most ``limit`` of them.

    Gaps that receive an item are marked ``dispatched`` in the report.
    """
    phase_name = normalize_phase(phase)
    items: List[WorkItem] = []
    for gap in report.actionable:
        if len(items) >= max(limit, 0):
            break
        item_id = gap_item_id(gap)
        if gap.kind == "pattern":
            scope = report.pattern_files.get(gap.ref, [])[:max_scope]
            catalog_ids = [gap.ref]
        else:
            scope = [gap.ref]
            catalog_ids = []
        items.append(
            WorkItem(
                id=item_id,
                phase=phase_name,
                worker_class=worker_class,
                scope=scope,
                output_path=f"{phase_name.value}/coverage/{item_id}.md",
                catalog_ids=catalog_ids,
                synthetic=True,
                metadata={"gap_kind": gap.kind, "gap_priority": gap.priority.value, "reason": gap.reason},
            )
        )
        gap.dispatched = True
    return items


__all__ = [
    "ACTIONABLE_PRIORITIES",
    "CoverageReport",
    "DeclaredScope",
    "PatternRef",
    "ScopeUnit",
    "follow_up_items",
    "gap_item_id",
    "verify_coverage",
]
