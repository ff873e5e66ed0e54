"""Context budget estimation used to size batches and pick synthesis modes.

Exact input sizes are unknown until a worker reads its references, so the
estimator adds up a handful of independent guesses: a fixed template
overhead, a per-reference cost, and a fixed cross-reference overhead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .memory.schema import Finding, FindingStatus, WorkItem, WriteMode

LOGGER = logging.getLogger(__name__)

# Rough characters-per-token ratio used when a real file size is known.
BYTES_PER_TOKEN = 4

SizeLookup = Callable[[str], Optional[int]]


class ContextMode(str, Enum):
    """How reference material reaches a synthesis worker."""

    INLINE = "inline"
    PARTIAL_DISK = "partial_disk"
    DISK_HEAVY = "disk_heavy"


@dataclass(slots=True)
class BudgetThresholds:
    """Token limits behind batch sizing, splitting and synthesis modes."""

    template_tokens: int = 6_000
    per_reference_tokens: int = 2_500
    cross_reference_tokens: int = 4_000
    small_item_tokens: int = 40_000
    large_item_tokens: int = 80_000
    split_item_tokens: int = 120_000
    small_batch_size: int = 8
    medium_batch_size: int = 5
    large_batch_size: int = 3
    inline_limit_tokens: int = 80_000
    partial_disk_limit_tokens: int = 120_000

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "BudgetThresholds":
        thresholds = cls()
        for key, value in (data or {}).items():
            if hasattr(thresholds, key) and value is not None:
                setattr(thresholds, key, int(value))
        return thresholds


@dataclass(slots=True)
class TokenEstimate:
    template: int
    references: int
    cross_reference: int

    @property
    def total(self) -> int:
        return self.template + self.references + self.cross_reference


@dataclass(slots=True)
class SynthesisContext:
    """Material handed to a synthesis worker for the selected mode."""

    mode: ContextMode
    findings: List[Dict[str, Any]] = field(default_factory=list)
    embedded_references: List[str] = field(default_factory=list)
    reference_paths: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "findings": list(self.findings),
            "embedded_references": list(self.embedded_references),
            "reference_paths": list(self.reference_paths),
        }


def file_size_lookup(root: Path | str) -> SizeLookup:
    """Return a lookup that sizes references relative to ``root`` on disk."""
    base = Path(root)

    def _lookup(reference: str) -> Optional[int]:
        candidate = base / reference
        try:
            return candidate.stat().st_size if candidate.is_file() else None
        except OSError:
            return None

    return _lookup


class ContextBudgetEstimator:
    """Estimate worker input sizes and derive batch sizes and modes."""

    def __init__(
        self,
        thresholds: BudgetThresholds | None = None,
        *,
        size_lookup: SizeLookup | None = None,
    ) -> None:
        self.thresholds = thresholds or BudgetThresholds()
        self._size_lookup = size_lookup

    def _reference_tokens(self, reference: str) -> int:
        if self._size_lookup is not None:
            size = self._size_lookup(reference)
            if size is not None:
                return max(size // BYTES_PER_TOKEN, 1)
        return self.thresholds.per_reference_tokens

    def estimate(self, item: WorkItem) -> TokenEstimate:
        references = sum(self._reference_tokens(reference) for reference in item.scope)
        return TokenEstimate(
            template=self.thresholds.template_tokens,
            references=references,
            cross_reference=self.thresholds.cross_reference_tokens,
        )

    def batch_size_for(self, items: Sequence[WorkItem]) -> int:
        """Pick the batch size from the average per-item estimate."""
        limits = self.thresholds
        if not items:
            return limits.small_batch_size
        average = sum(self.estimate(item).total for item in items) / len(items)
        if average < limits.small_item_tokens:
            return limits.small_batch_size
        if average <= limits.large_item_tokens:
            return limits.medium_batch_size
        return limits.large_batch_size

    def split_oversized(self, items: Iterable[WorkItem]) -> List[WorkItem]:
        """Split items above the split limit into two halves sharing one output."""
        result: List[WorkItem] = []
        for item in items:
            estimate = self.estimate(item).total
            if estimate <= self.thresholds.split_item_tokens or len(item.scope) < 2:
                item.estimate = estimate
                result.append(item)
                continue
            middle = len(item.scope) // 2
            first = item.model_copy(
                update={
                    "id": f"{item.id}-a",
                    "scope": list(item.scope[:middle]),
                    "write_mode": WriteMode.CREATE,
                    "split_from": item.id,
                },
                deep=True,
            )
            second = item.model_copy(
                update={
                    "id": f"{item.id}-b",
                    "scope": list(item.scope[middle:]),
                    "write_mode": WriteMode.APPEND,
                    "split_from": item.id,
                },
                deep=True,
            )
            first.estimate = self.estimate(first).total
            second.estimate = self.estimate(second).total
            LOGGER.info(
                "Split %s (%d tokens) into %s and %s",
                item.id,
                estimate,
                first.id,
                second.id,
            )
            result.extend([first, second])
        return result

    def select_mode(self, total_estimate: int) -> ContextMode:
        limits = self.thresholds
        if total_estimate < limits.inline_limit_tokens:
            return ContextMode.INLINE
        if total_estimate <= limits.partial_disk_limit_tokens:
            return ContextMode.PARTIAL_DISK
        return ContextMode.DISK_HEAVY

    def estimate_synthesis(self, findings: Sequence[Finding], references: Sequence[str]) -> int:
        """Estimate the full input of a synthesis worker before trimming."""
        total = self.thresholds.template_tokens + self.thresholds.cross_reference_tokens
        total += sum(self._reference_tokens(reference) for reference in references)
        for finding in findings:
            text = f"{finding.title}\n{finding.summary}"
            total += max(len(text) // BYTES_PER_TOKEN, 1)
            if finding.detail_path:
                total += self._reference_tokens(finding.detail_path)
        return total

    def build_synthesis_context(
        self,
        findings: Sequence[Finding],
        references: Sequence[str],
        mode: ContextMode | None = None,
        *,
        read_reference: Callable[[str], str] | None = None,
    ) -> SynthesisContext:
        """Shape findings and reference material for ``mode``."""
        if mode is None:
            mode = self.select_mode(self.estimate_synthesis(findings, references))
        context = SynthesisContext(mode=mode)
        for finding in findings:
            context.findings.append(_finding_payload(finding, mode))
        if mode == ContextMode.INLINE and read_reference is not None:
            context.embedded_references = [read_reference(reference) for reference in references]
        else:
            context.reference_paths = list(references)
        return context


def _first_line(text: str) -> str:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped:
            return stripped
    return ""


def _first_paragraph(text: str) -> str:
    paragraph = text.strip().split("\n\n", 1)[0]
    return " ".join(part.strip() for part in paragraph.splitlines() if part.strip())


def _finding_payload(finding: Finding, mode: ContextMode) -> Dict[str, Any]:
    if finding.status == FindingStatus.NOT_VULNERABLE:
        return {
            "id": finding.id,
            "status": finding.status.value,
            "summary": _first_line(finding.summary or finding.title),
        }
    payload = finding.model_dump(mode="json", exclude_none=True)
    if mode == ContextMode.DISK_HEAVY:
        payload = {
            "id": finding.id,
            "title": finding.title,
            "status": finding.status.value,
            "severity": finding.severity.value,
            "summary": _first_paragraph(finding.summary),
        }
        if finding.detail_path:
            payload["detail_path"] = finding.detail_path
    return payload


__all__ = [
    "BudgetThresholds",
    "ContextBudgetEstimator",
    "ContextMode",
    "SynthesisContext",
    "TokenEstimate",
    "file_size_lookup",
]
