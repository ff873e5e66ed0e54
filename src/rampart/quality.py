"""Quality gate scoring phase outputs and driving bounded augment-only retries."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from .errors import RampartError
from .memory.schema import ItemStatus, QualityGap, WorkItem
from .memory.store import StateStore
from .phases import PhaseName, normalize_phase

LOGGER = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.70
DEFAULT_GROUP_SIZE = 10
# Hard ceilings; configuration may lower them but never raise them.
MAX_ITEM_RETRIES = 1
MAX_PHASE_RETRIES = 3


class Validator(Protocol):
    """Scores a group of output artifacts in ``[0, 1]``."""

    def validate(self, outputs: Sequence[Path]) -> List[float]:
        ...


@dataclass(slots=True)
class SectionValidator:
    """Structural completeness check: presence, minimum length and section markers."""

    min_chars: int = 200
    required_sections: List[str] = field(default_factory=lambda: ["## Summary"])
    length_weight: float = 0.4

    def validate(self, outputs: Sequence[Path]) -> List[float]:
        return [self._score(Path(path)) for path in outputs]

    def missing_sections(self, output: Path) -> List[str]:
        text = _read_text(output)
        if text is None:
            return list(self.required_sections)
        return [section for section in self.required_sections if section not in text]

    def _score(self, output: Path) -> float:
        text = _read_text(output)
        if not text or not text.strip():
            return 0.0
        length_ratio = min(len(text.strip()) / self.min_chars, 1.0) if self.min_chars > 0 else 1.0
        if self.required_sections:
            present = sum(1 for section in self.required_sections if section in text)
            section_ratio = present / len(self.required_sections)
        else:
            section_ratio = 1.0
        score = self.length_weight * length_ratio + (1.0 - self.length_weight) * section_ratio
        return round(min(max(score, 0.0), 1.0), 4)


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


class QualityGate:
    """Validate phase outputs and re-dispatch weak ones with feedback.

    Each item is retried at most ``max_item_retries`` times and a phase spends
    at most ``max_phase_retries`` retries in total. The spent count is
    persisted in the phase state so the cap holds across resumes. Outputs that
    stay below ``threshold`` are accepted and recorded as quality gaps.
    """

    def __init__(
        self,
        store: StateStore,
        validator: Validator | None = None,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        max_item_retries: int = MAX_ITEM_RETRIES,
        max_phase_retries: int = MAX_PHASE_RETRIES,
        group_size: int = DEFAULT_GROUP_SIZE,
    ) -> None:
        self._store = store
        self._validator = validator or SectionValidator()
        self.threshold = float(threshold)
        self.max_item_retries = min(max(int(max_item_retries), 0), MAX_ITEM_RETRIES)
        self.max_phase_retries = min(max(int(max_phase_retries), 0), MAX_PHASE_RETRIES)
        self.group_size = max(int(group_size), 1)

    def validate(self, output_path: Path) -> float:
        return self._validator.validate([Path(output_path)])[0]

    def evaluate(self, phase: PhaseName | str) -> Dict[str, float]:
        """Score every terminal item of ``phase`` and persist the scores."""
        phase_name = normalize_phase(phase)
        run = self._store.require()
        state = run.phase(phase_name)
        scores: Dict[str, float] = {}
        scored: List[WorkItem] = []
        for item in state.items.values():
            if item.status == ItemStatus.FAILED:
                item.score = 0.0
                scores[item.id] = 0.0
            elif item.status == ItemStatus.SUCCEEDED:
                scored.append(item)

        for start in range(0, len(scored), self.group_size):
            group = scored[start : start + self.group_size]
            outputs = [self._store.audit_dir / item.output_path for item in group]
            for item, score in zip(group, self._validator.validate(outputs)):
                item.score = float(score)
                scores[item.id] = float(score)
        self._store.save(run)
        return scores

    def retry(self, item: WorkItem, feedback: str) -> WorkItem:
        """Return a copy of ``item`` queued for one augment-only retry."""
        if item.retry_count >= self.max_item_retries:
            raise RampartError(f"Work item '{item.id}' has already used its retry")
        return item.model_copy(
            update={
                "retry_count": item.retry_count + 1,
                "feedback": feedback,
                "status": ItemStatus.NEEDS_RETRY,
                "error": None,
            },
            deep=True,
        )

    def feedback_for(self, item: WorkItem, score: float) -> str:
        lines = [
            f"Quality score {score:.2f} is below the required {self.threshold:.2f}.",
        ]
        if item.status == ItemStatus.FAILED and item.error:
            lines.append(f"Previous attempt failed: {item.error}")
        if isinstance(self._validator, SectionValidator):
            missing = self._validator.missing_sections(self._store.audit_dir / item.output_path)
            if missing:
                lines.append("Missing sections: " + ", ".join(missing))
        lines.append("Extend the existing output in place; keep all prior content.")
        return "\n".join(lines)

    def run(self, phase: PhaseName | str, scheduler) -> List[QualityGap]:
        """Evaluate ``phase``, retry weak items within the caps and record gaps."""
        phase_name = normalize_phase(phase)
        scores = self.evaluate(phase_name)
        run = self._store.require()
        state = run.phase(phase_name)
        recorded = {gap.item_id for gap in state.quality_gaps}

        weak = [
            item
            for item in state.items.values()
            if item.id in scores
            and scores[item.id] < self.threshold
            and item.id not in recorded
            and not item.synthetic
        ]
        candidates = sorted(
            (item for item in weak if item.retry_count < self.max_item_retries),
            key=lambda item: (item.status != ItemStatus.FAILED, scores[item.id], item.id),
        )
        remaining = max(self.max_phase_retries - state.retries_used, 0)
        # Split siblings share one output; a single retry covers all of them.
        selected: List[WorkItem] = []
        owners: Dict[str, WorkItem] = {}
        covered: Dict[str, str] = {}
        for item in candidates:
            owner = owners.get(item.output_path)
            if owner is not None:
                covered[item.id] = owner.id
                continue
            if len(selected) >= remaining:
                continue
            owners[item.output_path] = item
            selected.append(item)
        selected_ids = {item.id for item in selected}

        gaps: List[QualityGap] = []
        for item in weak:
            if item.id in selected_ids or item.id in covered:
                continue
            reason = "retry already used" if item.retry_count >= self.max_item_retries else "phase retry cap reached"
            gaps.append(
                QualityGap(item_id=item.id, score=scores[item.id], reason=reason, retried=item.retry_count > 0)
            )

        if selected:
            snapshots = {item.id: _read_text(self._store.audit_dir / item.output_path) for item in selected}
            retried = [self.retry(item, self.feedback_for(item, scores[item.id])) for item in selected]
            state.retries_used += len(retried)
            for sibling_id, owner_id in covered.items():
                sibling = state.items[sibling_id]
                sibling.retry_count += 1
                sibling.feedback = f"Covered by the retry of {owner_id}"
            self._store.save(run)
            LOGGER.info(
                "Retrying %d item(s) in %s (%d of %d phase retries used)",
                len(retried),
                phase_name.value,
                state.retries_used,
                self.max_phase_retries,
            )
            scheduler.dispatch_items(phase_name, retried, label="retry")
            for item in retried:
                self._preserve_prior(item, snapshots.get(item.id))

            rescored = self.evaluate(phase_name)
            run = self._store.require()
            state = run.phase(phase_name)
            for item in retried:
                score = rescored.get(item.id, 0.0)
                if score < self.threshold:
                    gaps.append(QualityGap(item_id=item.id, score=score, reason="below threshold after retry", retried=True))
            for sibling_id, owner_id in covered.items():
                owner = state.items[owner_id]
                sibling = state.items[sibling_id]
                if sibling.status == ItemStatus.FAILED and owner.status == ItemStatus.SUCCEEDED:
                    sibling.status = ItemStatus.SUCCEEDED
                    sibling.error = None
                sibling.score = owner.score
                if (owner.score or 0.0) < self.threshold:
                    gaps.append(
                        QualityGap(item_id=sibling_id, score=owner.score or 0.0, reason="below threshold after retry", retried=True)
                    )

        for gap in gaps:
            LOGGER.warning(
                "Accepting %s in %s below threshold (%.2f < %.2f): %s",
                gap.item_id,
                phase_name.value,
                gap.score,
                self.threshold,
                gap.reason,
            )
            state.items[gap.item_id].quality_gap = True
            state.quality_gaps.append(gap)
        self._store.save(run)
        return gaps

    def _preserve_prior(self, item: WorkItem, prior: Optional[str]) -> None:
        """Re-prepend prior content when a retry replaced instead of augmenting."""
        if not prior:
            return
        output = self._store.audit_dir / item.output_path
        current = _read_text(output)
        if current is None:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(prior, encoding="utf-8")
            return
        if current.startswith(prior):
            return
        LOGGER.warning("Retry of %s replaced prior output; restoring it ahead of the new content", item.id)
        output.write_text(prior.rstrip("\n") + "\n\n" + current, encoding="utf-8")


__all__ = ["DEFAULT_THRESHOLD", "MAX_ITEM_RETRIES", "MAX_PHASE_RETRIES", "QualityGate", "SectionValidator", "Validator"]
