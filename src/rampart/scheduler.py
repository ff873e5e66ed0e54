"""Batch scheduler driving fan-out/fan-in execution of work items.

Batches run strictly one after another; the items of a batch run concurrently
and the scheduler waits for all of them before persisting progress and
moving on. Progress is written to the state store at batch boundaries only,
so an interrupted run can be resumed by re-reading item statuses.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Sequence

from .budget import ContextBudgetEstimator
from .memory.schema import (
    Batch,
    BatchStatus,
    Finding,
    ItemStatus,
    PhaseState,
    QualityGap,
    Run,
    WorkItem,
)
from .memory.store import StateStore
from .phases import PhaseName, normalize_phase
from .workers.base import Worker, WorkerOutcome, WorkRequest

LOGGER = logging.getLogger(__name__)

DEFAULT_WORKER_TIMEOUT = 900.0

ProgressCallback = Callable[[PhaseName, Batch, PhaseState], None]


@dataclass(slots=True)
class PhaseResult:
    """Outcome of running (or resuming) the fan-out work of one phase."""

    phase: PhaseName
    items: Dict[str, WorkItem] = field(default_factory=dict)
    batches_run: List[int] = field(default_factory=list)
    findings: List[Finding] = field(default_factory=list)
    quality_gaps: List[QualityGap] = field(default_factory=list)
    coverage: Any = None

    @property
    def succeeded(self) -> List[str]:
        return sorted(item_id for item_id, item in self.items.items() if item.status == ItemStatus.SUCCEEDED)

    @property
    def failed(self) -> List[str]:
        return sorted(item_id for item_id, item in self.items.items() if item.status == ItemStatus.FAILED)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.quality_gaps

    def merge(self, other: "PhaseResult") -> None:
        self.items.update(other.items)
        self.batches_run.extend(other.batches_run)
        self.findings.extend(other.findings)


def plan_batches(items: Sequence[WorkItem], size: int) -> List[Batch]:
    """Partition ``items`` into ordered batches of at most ``size`` members.

    Items sharing an output location never land in the same batch; an
    appending item always follows the batch of the item that creates the file.
    """
    size = max(int(size), 1)
    groups: List[List[str]] = []
    placed_outputs: Dict[str, int] = {}
    for item in items:
        start = 0
        previous = placed_outputs.get(item.output_path)
        if previous is not None:
            start = previous + 1
        target = next((index for index in range(start, len(groups)) if len(groups[index]) < size), None)
        if target is None:
            groups.append([])
            target = len(groups) - 1
        groups[target].append(item.id)
        placed_outputs[item.output_path] = max(target, placed_outputs.get(item.output_path, -1))
    return [Batch(index=index, item_ids=ids) for index, ids in enumerate(groups)]


class BatchScheduler:
    """Run work items in sequential, bounded-concurrency batches."""

    def __init__(
        self,
        store: StateStore,
        worker: Worker,
        *,
        estimator: ContextBudgetEstimator | None = None,
        concurrency_limit: int = 5,
        timeout_seconds: float = DEFAULT_WORKER_TIMEOUT,
        progress: ProgressCallback | None = None,
    ) -> None:
        self._store = store
        self._worker = worker
        self._estimator = estimator or ContextBudgetEstimator()
        self._concurrency_limit = max(int(concurrency_limit), 1)
        self._timeout = float(timeout_seconds)
        self._progress = progress

    @property
    def store(self) -> StateStore:
        return self._store

    def batch_size_for(self, items: Sequence[WorkItem]) -> int:
        return min(self._estimator.batch_size_for(items), self._concurrency_limit)

    # Phase execution ------------------------------------------------------------------
    def run_phase(self, phase: PhaseName | str, items: Iterable[WorkItem]) -> PhaseResult:
        """Dispatch every unfinished item of ``phase``; safe to call again after a crash."""
        phase_name = normalize_phase(phase)
        run = self._store.require()
        state = run.phase(phase_name)

        ordered: List[str] = []
        for item in items:
            if item.id not in state.items:
                state.items[item.id] = item
            ordered.append(item.id)
        for item_id in state.items:
            if item_id not in ordered:
                ordered.append(item_id)

        planned = {item_id for batch in state.batches for item_id in batch.item_ids}
        if not state.batches or planned != set(state.items):
            size = self.batch_size_for([state.items[item_id] for item_id in ordered])
            state.batches = plan_batches([state.items[item_id] for item_id in ordered], size)
            LOGGER.info(
                "Planned %d batch(es) of up to %d item(s) for %s",
                len(state.batches),
                size,
                phase_name.value,
            )
        self._store.save(run)

        owners: Dict[str, int] = {}
        for batch in state.batches:
            for item_id in batch.item_ids:
                owners[item_id] = batch.index

        result = PhaseResult(phase=phase_name)
        for batch in list(state.batches):
            pending = [
                state.items[item_id]
                for item_id in batch.item_ids
                if owners[item_id] == batch.index and state.items[item_id].status != ItemStatus.SUCCEEDED
            ]
            if not pending:
                if batch.status != BatchStatus.DONE:
                    batch.status = BatchStatus.DONE
                    self._store.save(run)
                continue
            result.findings.extend(self._execute_batch(run, phase_name, batch, pending))
            result.batches_run.append(batch.index)

        result.items = {item_id: item.model_copy(deep=True) for item_id, item in state.items.items()}
        result.quality_gaps = list(state.quality_gaps)
        return result

    def dispatch_items(
        self,
        phase: PhaseName | str,
        items: Sequence[WorkItem],
        *,
        label: str = "extra",
        on_enqueue: Callable[[PhaseState], None] | None = None,
    ) -> PhaseResult:
        """Run ``items`` as one additional batch appended to the phase plan.

        ``on_enqueue`` may amend the phase state; its changes are persisted in
        the same write that records the new batch.
        """
        phase_name = normalize_phase(phase)
        result = PhaseResult(phase=phase_name)
        if not items:
            return result
        run = self._store.require()
        state = run.phase(phase_name)
        if on_enqueue is not None:
            on_enqueue(state)
        for item in items:
            state.items[item.id] = item
        batch = Batch(index=len(state.batches), item_ids=[item.id for item in items])
        state.batches.append(batch)
        self._store.save(run)
        LOGGER.info("Dispatching %s batch %d with %d item(s) for %s", label, batch.index, len(items), phase_name.value)

        result.findings.extend(self._execute_batch(run, phase_name, batch, [state.items[item.id] for item in items]))
        result.batches_run.append(batch.index)
        result.items = {item.id: state.items[item.id].model_copy(deep=True) for item in items}
        return result

    # Batch internals ------------------------------------------------------------------
    def _execute_batch(
        self,
        run: Run,
        phase: PhaseName,
        batch: Batch,
        items: List[WorkItem],
    ) -> List[Finding]:
        state = run.phase(phase)
        for item in items:
            item.status = ItemStatus.RUNNING
            item.error = None
        batch.status = BatchStatus.RUNNING
        self._store.save(run)

        started = time.monotonic()
        outcomes = asyncio.run(self._run_concurrently(items))
        elapsed = time.monotonic() - started

        findings: List[Finding] = []
        for item, (outcome, duration) in zip(items, outcomes):
            item.status = outcome.status if outcome.status in (ItemStatus.SUCCEEDED, ItemStatus.FAILED) else ItemStatus.FAILED
            item.error = outcome.error
            item.metadata["duration_seconds"] = round(duration, 3)
            for finding in outcome.findings:
                findings.append(finding.model_copy(update={"run_number": run.run_number}, deep=True))
        _merge_findings(run, findings)

        batch.status = BatchStatus.DONE
        self._store.save(run)
        failed = [item.id for item in items if item.status == ItemStatus.FAILED]
        LOGGER.info(
            "Batch %d of %s finished in %.1fs: %d succeeded, %d failed",
            batch.index,
            phase.value,
            elapsed,
            len(items) - len(failed),
            len(failed),
        )
        self._write_batch_log(phase, batch, items, elapsed)
        if self._progress is not None:
            self._progress(phase, batch, state)
        return findings

    async def _run_concurrently(self, items: Sequence[WorkItem]) -> List[tuple[WorkerOutcome, float]]:
        return list(await asyncio.gather(*(self._invoke_one(item) for item in items)))

    async def _invoke_one(self, item: WorkItem) -> tuple[WorkerOutcome, float]:
        request = WorkRequest(
            item=item,
            output_path=self._store.audit_dir / item.output_path,
            feedback=item.feedback,
            context=dict(item.metadata.get("context") or {}),
        )
        started = time.monotonic()
        try:
            outcome = await asyncio.wait_for(self._worker.invoke(request), timeout=self._timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Work item %s timed out after %.0fs", item.id, self._timeout)
            outcome = WorkerOutcome.failed(f"timed out after {self._timeout:g}s")
        except Exception as error:  # noqa: BLE001 - worker failures never abort a batch
            LOGGER.warning("Work item %s failed: %s", item.id, error)
            outcome = WorkerOutcome.failed(f"{type(error).__name__}: {error}")
        return outcome, time.monotonic() - started

    def _write_batch_log(self, phase: PhaseName, batch: Batch, items: Sequence[WorkItem], elapsed: float) -> None:
        """Persist a structured batch log for later debugging."""
        logs_root = self._store.logs_dir / "batches"
        try:
            logs_root.mkdir(parents=True, exist_ok=True)
        except OSError:
            return
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "phase": phase.value,
            "batch": batch.index,
            "elapsed_seconds": round(elapsed, 3),
            "items": [
                {
                    "id": item.id,
                    "status": item.status.value,
                    "worker_class": item.worker_class,
                    "retry_count": item.retry_count,
                    "write_mode": item.write_mode.value,
                    "error": item.error,
                }
                for item in items
            ],
        }
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        log_path = logs_root / f"{phase.value}__batch-{batch.index:03d}__{stamp}.json"
        try:
            with log_path.open("w", encoding="utf-8") as handle:
                json.dump(entry, handle, indent=2, sort_keys=True)
        except OSError:
            return


def _merge_findings(run: Run, findings: Sequence[Finding]) -> None:
    if not findings:
        return
    positions = {finding.id: index for index, finding in enumerate(run.findings)}
    for finding in findings:
        if finding.id in positions:
            run.findings[positions[finding.id]] = finding
        else:
            positions[finding.id] = len(run.findings)
            run.findings.append(finding)


__all__ = ["BatchScheduler", "PhaseResult", "ProgressCallback", "plan_batches"]
