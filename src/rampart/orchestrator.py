"""High-level orchestration loop driving the audit phases of a run."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .budget import ContextBudgetEstimator, ContextMode, file_size_lookup
from .catalog import (
    DEFAULT_EXCLUDES,
    CatalogEntry,
    IndexedScope,
    WorkItemSelector,
    catalog_selector,
    load_catalog,
    partition_selector,
    single_item_selector,
)
from .config import OrchestratorSettings
from .coverage import DeclaredScope, follow_up_items, verify_coverage
from .errors import InvalidTransitionError, RampartError
from .memory.findings import FindingLedger
from .memory.schema import (
    ChangeKind,
    EvolutionTag,
    Finding,
    ItemStatus,
    PhaseState,
    PhaseStatus,
    PriorRunRef,
    Run,
    RunConfig,
    WorkItem,
)
from .memory.store import StateStore
from .phases import FINDING_PHASES, GATED_PHASES, PHASE_SEQUENCE, SYNTHESIS_PHASES, PhaseName, normalize_phase
from .quality import QualityGate, SectionValidator
from .scheduler import BatchScheduler, PhaseResult, ProgressCallback
from .stacking import (
    MAJOR_CHANGE_LINES,
    ChangeListProvider,
    DeltaSet,
    FileChange,
    compute_delta,
    reclassify_findings,
    tag_evolution,
)
from .tools.vcs import GitError, GitRepository
from .workers import CommandWorker, OfflineWorker, Worker
from .workers.offline import DEFAULT_SECTIONS

LOGGER = logging.getLogger(__name__)

# Earlier outputs each synthesis-style phase reads.
_PHASE_REFERENCES: Dict[PhaseName, tuple[PhaseName, ...]] = {
    PhaseName.STRATEGIZE: (PhaseName.SCAN, PhaseName.ANALYZE),
    PhaseName.REPORT: (PhaseName.ANALYZE, PhaseName.STRATEGIZE, PhaseName.INVESTIGATE),
    PhaseName.VERIFY: (PhaseName.INVESTIGATE, PhaseName.REPORT),
}


class Orchestrator:
    """Coordinator that starts runs and drives phases to completion.

    Phases execute in strict order. Each phase selects its work items (once,
    then reuses the persisted set on resume), runs them through the batch
    scheduler, passes fan-out phases through the quality gate and coverage
    verifier, and only then marks the phase complete.
    """

    def __init__(
        self,
        *,
        settings: OrchestratorSettings,
        worker: Worker,
        store: StateStore | None = None,
        catalog: Sequence[CatalogEntry] | None = None,
        selectors: Mapping[PhaseName, WorkItemSelector] | None = None,
        repository: GitRepository | None = None,
        change_provider: ChangeListProvider | None = None,
        validator: Any = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or StateStore(settings.audit_dir, settings.history_dir)
        self.ledger = FindingLedger.in_history(self.store.history_dir)
        self.catalog = list(catalog or [])
        self._selectors = dict(selectors or {})
        self._repository = repository
        self._change_provider = change_provider or repository
        root_sizes = file_size_lookup(settings.root)
        audit_sizes = file_size_lookup(self.store.audit_dir)
        self.estimator = ContextBudgetEstimator(
            settings.budget,
            size_lookup=lambda reference: root_sizes(reference) or audit_sizes(reference),
        )
        self.scheduler = BatchScheduler(
            self.store,
            worker,
            estimator=self.estimator,
            concurrency_limit=settings.concurrency_limit,
            timeout_seconds=settings.worker_timeout_seconds,
            progress=progress,
        )
        self.gate = QualityGate(
            self.store,
            validator
            or SectionValidator(
                min_chars=settings.min_output_chars,
                required_sections=list(settings.required_sections),
            ),
            threshold=settings.quality_threshold,
            max_item_retries=settings.max_item_retries,
            max_phase_retries=settings.max_phase_retries,
            group_size=settings.validator_group_size,
        )
        self._scope: IndexedScope | None = None

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        base_dir: Path | str | None = None,
        worker: Worker | None = None,
        progress: ProgressCallback | None = None,
    ) -> "Orchestrator":
        """Convenience constructor used by the CLI."""
        settings = OrchestratorSettings.from_config(config, base_dir=base_dir)
        if worker is None:
            if settings.worker_command:
                worker = CommandWorker(settings.worker_command, cwd=settings.root)
            else:
                sections = list(DEFAULT_SECTIONS)
                sections.extend(section for section in settings.required_sections if section not in sections)
                worker = OfflineWorker(sections)
        catalog: List[CatalogEntry] = []
        if settings.catalog_path is not None and settings.catalog_path.exists():
            catalog = load_catalog(settings.catalog_path)
        try:
            repository: GitRepository | None = GitRepository.discover(settings.root)
        except GitError:
            LOGGER.info("No git repository found at %s; stacked runs will treat shared files as modified", settings.root)
            repository = None
        return cls(settings=settings, worker=worker, catalog=catalog, repository=repository, progress=progress)

    # Scope -------------------------------------------------------------------------------
    def scope(self) -> IndexedScope:
        """Index the files in scope, once per orchestrator."""
        if self._scope is None:
            exclude = list(DEFAULT_EXCLUDES) + list(self.settings.exclude)
            for directory in (self.store.audit_dir, self.store.history_dir):
                try:
                    relative = directory.relative_to(self.settings.root.resolve()).as_posix()
                except ValueError:
                    continue
                exclude.append(f"{relative}/*")
            self._scope = IndexedScope.from_directory(
                self.settings.root,
                include=self.settings.include,
                exclude=exclude,
                entry_points=self.settings.entry_points,
            )
        return self._scope

    def _work_scope(self, run: Run, phase: PhaseName) -> IndexedScope:
        """Restrict fan-out scope of a stacked run to files the delta says need work."""
        scope = self.scope()
        if run.delta is None or run.delta.massive_rewrite or phase not in GATED_PHASES:
            return scope
        delta = DeltaSet.from_summary(run.delta)
        wanted = set(delta.paths(ChangeKind.ADDED)) | set(delta.paths(ChangeKind.MODIFIED))
        wanted.update(finding.target_file for finding in run.carried_findings if finding.active and finding.target_file)
        files = [path for path in scope.files if path in wanted]
        LOGGER.info("Stacked run: %s limited to %d of %d file(s)", phase.value, len(files), len(scope.files))
        return IndexedScope(
            root=scope.root,
            files=files,
            entry_points=[path for path in scope.entry_points if path in wanted],
        )

    # Runs --------------------------------------------------------------------------------
    def start_run(self, *, stack: bool = False) -> Run:
        """Archive any active run and start a new one, optionally stacked on the last archive."""
        previous = self.store.load()
        self._scope = None
        last_number = 0
        prior_dir: Optional[Path] = None
        if previous is not None:
            if not all(state.status == PhaseStatus.COMPLETE for state in previous.phases.values()):
                LOGGER.warning("Archiving run #%d before it completed", previous.run_number)
            last_number = previous.run_number
            self._record_findings(previous)
            prior_dir = self.store.archive(previous)
        else:
            prior_dir = self.store.latest_archive()
            if prior_dir is not None:
                last_number = self.store.load_archive(prior_dir).run_number

        revision = self._repository.head_revision() if self._repository is not None else None
        run = Run(
            run_number=last_number + 1,
            revision=revision,
            config=RunConfig(
                tier=self.settings.tier,
                max_concurrency=self.settings.max_concurrency,
                worker_classes=self.settings.resolved_worker_classes(),
            ),
        )

        if stack:
            if prior_dir is None:
                raise RampartError("Cannot stack: no archived run found in " + str(self.store.history_dir))
            prior = self.store.load_archive(prior_dir)
            delta = self._delta_against(prior)
            run.prior_run = PriorRunRef(run_number=prior.run_number, archive_dir=str(prior_dir), revision=prior.revision)
            run.delta = delta.to_summary(base_revision=prior.revision, head_revision=revision)
            run.carried_findings = reclassify_findings(prior.active_findings, delta)
            LOGGER.info(
                "Stacked run #%d on run #%d: %d finding(s) carried forward",
                run.run_number,
                prior.run_number,
                len(run.carried_findings),
            )

        self.store.audit_dir.mkdir(parents=True, exist_ok=True)
        for phase in PHASE_SEQUENCE:
            self.store.phase_dir(phase).mkdir(parents=True, exist_ok=True)
        self.store.save(run)
        LOGGER.info("Started run #%d (tier %s)", run.run_number, run.config.tier)
        return run

    def _delta_against(self, prior: Run) -> DeltaSet:
        current = self.scope().files
        changes: Optional[List[FileChange]] = None
        if prior.revision and self._change_provider is not None:
            try:
                changes = self._change_provider.changed_files(prior.revision)
            except GitError as error:
                LOGGER.warning("Change list unavailable (%s); treating shared files as modified", error)
        if changes is None:
            shared = set(prior.file_index) & set(current)
            changes = [
                FileChange(path=path, kind=ChangeKind.MODIFIED, lines_changed=MAJOR_CHANGE_LINES)
                for path in sorted(shared)
            ]
        return compute_delta(prior.file_index, current, changes)

    # Phases ------------------------------------------------------------------------------
    def next_phase(self) -> Optional[PhaseName]:
        """Return the first phase that is not complete, or ``None`` when the run is done."""
        run = self.store.require()
        for phase in PHASE_SEQUENCE:
            if run.phase(phase).status != PhaseStatus.COMPLETE:
                return phase
        return None

    def run_next(self) -> Optional[PhaseResult]:
        phase = self.next_phase()
        if phase is None:
            return None
        return self.run_phase(phase)

    def run_all(self) -> List[PhaseResult]:
        results: List[PhaseResult] = []
        while True:
            result = self.run_next()
            if result is None:
                return results
            results.append(result)

    def run_phase(self, phase: PhaseName | str) -> PhaseResult:
        """Run or resume ``phase`` and mark it complete."""
        phase_name = normalize_phase(phase)
        run = self.store.require()
        if run.phase(phase_name).status == PhaseStatus.COMPLETE:
            raise InvalidTransitionError(
                phase_name.value,
                PhaseStatus.COMPLETE.value,
                PhaseStatus.IN_PROGRESS.value,
                f"Phase '{phase_name.value}' is already complete",
            )
        run = self.store.transition_phase(phase_name, PhaseStatus.IN_PROGRESS)
        state = run.phase(phase_name)

        if state.items:
            items = list(state.items.values())
            LOGGER.info("Resuming %s with %d recorded item(s)", phase_name.value, len(items))
        else:
            items = self._select_items(run, phase_name)

        result = self.scheduler.run_phase(phase_name, items)

        if phase_name in GATED_PHASES:
            self.gate.run(phase_name, self.scheduler)
            if self.settings.coverage_enabled:
                self._verify_coverage(phase_name)

        if phase_name in FINDING_PHASES:
            self._tag_findings()

        run = self.store.transition_phase(phase_name, PhaseStatus.COMPLETE)
        state = run.phase(phase_name)
        result.items = {item_id: item.model_copy(deep=True) for item_id, item in state.items.items()}
        result.findings = [finding for finding in run.findings if finding.run_number == run.run_number]
        result.quality_gaps = list(state.quality_gaps)
        result.coverage = state.coverage
        LOGGER.info(
            "Phase %s complete: %d succeeded, %d failed, %d quality gap(s)",
            phase_name.value,
            len(result.succeeded),
            len(result.failed),
            len(result.quality_gaps),
        )
        return result

    def selector_for(self, run: Run, phase: PhaseName) -> WorkItemSelector:
        if phase in self._selectors:
            return self._selectors[phase]
        worker_class = run.config.worker_classes.get(phase.value) or self.settings.worker_class_for(phase)
        if phase in GATED_PHASES:
            if self.catalog:
                return catalog_selector(self.catalog, phase=phase, worker_class=worker_class)
            return partition_selector(phase=phase, worker_class=worker_class)
        if phase == PhaseName.SCAN:
            return partition_selector(phase=phase, worker_class=worker_class)
        references = _PHASE_REFERENCES.get(phase, ())
        return single_item_selector(
            phase=phase,
            worker_class=worker_class,
            references=lambda _scope: self._phase_outputs(run, references),
        )

    def _select_items(self, run: Run, phase: PhaseName) -> List[WorkItem]:
        if phase == PhaseName.SCAN:
            run.file_index = list(self.scope().files)
            self.store.save(run)
        items = self.selector_for(run, phase)(self._work_scope(run, phase))
        for item in items:
            self._attach_context(run, phase, item)
        items = self.estimator.split_oversized(items)
        LOGGER.info("Selected %d work item(s) for %s", len(items), phase.value)
        return items

    def _attach_context(self, run: Run, phase: PhaseName, item: WorkItem) -> None:
        context: Dict[str, Any] = dict(item.metadata.get("context") or {})
        if phase in SYNTHESIS_PHASES or phase == PhaseName.VERIFY:
            findings = self._reportable_findings(run)
            synthesis = self.estimator.build_synthesis_context(
                findings,
                item.scope,
                read_reference=self._read_audit_reference,
            )
            context.update(synthesis.to_dict())
            item.metadata["context_mode"] = synthesis.mode.value
            if synthesis.mode != ContextMode.INLINE:
                LOGGER.info("%s uses %s context", phase.value, synthesis.mode.value)
        else:
            in_scope = set(item.scope)
            recheck = [
                {"id": finding.id, "target_file": finding.target_file, "recheck": finding.recheck.value}
                for finding in run.carried_findings
                if finding.active and finding.recheck is not None and finding.target_file in in_scope
            ]
            if recheck:
                context["carried_findings"] = recheck
        if context:
            item.metadata["context"] = context

    def _read_audit_reference(self, reference: str) -> str:
        try:
            return (self.store.audit_dir / reference).read_text(encoding="utf-8")
        except OSError:
            return ""

    @staticmethod
    def _phase_outputs(run: Run, phases: Sequence[PhaseName]) -> List[str]:
        outputs: List[str] = []
        for phase in phases:
            for item in run.phase(phase).items.values():
                if item.status == ItemStatus.SUCCEEDED and item.output_path not in outputs:
                    outputs.append(item.output_path)
        return outputs

    @staticmethod
    def _reportable_findings(run: Run) -> List[Finding]:
        current = run.active_findings
        seen = {finding.id for finding in current}
        carried = [finding for finding in run.carried_findings if finding.active and finding.id not in seen]
        return sorted(current + carried, key=lambda finding: finding.id)

    def _verify_coverage(self, phase: PhaseName) -> None:
        run = self.store.require()
        state = run.phase(phase)
        if state.coverage_checked:
            return
        declared = DeclaredScope.from_index(self._work_scope(run, phase), self.catalog)
        report = verify_coverage(declared, state.items.values())
        limit = self.scheduler.batch_size_for(list(state.items.values()))
        worker_class = run.config.worker_classes.get(phase.value) or self.settings.worker_class_for(phase)
        follow_ups = [
            item
            for item in follow_up_items(report, phase=phase, limit=limit, worker_class=worker_class)
            if item.id not in state.items
        ]
        summary = report.to_summary()

        def _mark_checked(target: PhaseState) -> None:
            target.coverage = summary
            target.coverage_checked = True

        if not follow_ups:
            _mark_checked(state)
            self.store.save(run)
            return
        LOGGER.info("Dispatching %d coverage follow-up item(s) for %s", len(follow_ups), phase.value)
        self.scheduler.dispatch_items(phase, follow_ups, label="coverage", on_enqueue=_mark_checked)

    # Findings ----------------------------------------------------------------------------
    def _tag_findings(self) -> None:
        run = self.store.require()
        current = [finding for finding in run.findings if finding.run_number == run.run_number]
        prior = run.carried_findings if run.prior_run is not None else []
        delta = DeltaSet.from_summary(run.delta) if run.delta is not None else None
        tagged = tag_evolution(prior, current, delta=delta, history=self.ledger.latest())
        run.findings = sorted(tagged, key=lambda finding: finding.id)
        self.store.save(run)

    def _record_findings(self, run: Run) -> None:
        """Append a finished run's findings to the cross-run ledger."""
        recorded = {finding.id for finding in run.findings}
        removed = [
            finding
            for finding in run.carried_findings
            if finding.evolution == EvolutionTag.RESOLVED_BY_REMOVAL and finding.id not in recorded
        ]
        self.ledger.append([*run.findings, *removed], run_number=run.run_number)


__all__ = ["Orchestrator"]
