from __future__ import annotations

from pathlib import Path

from rampart.budget import BudgetThresholds, ContextBudgetEstimator, ContextMode, file_size_lookup
from rampart.memory.schema import Finding, FindingStatus, WorkItem, WriteMode
from rampart.phases import PhaseName


def _item(identifier: str, refs: int) -> WorkItem:
    return WorkItem(
        id=identifier,
        phase=PhaseName.ANALYZE,
        scope=[f"src/{identifier}_{index}.py" for index in range(refs)],
        output_path=f"analyze/{identifier}.md",
    )


def test_estimate_adds_template_references_and_cross_reference() -> None:
    estimator = ContextBudgetEstimator()

    estimate = estimator.estimate(_item("a", 4))

    assert estimate.template == 6_000
    assert estimate.references == 4 * 2_500
    assert estimate.cross_reference == 4_000
    assert estimate.total == 20_000


def test_estimate_uses_file_sizes_when_known(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "big.py").write_text("x" * 40_000, encoding="utf-8")
    estimator = ContextBudgetEstimator(size_lookup=file_size_lookup(tmp_path))
    item = WorkItem(id="sized", phase=PhaseName.ANALYZE, scope=["src/big.py", "src/missing.py"], output_path="analyze/s.md")

    estimate = estimator.estimate(item)

    assert estimate.references == 10_000 + 2_500


def test_batch_size_follows_average_estimate() -> None:
    estimator = ContextBudgetEstimator()

    assert estimator.batch_size_for([_item("small", 2)]) == 8
    assert estimator.batch_size_for([_item("medium", 14)]) == 5
    assert estimator.batch_size_for([_item("large", 30)]) == 3
    assert estimator.batch_size_for([]) == 8


def test_oversized_item_splits_into_create_and_append_siblings() -> None:
    estimator = ContextBudgetEstimator()
    oversized = _item("huge", 50)
    small = _item("tiny", 1)

    result = estimator.split_oversized([oversized, small])

    assert [item.id for item in result] == ["huge-a", "huge-b", "tiny"]
    first, second = result[0], result[1]
    assert first.write_mode == WriteMode.CREATE
    assert second.write_mode == WriteMode.APPEND
    assert first.output_path == second.output_path == "analyze/huge.md"
    assert first.split_from == second.split_from == "huge"
    assert set(first.scope).isdisjoint(second.scope)
    assert sorted(first.scope + second.scope) == sorted(oversized.scope)
    assert result[2].estimate == estimator.estimate(small).total


def test_single_reference_item_is_never_split() -> None:
    thresholds = BudgetThresholds(per_reference_tokens=200_000)
    estimator = ContextBudgetEstimator(thresholds)

    result = estimator.split_oversized([_item("solo", 1)])

    assert [item.id for item in result] == ["solo"]


def test_mode_selection_thresholds() -> None:
    estimator = ContextBudgetEstimator()

    assert estimator.select_mode(79_999) == ContextMode.INLINE
    assert estimator.select_mode(80_000) == ContextMode.PARTIAL_DISK
    assert estimator.select_mode(120_000) == ContextMode.PARTIAL_DISK
    assert estimator.select_mode(120_001) == ContextMode.DISK_HEAVY


def test_thresholds_are_configurable() -> None:
    thresholds = BudgetThresholds.from_mapping({"small_batch_size": 6, "unknown_key": 1})
    estimator = ContextBudgetEstimator(thresholds)

    assert thresholds.small_batch_size == 6
    assert estimator.batch_size_for([_item("a", 1)]) == 6


def test_synthesis_context_collapses_dismissed_findings() -> None:
    estimator = ContextBudgetEstimator()
    findings = [
        Finding(
            id="F-1",
            title="Injection",
            status=FindingStatus.CONFIRMED,
            summary="First paragraph line one.\nline two.\n\nSecond paragraph.",
            detail_path="investigate/F-1.md",
        ),
        Finding(
            id="F-2",
            title="False alarm",
            status=FindingStatus.NOT_VULNERABLE,
            summary="Input is validated upstream.\nMore detail here.",
        ),
    ]

    heavy = estimator.build_synthesis_context(findings, ["analyze/a.md"], ContextMode.DISK_HEAVY)
    inline = estimator.build_synthesis_context(
        findings,
        ["analyze/a.md"],
        ContextMode.INLINE,
        read_reference=lambda reference: f"contents of {reference}",
    )

    assert heavy.findings[0]["summary"] == "First paragraph line one. line two."
    assert heavy.findings[0]["detail_path"] == "investigate/F-1.md"
    assert heavy.findings[1] == {"id": "F-2", "status": "not_vulnerable", "summary": "Input is validated upstream."}
    assert heavy.reference_paths == ["analyze/a.md"]
    assert heavy.embedded_references == []
    assert inline.embedded_references == ["contents of analyze/a.md"]
    assert inline.findings[1]["summary"] == "Input is validated upstream."
