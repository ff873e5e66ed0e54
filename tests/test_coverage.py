from __future__ import annotations

from pathlib import Path

from rampart.catalog import CatalogEntry, IndexedScope
from rampart.coverage import DeclaredScope, PatternRef, ScopeUnit, follow_up_items, gap_item_id, verify_coverage
from rampart.memory.schema import GapPriority, ItemStatus, WorkItem
from rampart.phases import PhaseName


def _done(identifier: str, scope, *, catalog_ids=(), checklist_ids=(), status=ItemStatus.SUCCEEDED) -> WorkItem:
    return WorkItem(
        id=identifier,
        phase=PhaseName.ANALYZE,
        scope=list(scope),
        output_path=f"analyze/{identifier}.md",
        catalog_ids=list(catalog_ids),
        checklist_ids=list(checklist_ids),
        status=status,
    )


def _declared() -> DeclaredScope:
    return DeclaredScope(
        units=[
            ScopeUnit(id="api", path="src/api.py", externally_reachable=True),
            ScopeUnit(id="util", path="src/util.py"),
            ScopeUnit(id="core", path="src/core.py"),
        ],
        patterns=[
            PatternRef(id="sql-injection", severity="critical", files=["src/api.py", "src/core.py"]),
            PatternRef(id="weak-hash", severity="low", files=["src/util.py"]),
        ],
        checklist=["authn", "logging"],
    )


def test_full_coverage_has_no_gaps() -> None:
    processed = [
        _done(
            "all",
            ["src/api.py", "src/util.py", "src/core.py"],
            catalog_ids=["sql-injection", "weak-hash"],
            checklist_ids=["authn", "logging"],
        )
    ]

    report = verify_coverage(_declared(), processed)

    assert report.complete
    assert (report.scope_ratio, report.pattern_ratio, report.checklist_ratio) == (1.0, 1.0, 1.0)


def test_gaps_are_prioritised_and_ratios_reported() -> None:
    processed = [
        _done("core", ["src/core.py"], checklist_ids=["authn"]),
        _done("broken", ["src/api.py"], catalog_ids=["sql-injection"], status=ItemStatus.FAILED),
    ]

    report = verify_coverage(_declared(), processed)

    assert report.scope_ratio == round(1 / 3, 4)
    assert report.pattern_ratio == 0.0
    assert report.checklist_ratio == 0.5
    assert [(gap.kind, gap.ref, gap.priority) for gap in report.gaps] == [
        ("unit", "src/api.py", GapPriority.CRITICAL),
        ("pattern", "sql-injection", GapPriority.HIGH),
        ("pattern", "weak-hash", GapPriority.MEDIUM),
        ("unit", "src/util.py", GapPriority.MEDIUM),
        ("checklist", "logging", GapPriority.LOW),
    ]
    assert [gap.ref for gap in report.actionable] == ["src/api.py", "sql-injection"]


def test_empty_declared_scope_counts_as_covered() -> None:
    report = verify_coverage(DeclaredScope(), [])

    assert report.complete
    assert report.scope_ratio == 1.0


def test_follow_up_items_cover_actionable_gaps_only() -> None:
    report = verify_coverage(_declared(), [])

    items = follow_up_items(report, phase=PhaseName.ANALYZE, limit=5)

    assert [item.id for item in items] == ["gap-unit-src-api.py", "gap-pattern-sql-injection"]
    unit_item, pattern_item = items
    assert unit_item.scope == ["src/api.py"]
    assert unit_item.synthetic is True
    assert unit_item.output_path == "analyze/coverage/gap-unit-src-api.py.md"
    assert pattern_item.scope == ["src/api.py", "src/core.py"]
    assert pattern_item.catalog_ids == ["sql-injection"]
    dispatched = {gap.ref: gap.dispatched for gap in report.gaps}
    assert dispatched == {
        "src/api.py": True,
        "sql-injection": True,
        "weak-hash": False,
        "src/util.py": False,
        "logging": False,
        "authn": False,
    }


def test_follow_up_items_respect_limit() -> None:
    report = verify_coverage(_declared(), [])

    items = follow_up_items(report, phase="analyze", limit=1)

    assert [item.id for item in items] == ["gap-unit-src-api.py"]
    assert [gap.dispatched for gap in report.actionable] == [True, False]


def test_long_gap_refs_get_bounded_ids() -> None:
    report = verify_coverage(
        DeclaredScope(units=[ScopeUnit(id="deep", path="src/" + "nested/" * 20 + "handler.py", externally_reachable=True)]),
        [],
    )

    identifier = gap_item_id(report.gaps[0])

    assert identifier.startswith("gap-unit-src-nested")
    assert len(identifier) <= len("gap-unit-") + 60


def test_declared_scope_from_index_uses_entry_points_and_catalog(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "views.py").write_text("cursor.execute(query % user)\n", encoding="utf-8")
    (tmp_path / "src" / "models.py").write_text("class Model: pass\n", encoding="utf-8")
    scope = IndexedScope.from_directory(tmp_path, entry_points=["src/views.py"])
    catalog = [
        CatalogEntry(id="sql", triggers=["*.py"], keywords=[r"execute\("], severity="high", checklist=["parameterised"]),
        CatalogEntry(id="xml", triggers=["*.xml"]),
    ]

    declared = DeclaredScope.from_index(scope, catalog)

    assert [(unit.path, unit.externally_reachable) for unit in declared.units] == [
        ("src/models.py", False),
        ("src/views.py", True),
    ]
    assert [(pattern.id, pattern.files) for pattern in declared.patterns] == [("sql", ["src/views.py"])]
    assert declared.checklist == ["parameterised"]
