"""Indexed scope and catalog-driven work-item selection.

What a worker should look at is decided outside the scheduler: a selector
receives the indexed scope and returns work items. The catalog selector
matches trigger patterns from a YAML catalog against file paths (and,
optionally, file contents); other phases use a single item that points at
earlier phase outputs.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import yaml

from .errors import ConfigError
from .memory.schema import WorkItem
from .phases import PhaseName, normalize_phase

LOGGER = logging.getLogger(__name__)

DEFAULT_EXCLUDES = (
    ".git/*",
    ".audit/*",
    ".audit-history/*",
    "node_modules/*",
    "*/node_modules/*",
    "target/*",
    "*.lock",
)
MAX_CONTENT_BYTES = 256_000
DEFAULT_MAX_SCOPE = 40


def _matches(path: str, patterns: Iterable[str]) -> bool:
    posix = PurePosixPath(path)
    for pattern in patterns:
        if fnmatch.fnmatch(path, pattern) or posix.match(pattern):
            return True
    return False


@dataclass(slots=True)
class IndexedScope:
    """Files in scope for a run, relative to ``root``."""

    root: Path
    files: List[str] = field(default_factory=list)
    entry_points: List[str] = field(default_factory=list)

    @classmethod
    def from_directory(
        cls,
        root: Path | str,
        *,
        include: Sequence[str] = (),
        exclude: Sequence[str] = DEFAULT_EXCLUDES,
        entry_points: Sequence[str] = (),
    ) -> "IndexedScope":
        base = Path(root).resolve()
        collected: List[str] = []
        for directory, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(name for name in dirnames if not name.startswith("."))
            for name in sorted(filenames):
                relative = (Path(directory) / name).relative_to(base).as_posix()
                if exclude and _matches(relative, exclude):
                    continue
                if include and not _matches(relative, include):
                    continue
                collected.append(relative)
        return cls.from_paths(base, collected, entry_points=entry_points)

    @classmethod
    def from_paths(
        cls,
        root: Path | str,
        paths: Iterable[str | Path],
        *,
        entry_points: Sequence[str] = (),
    ) -> "IndexedScope":
        files = sorted({Path(path).as_posix() for path in paths})
        reachable = [path for path in files if entry_points and _matches(path, entry_points)]
        return cls(root=Path(root), files=files, entry_points=reachable)

    def read(self, path: str) -> str:
        candidate = self.root / path
        try:
            with candidate.open("r", encoding="utf-8", errors="replace") as handle:
                return handle.read(MAX_CONTENT_BYTES)
        except OSError:
            return ""

    def is_entry_point(self, path: str) -> bool:
        return path in self.entry_points


@dataclass(slots=True)
class CatalogEntry:
    """One pattern the analysis workers are asked to look for."""

    id: str
    title: str = ""
    triggers: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    severity: str = "medium"
    worker_class: Optional[str] = None
    checklist: List[str] = field(default_factory=list)
    patterns: List["re.Pattern[str]"] = field(default_factory=list, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        for keyword in self.keywords:
            try:
                self.patterns.append(re.compile(keyword, re.IGNORECASE))
            except re.error as error:
                raise ConfigError(f"Catalog entry '{self.id}' has an invalid keyword {keyword!r}: {error}") from error

    def matching_files(self, scope: IndexedScope) -> List[str]:
        candidates = [path for path in scope.files if not self.triggers or _matches(path, self.triggers)]
        if not self.patterns:
            return candidates if self.triggers else []
        return [
            path
            for path in candidates
            if any(expression.search(scope.read(path)) for expression in self.patterns)
        ]


def load_catalog(path: Path | str) -> List[CatalogEntry]:
    """Load catalog entries from a YAML list (or ``{entries: [...]}``)."""
    catalog_path = Path(path)
    if not catalog_path.exists():
        raise ConfigError(f"Catalog file not found: {catalog_path}")
    try:
        with catalog_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or []
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse catalog {catalog_path}: {error}") from error
    if isinstance(data, Mapping):
        data = data.get("entries") or []
    if not isinstance(data, list):
        raise ConfigError("Catalog must be a list of entries.")
    entries: List[CatalogEntry] = []
    for raw in data:
        if not isinstance(raw, Mapping) or not raw.get("id"):
            raise ConfigError(f"Catalog entry is missing an id: {raw!r}")
        entries.append(
            CatalogEntry(
                id=str(raw["id"]),
                title=str(raw.get("title") or ""),
                triggers=[str(item) for item in raw.get("triggers") or []],
                keywords=[str(item) for item in raw.get("keywords") or []],
                severity=str(raw.get("severity") or "medium").lower(),
                worker_class=raw.get("worker_class"),
                checklist=[str(item) for item in raw.get("checklist") or []],
            )
        )
    return entries


WorkItemSelector = Callable[[IndexedScope], List[WorkItem]]


def select_work_items(
    scope: IndexedScope,
    catalog: Sequence[CatalogEntry],
    *,
    phase: PhaseName | str,
    worker_class: str = "default",
    max_scope: int = DEFAULT_MAX_SCOPE,
) -> List[WorkItem]:
    """Create one work item per matching catalog entry, chunked by ``max_scope``."""
    phase_name = normalize_phase(phase)
    items: List[WorkItem] = []
    for entry in catalog:
        matched = entry.matching_files(scope)
        if not matched:
            continue
        chunks = [matched[start : start + max_scope] for start in range(0, len(matched), max_scope)]
        for index, chunk in enumerate(chunks, start=1):
            item_id = entry.id if len(chunks) == 1 else f"{entry.id}-p{index}"
            items.append(
                WorkItem(
                    id=item_id,
                    phase=phase_name,
                    worker_class=entry.worker_class or worker_class,
                    scope=chunk,
                    output_path=f"{phase_name.value}/{item_id}.md",
                    catalog_ids=[entry.id],
                    checklist_ids=list(entry.checklist),
                    metadata={"title": entry.title, "severity": entry.severity},
                )
            )
    LOGGER.info("Selected %d work item(s) for %s from %d catalog entries", len(items), phase_name.value, len(catalog))
    return items


def catalog_selector(
    catalog: Sequence[CatalogEntry],
    *,
    phase: PhaseName | str,
    worker_class: str = "default",
    max_scope: int = DEFAULT_MAX_SCOPE,
) -> WorkItemSelector:
    def _select(scope: IndexedScope) -> List[WorkItem]:
        return select_work_items(
            scope,
            catalog,
            phase=phase,
            worker_class=worker_class,
            max_scope=max_scope,
        )

    return _select


def partition_selector(
    *,
    phase: PhaseName | str,
    worker_class: str = "default",
    max_scope: int = DEFAULT_MAX_SCOPE,
) -> WorkItemSelector:
    """Selector that covers every indexed file in fixed-size chunks."""
    phase_name = normalize_phase(phase)

    def _select(scope: IndexedScope) -> List[WorkItem]:
        files = list(scope.files)
        items: List[WorkItem] = []
        for index, start in enumerate(range(0, len(files), max_scope), start=1):
            item_id = f"{phase_name.value}-p{index}"
            items.append(
                WorkItem(
                    id=item_id,
                    phase=phase_name,
                    worker_class=worker_class,
                    scope=files[start : start + max_scope],
                    output_path=f"{phase_name.value}/{item_id}.md",
                )
            )
        return items

    return _select


def single_item_selector(
    *,
    phase: PhaseName | str,
    worker_class: str = "default",
    references: Callable[[IndexedScope], List[str]] | None = None,
    metadata: Dict[str, Any] | None = None,
) -> WorkItemSelector:
    """Selector for phases that run one worker over a bounded reference list."""
    phase_name = normalize_phase(phase)

    def _select(scope: IndexedScope) -> List[WorkItem]:
        scope_refs = references(scope) if references is not None else []
        return [
            WorkItem(
                id=f"{phase_name.value}-main",
                phase=phase_name,
                worker_class=worker_class,
                scope=scope_refs,
                output_path=f"{phase_name.value}/{phase_name.value.upper()}.md",
                metadata=dict(metadata or {}),
            )
        ]

    return _select


__all__ = [
    "CatalogEntry",
    "DEFAULT_EXCLUDES",
    "IndexedScope",
    "WorkItemSelector",
    "catalog_selector",
    "load_catalog",
    "partition_selector",
    "select_work_items",
    "single_item_selector",
]
