"""Configuration loading, tier presets and resolved runtime settings."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .budget import BudgetThresholds
from .errors import ConfigError
from .phases import PHASE_SEQUENCE, PhaseName
from .quality import MAX_ITEM_RETRIES, MAX_PHASE_RETRIES

DEFAULT_CONFIG_NAME = "rampart.yaml"

DEFAULT_WORKER_CLASSES: Dict[str, str] = {
    PhaseName.SCAN.value: "fast",
    PhaseName.ANALYZE.value: "balanced",
    PhaseName.STRATEGIZE.value: "thorough",
    PhaseName.INVESTIGATE.value: "balanced",
    PhaseName.REPORT.value: "thorough",
    PhaseName.VERIFY.value: "balanced",
}

TIER_PRESETS: Dict[str, Dict[str, Any]] = {
    "quick": {"max_concurrency": 8, "worker_classes": {}},
    "standard": {"max_concurrency": 5, "worker_classes": {}},
    "deep": {
        "max_concurrency": 3,
        "worker_classes": {
            PhaseName.ANALYZE.value: "thorough",
            PhaseName.INVESTIGATE.value: "thorough",
        },
    },
}

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "root": ".",
    },
    "run": {
        "tier": "standard",
        "max_concurrency": None,
        "worker_timeout_seconds": 900,
    },
    "workers": {
        "command": [],
        "classes": {},
    },
    "scope": {
        "include": [],
        "exclude": [],
        "entry_points": ["**/main.*", "**/routes/**", "**/api/**", "**/handlers/**"],
    },
    "budget": {},
    "quality": {
        "threshold": 0.7,
        "max_item_retries": 1,
        "max_phase_retries": 3,
        "validator_group_size": 10,
        "min_output_chars": 200,
        "required_sections": ["## Summary"],
    },
    "coverage": {
        "enabled": True,
    },
    "paths": {
        "audit": ".audit",
        "history": ".audit-history",
        "catalog": "catalog.yaml",
    },
}


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def load_config(config_path: Path | str) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return data


def write_config(config_path: Path | str, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Config section '{name}' must be a mapping.")
    return value


@dataclass(slots=True)
class OrchestratorSettings:
    """Resolved key/value settings with documented defaults."""

    root: Path = field(default_factory=Path.cwd)
    tier: str = "standard"
    max_concurrency: Optional[int] = None
    worker_timeout_seconds: float = 900.0
    worker_classes: Dict[str, str] = field(default_factory=dict)
    worker_command: List[str] = field(default_factory=list)
    budget: BudgetThresholds = field(default_factory=BudgetThresholds)
    quality_threshold: float = 0.7
    max_item_retries: int = 1
    max_phase_retries: int = 3
    validator_group_size: int = 10
    min_output_chars: int = 200
    required_sections: List[str] = field(default_factory=lambda: ["## Summary"])
    coverage_enabled: bool = True
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    entry_points: List[str] = field(default_factory=list)
    audit_dir: Path = Path(".audit")
    history_dir: Path = Path(".audit-history")
    catalog_path: Optional[Path] = None

    @property
    def concurrency_limit(self) -> int:
        """Upper bound on batch size: explicit override, else the tier preset."""
        if self.max_concurrency:
            return max(int(self.max_concurrency), 1)
        preset = TIER_PRESETS.get(self.tier, TIER_PRESETS["standard"])
        return int(preset["max_concurrency"])

    def worker_class_for(self, phase: PhaseName | str) -> str:
        key = phase.value if isinstance(phase, PhaseName) else str(phase)
        if key in self.worker_classes:
            return self.worker_classes[key]
        preset = TIER_PRESETS.get(self.tier, TIER_PRESETS["standard"])
        return preset["worker_classes"].get(key) or DEFAULT_WORKER_CLASSES.get(key, "default")

    def resolved_worker_classes(self) -> Dict[str, str]:
        return {phase.value: self.worker_class_for(phase) for phase in PHASE_SEQUENCE}

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, base_dir: Path | str | None = None) -> "OrchestratorSettings":
        base = Path(base_dir) if base_dir is not None else Path.cwd()
        project = _section(config, "project")
        run = _section(config, "run")
        workers = _section(config, "workers")
        scope = _section(config, "scope")
        quality = _section(config, "quality")
        coverage = _section(config, "coverage")
        paths = _section(config, "paths")

        root = Path(project.get("root") or ".")
        if not root.is_absolute():
            root = (base / root).resolve()

        tier = str(run.get("tier") or "standard").strip().lower()
        if tier not in TIER_PRESETS:
            valid = ", ".join(sorted(TIER_PRESETS))
            raise ConfigError(f"Unknown tier '{tier}'. Expected one of: {valid}")

        def _path(value: Any, default: str) -> Path:
            candidate = Path(value or default)
            return candidate if candidate.is_absolute() else root / candidate

        catalog_value = paths.get("catalog")
        catalog_path = _path(catalog_value, "catalog.yaml") if catalog_value else None
        command = workers.get("command") or []
        if isinstance(command, str):
            command = command.split()

        try:
            item_retries = int(quality.get("max_item_retries", MAX_ITEM_RETRIES))
            phase_retries = int(quality.get("max_phase_retries", MAX_PHASE_RETRIES))
        except (TypeError, ValueError) as error:
            raise ConfigError(f"Invalid configuration value: {error}") from error
        if not 0 <= item_retries <= MAX_ITEM_RETRIES:
            raise ConfigError(f"quality.max_item_retries must be between 0 and {MAX_ITEM_RETRIES}, got {item_retries}")
        if not 0 <= phase_retries <= MAX_PHASE_RETRIES:
            raise ConfigError(f"quality.max_phase_retries must be between 0 and {MAX_PHASE_RETRIES}, got {phase_retries}")

        try:
            return cls(
                root=root,
                tier=tier,
                max_concurrency=run.get("max_concurrency"),
                worker_timeout_seconds=float(run.get("worker_timeout_seconds") or 900),
                worker_classes={str(key): str(value) for key, value in (workers.get("classes") or {}).items()},
                worker_command=[str(part) for part in command],
                budget=BudgetThresholds.from_mapping(_section(config, "budget")),
                quality_threshold=float(quality.get("threshold", 0.7)),
                max_item_retries=item_retries,
                max_phase_retries=phase_retries,
                validator_group_size=int(quality.get("validator_group_size", 10)),
                min_output_chars=int(quality.get("min_output_chars", 200)),
                required_sections=[str(item) for item in quality.get("required_sections") or []],
                coverage_enabled=bool(coverage.get("enabled", True)),
                include=[str(item) for item in scope.get("include") or []],
                exclude=[str(item) for item in scope.get("exclude") or []],
                entry_points=[str(item) for item in scope.get("entry_points") or []],
                audit_dir=_path(paths.get("audit"), ".audit"),
                history_dir=_path(paths.get("history"), ".audit-history"),
                catalog_path=catalog_path,
            )
        except (TypeError, ValueError) as error:
            raise ConfigError(f"Invalid configuration value: {error}") from error


__all__ = [
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "DEFAULT_WORKER_CLASSES",
    "OrchestratorSettings",
    "TIER_PRESETS",
    "copy_config_template",
    "load_config",
    "write_config",
]
