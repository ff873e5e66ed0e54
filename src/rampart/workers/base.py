"""Worker invocation contract shared by all worker implementations."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..memory.schema import Finding, ItemStatus, WorkItem, WriteMode

LOGGER = logging.getLogger(__name__)

FINDINGS_SIDECAR_SUFFIX = ".findings.json"


class WorkerError(RuntimeError):
    """Raised by a worker when an invocation cannot be completed."""


@dataclass(slots=True)
class WorkRequest:
    """Everything a worker needs for one invocation."""

    item: WorkItem
    output_path: Path
    feedback: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def append(self) -> bool:
        """Whether the worker must extend an existing output instead of creating one."""
        return self.item.write_mode == WriteMode.APPEND or self.item.retry_count > 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "item_id": self.item.id,
            "phase": self.item.phase.value,
            "worker_class": self.item.worker_class,
            "scope": list(self.item.scope),
            "output_path": self.output_path.as_posix(),
            "append": self.append,
            "retry": self.item.retry_count,
            "feedback": self.feedback,
            "context": self.context,
            "metadata": self.item.metadata,
        }


@dataclass(slots=True)
class WorkerOutcome:
    """Terminal result reported by a worker."""

    status: ItemStatus = ItemStatus.SUCCEEDED
    error: Optional[str] = None
    findings: List[Finding] = field(default_factory=list)

    @classmethod
    def failed(cls, error: str) -> "WorkerOutcome":
        return cls(status=ItemStatus.FAILED, error=error)

    @property
    def ok(self) -> bool:
        return self.status == ItemStatus.SUCCEEDED


class Worker(ABC):
    """Black-box analysis worker: bounded input in, artifact out."""

    name = "worker"

    @abstractmethod
    async def invoke(self, request: WorkRequest) -> WorkerOutcome:
        """Run one work item and report its terminal status."""


def read_findings_sidecar(output_path: Path) -> List[Finding]:
    """Load findings a worker wrote next to its output artifact."""
    sidecar = output_path.with_name(output_path.name + FINDINGS_SIDECAR_SUFFIX)
    if not sidecar.exists():
        return []
    try:
        payload = json.loads(sidecar.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise WorkerError(f"Unreadable findings sidecar {sidecar}: {error}") from error
    if isinstance(payload, dict):
        payload = payload.get("findings") or []
    if not isinstance(payload, list):
        raise WorkerError(f"Findings sidecar {sidecar} must contain a list")
    findings: List[Finding] = []
    for entry in payload:
        try:
            findings.append(Finding.model_validate(entry))
        except ValidationError as error:
            raise WorkerError(f"Invalid finding in {sidecar}: {error}") from error
    return findings


__all__ = [
    "FINDINGS_SIDECAR_SUFFIX",
    "Worker",
    "WorkerError",
    "WorkerOutcome",
    "WorkRequest",
    "read_findings_sidecar",
]
