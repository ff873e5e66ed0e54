"""Convenience exports for worker implementations."""

from .base import Worker, WorkerError, WorkerOutcome, WorkRequest, read_findings_sidecar
from .command import CommandWorker
from .offline import OfflineWorker

__all__ = [
    "CommandWorker",
    "OfflineWorker",
    "Worker",
    "WorkerError",
    "WorkerOutcome",
    "WorkRequest",
    "read_findings_sidecar",
]
