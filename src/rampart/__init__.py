"""Rampart: durable, batched orchestration of multi-phase audit runs."""

from .config import OrchestratorSettings
from .errors import (
    ConfigError,
    CorruptStateError,
    InvalidTransitionError,
    NoActiveRunError,
    PrerequisiteError,
    RampartError,
)
from .memory import FindingLedger, StateStore
from .orchestrator import Orchestrator
from .phases import PHASE_SEQUENCE, PhaseName
from .scheduler import BatchScheduler, PhaseResult

__all__ = [
    "BatchScheduler",
    "ConfigError",
    "CorruptStateError",
    "FindingLedger",
    "InvalidTransitionError",
    "NoActiveRunError",
    "Orchestrator",
    "OrchestratorSettings",
    "PHASE_SEQUENCE",
    "PhaseName",
    "PhaseResult",
    "PrerequisiteError",
    "RampartError",
    "StateStore",
]
