"""Exception hierarchy shared by the orchestration runtime."""

from __future__ import annotations

from pathlib import Path


class RampartError(RuntimeError):
    """Base class for fatal orchestration errors."""


class ConfigError(RampartError):
    """Raised when the configuration file cannot be used."""


class InvalidTransitionError(RampartError):
    """Raised when a phase status change would violate phase ordering."""

    def __init__(self, phase: str, current: str, requested: str, message: str | None = None) -> None:
        self.phase = phase
        self.current = current
        self.requested = requested
        super().__init__(
            message or f"Cannot move phase '{phase}' from {current} to {requested}"
        )


class PrerequisiteError(InvalidTransitionError):
    """Raised when a phase is started before its predecessor is complete."""

    def __init__(self, phase: str, missing: str, missing_status: str) -> None:
        self.missing = missing
        super().__init__(
            phase,
            "pending",
            "in_progress",
            f"Phase '{phase}' requires '{missing}' to be complete (currently {missing_status})",
        )


class CorruptStateError(RampartError):
    """Raised when the persisted state document cannot be parsed.

    The orchestrator never reinitialises state on its own; an operator has to
    repair or remove the document.
    """

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"State document {path} is unreadable: {reason}")


class NoActiveRunError(RampartError):
    """Raised when an operation needs an active run and none exists."""


__all__ = [
    "ConfigError",
    "CorruptStateError",
    "InvalidTransitionError",
    "NoActiveRunError",
    "PrerequisiteError",
    "RampartError",
]
