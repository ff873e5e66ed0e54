"""Persistence for run state and cross-run finding history."""

from .findings import FindingLedger
from .store import StateStore

__all__ = ["FindingLedger", "StateStore"]
