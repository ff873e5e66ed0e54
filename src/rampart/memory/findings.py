"""Append-only history of findings across stacked runs."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from pydantic import ValidationError

from ..errors import CorruptStateError
from .schema import EvolutionTag, Finding, utc_now

LEDGER_FILE_NAME = "findings.jsonl"
LOGGER = logging.getLogger(__name__)

_CLOSED_TAGS = {EvolutionTag.RESOLVED, EvolutionTag.RESOLVED_BY_REMOVAL}


@dataclass(slots=True)
class LedgerEntry:
    """One immutable line of the ledger."""

    run_number: int
    recorded_at: str
    finding: Finding

    def to_json(self) -> str:
        return json.dumps(
            {
                "run_number": self.run_number,
                "recorded_at": self.recorded_at,
                "finding": self.finding.model_dump(mode="json"),
            },
            sort_keys=True,
        )


class FindingLedger:
    """JSON-lines log keyed by finding id.

    Entries are only ever appended; ``latest`` projects the most recent entry
    per finding so archived runs never need to be rewritten.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    @classmethod
    def in_history(cls, history_dir: Path | str) -> "FindingLedger":
        return cls(Path(history_dir) / LEDGER_FILE_NAME)

    def append(self, findings: Iterable[Finding], *, run_number: int) -> int:
        """Append ``findings`` for ``run_number`` and return how many were written."""
        timestamp = utc_now().isoformat()
        lines = [
            LedgerEntry(run_number=run_number, recorded_at=timestamp, finding=finding).to_json()
            for finding in findings
        ]
        if not lines:
            return 0
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write("\n".join(lines) + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        LOGGER.debug("Appended %d finding(s) for run #%d to %s", len(lines), run_number, self.path)
        return len(lines)

    def entries(self) -> Iterator[LedgerEntry]:
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                text = line.strip()
                if not text:
                    continue
                try:
                    payload = json.loads(text)
                    finding = Finding.model_validate(payload["finding"])
                except (json.JSONDecodeError, KeyError, TypeError, ValidationError) as error:
                    raise CorruptStateError(self.path, f"line {line_number}: {error}") from error
                yield LedgerEntry(
                    run_number=int(payload.get("run_number") or 0),
                    recorded_at=str(payload.get("recorded_at") or ""),
                    finding=finding,
                )

    def history(self, finding_id: str) -> List[LedgerEntry]:
        return [entry for entry in self.entries() if entry.finding.id == finding_id]

    def latest(self) -> Dict[str, Finding]:
        """Return the most recent record for every finding id."""
        projection: Dict[str, Finding] = {}
        for entry in self.entries():
            projection[entry.finding.id] = entry.finding
        return projection

    def latest_tag(self, finding_id: str) -> Optional[EvolutionTag]:
        finding = self.latest().get(finding_id)
        return finding.evolution if finding else None

    def open_findings(self) -> List[Finding]:
        """Findings whose latest record is still being tracked."""
        return [
            finding
            for finding in self.latest().values()
            if finding.active and finding.evolution not in _CLOSED_TAGS
        ]


__all__ = ["FindingLedger", "LEDGER_FILE_NAME", "LedgerEntry"]
