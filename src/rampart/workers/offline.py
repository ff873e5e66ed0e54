"""Offline worker that writes deterministic placeholder artifacts."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from .base import Worker, WorkerOutcome, WorkRequest

DEFAULT_SECTIONS = ("## Summary", "## Scope", "## Observations")


class OfflineWorker(Worker):
    """Stand-in worker for dry runs and tests; never reports findings."""

    name = "offline"

    def __init__(self, sections: Sequence[str] = DEFAULT_SECTIONS) -> None:
        self._sections = tuple(sections)

    def render(self, request: WorkRequest) -> str:
        item = request.item
        lines = [
            f"# {item.phase.value}: {item.id}",
            "",
            f"Generated offline at {datetime.now(timezone.utc).isoformat()} by worker class {item.worker_class}.",
            "",
        ]
        for section in self._sections:
            lines.append(section)
            if section.lower().endswith("scope"):
                lines.extend(f"- {reference}" for reference in item.scope or ["(no references)"])
            else:
                lines.append("Offline placeholder; no analysis performed.")
            lines.append("")
        if request.feedback:
            lines.extend(["## Revision notes", request.feedback, ""])
        return "\n".join(lines)

    async def invoke(self, request: WorkRequest) -> WorkerOutcome:
        request.output_path.parent.mkdir(parents=True, exist_ok=True)
        body = self.render(request)
        mode = "a" if request.append and request.output_path.exists() else "w"
        with request.output_path.open(mode, encoding="utf-8") as handle:
            if mode == "a":
                handle.write("\n")
            handle.write(body)
        return WorkerOutcome()


__all__ = ["DEFAULT_SECTIONS", "OfflineWorker"]
