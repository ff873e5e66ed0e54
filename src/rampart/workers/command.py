"""Worker that delegates each work item to an external command."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Mapping, Sequence

from .base import Worker, WorkerError, WorkerOutcome, WorkRequest, read_findings_sidecar

LOGGER = logging.getLogger(__name__)


class CommandWorker(Worker):
    """Run ``command`` once per work item.

    The argv template may reference ``{item_id}``, ``{phase}``,
    ``{worker_class}`` and ``{output}``. The full request is written to the
    process's stdin as JSON and also exposed through ``RAMPART_*``
    environment variables.
    """

    name = "command"

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            raise WorkerError("CommandWorker requires a non-empty command")
        self._command = [str(part) for part in command]
        self._cwd = Path(cwd) if cwd is not None else None
        self._env = dict(env or {})

    def _render(self, request: WorkRequest) -> list[str]:
        values = {
            "item_id": request.item.id,
            "phase": request.item.phase.value,
            "worker_class": request.item.worker_class,
            "output": request.output_path.as_posix(),
        }
        return [part.format(**values) for part in self._command]

    async def invoke(self, request: WorkRequest) -> WorkerOutcome:
        argv = self._render(request)
        if shutil.which(argv[0]) is None and not Path(argv[0]).exists():
            return WorkerOutcome.failed(f"Executable not available: {argv[0]}")

        env = os.environ.copy()
        env.update(self._env)
        env.update(
            {
                "RAMPART_ITEM_ID": request.item.id,
                "RAMPART_PHASE": request.item.phase.value,
                "RAMPART_WORKER_CLASS": request.item.worker_class,
                "RAMPART_OUTPUT": request.output_path.as_posix(),
                "RAMPART_APPEND": "1" if request.append else "0",
            }
        )
        request.output_path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(request.to_payload(), sort_keys=True).encode("utf-8")

        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(self._cwd) if self._cwd else None,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await process.communicate(payload)
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip() or stdout.decode(
                "utf-8", errors="replace"
            ).strip()
            first_line = message.splitlines()[0] if message else "no output"
            LOGGER.warning("Worker command for %s exited %s: %s", request.item.id, process.returncode, first_line)
            return WorkerOutcome.failed(f"exit {process.returncode}: {first_line}")

        if not request.output_path.exists():
            return WorkerOutcome.failed(f"worker produced no output at {request.output_path}")
        return WorkerOutcome(findings=read_findings_sidecar(request.output_path))


__all__ = ["CommandWorker"]
