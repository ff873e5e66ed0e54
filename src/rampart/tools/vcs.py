"""Minimal git helpers.

Only read operations are needed: the current revision and the change list
between two revisions that feeds the stacking delta.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Sequence

import subprocess

from ..errors import RampartError
from ..memory.schema import ChangeKind
from ..stacking import FileChange


class GitError(RampartError):
    """Raised when a git command fails or the repository cannot be used."""


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        try:
            process = subprocess.run(
                command,
                cwd=self.root,
                capture_output=True,
                text=False,
                check=False,
            )
        except FileNotFoundError as error:
            raise GitError("git executable not available") from error
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    # ------------------------------------------------------------- revisions
    def head_revision(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        head = result.stdout.strip()
        return head or None

    # ----------------------------------------------------------- change list
    def changed_files(self, base: str | None, head: str | None = None) -> List[FileChange]:
        """List file changes from ``base`` to ``head`` (or the working tree).

        A rename is reported as a deletion of the old path plus an addition of
        the new one, both carrying the rename's line count.
        """

        if not base:
            raise GitError("A base revision is required to list changes")
        revisions = [base] if head is None else [base, head]
        numstat = self._run_git(["diff", "--numstat", "-M", "-z", *revisions, "--"])
        name_status = self._run_git(["diff", "--name-status", "-M", "-z", *revisions, "--"])
        lines = _parse_numstat(numstat.stdout)

        changes: List[FileChange] = []
        tokens = name_status.stdout.split("\0")
        index = 0
        while index < len(tokens):
            status = tokens[index]
            index += 1
            if not status:
                continue
            code = status[0]
            if code in ("R", "C"):
                old, new = tokens[index], tokens[index + 1]
                index += 2
                if code == "R":
                    changes.append(FileChange(path=old, kind=ChangeKind.DELETED, lines_changed=lines.get(old, 0)))
                changes.append(FileChange(path=new, kind=ChangeKind.ADDED, lines_changed=lines.get(new, 0)))
                continue
            path = tokens[index]
            index += 1
            kind = {"A": ChangeKind.ADDED, "D": ChangeKind.DELETED}.get(code, ChangeKind.MODIFIED)
            changes.append(FileChange(path=path, kind=kind, lines_changed=lines.get(path, 0)))
        return changes


def _parse_numstat(payload: str) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    tokens = payload.split("\0")
    index = 0
    while index < len(tokens):
        entry = tokens[index]
        index += 1
        if not entry:
            continue
        parts = entry.split("\t")
        if len(parts) < 3:
            continue
        added, deleted, path = parts[0], parts[1], parts[2]
        # binary files report "-" for both counts
        total = (int(added) if added.isdigit() else 0) + (int(deleted) if deleted.isdigit() else 0)
        if path:
            counts[path] = total
            continue
        old, new = tokens[index], tokens[index + 1]
        index += 2
        counts[old] = total
        counts[new] = total
    return counts


__all__ = ["GitError", "GitRepository"]
