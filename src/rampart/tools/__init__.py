"""Tool integrations used by the orchestrator."""

from .vcs import GitError, GitRepository

__all__ = ["GitError", "GitRepository"]
