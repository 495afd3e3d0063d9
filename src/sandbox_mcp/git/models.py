"""Data models for git worktree operations."""

from __future__ import annotations

from dataclasses import dataclass, field

DETACHED_BRANCH = "(detached)"


@dataclass(slots=True)
class WorktreeInfo:
    path: str
    branch: str | None = None
    head: str | None = None
    is_bare: bool = False
    is_detached: bool = False
    is_prunable: bool = False


@dataclass(slots=True)
class RebaseResult:
    success: bool
    conflict_files: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DiffResult:
    files: list[str]
    stats: str
    diff: str


__all__ = ["DETACHED_BRANCH", "DiffResult", "RebaseResult", "WorktreeInfo"]
