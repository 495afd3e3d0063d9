"""Git CLI orchestration utilities."""

from .models import DETACHED_BRANCH, DiffResult, RebaseResult, WorktreeInfo
from .runner import GitResult, GitRunner
from .worktree import WorktreeManager, generate_branch_name, parse_worktree_porcelain

__all__ = [
    "DETACHED_BRANCH",
    "DiffResult",
    "GitResult",
    "GitRunner",
    "RebaseResult",
    "WorktreeInfo",
    "WorktreeManager",
    "generate_branch_name",
    "parse_worktree_porcelain",
]
