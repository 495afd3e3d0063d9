"""Sandbox lifecycle coordination."""

from .coordinator import SandboxCoordinator, worktree_location
from .models import (
    CleanupResult,
    DownResult,
    MergeResult,
    SandboxExecResult,
    SandboxInfo,
    SandboxUpResult,
    SessionRecord,
)
from .state import SandboxStateFile, SandboxStateRecord

__all__ = [
    "CleanupResult",
    "DownResult",
    "MergeResult",
    "SandboxCoordinator",
    "SandboxExecResult",
    "SandboxInfo",
    "SandboxStateFile",
    "SandboxStateRecord",
    "SandboxUpResult",
    "SessionRecord",
    "worktree_location",
]
