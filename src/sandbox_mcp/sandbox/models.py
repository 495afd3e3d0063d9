"""Result records returned by the sandbox coordinator."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

SandboxState = Literal["ready", "stopped", "conflicted"]


@dataclass(slots=True)
class SessionRecord:
    session_id: str
    created_at: str
    task: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SessionRecord":
        return cls(
            session_id=str(payload["session_id"]),
            created_at=str(payload.get("created_at", "")),
            task=payload.get("task"),
        )


@dataclass(slots=True)
class SandboxUpResult:
    branch: str
    worktree_path: str
    container_id: str | None = None
    remote_user: str | None = None
    remote_workspace_folder: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SandboxExecResult:
    worktree_path: str
    exit_code: int
    session_id: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class MergeResult:
    """Outcome of a merge; conflicts and uncommitted work are reported here rather than raised."""

    success: bool
    branch: str
    target: str | None = None
    conflict_files: list[str] = field(default_factory=list)
    uncommitted_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class DownResult:
    branch: str
    worktree_path: str
    container_removed: bool = False
    worktree_removed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class CleanupResult:
    orphaned_branches: list[str] = field(default_factory=list)
    deleted_branches: list[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SandboxInfo:
    branch: str
    worktree_path: str
    head: str | None = None
    state: SandboxState = "ready"
    sessions: list[SessionRecord] = field(default_factory=list)
    conflict_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


__all__ = [
    "CleanupResult",
    "DownResult",
    "MergeResult",
    "SandboxExecResult",
    "SandboxInfo",
    "SandboxState",
    "SandboxUpResult",
    "SessionRecord",
]
