"""Per-sandbox state persisted inside the worktree's private git directory."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..errors import StoreCorruptionError
from .models import SandboxState, SessionRecord

logger = logging.getLogger(__name__)

STATE_FILENAME = "sandbox-state.json"
_STATES = frozenset({"ready", "stopped", "conflicted"})


@dataclass(slots=True)
class SandboxStateRecord:
    state: SandboxState = "ready"
    sessions: list[SessionRecord] = field(default_factory=list)
    conflict_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "sessions": [
                {"session_id": s.session_id, "created_at": s.created_at, "task": s.task}
                for s in self.sessions
            ],
            "conflict_files": list(self.conflict_files),
        }


class SandboxStateFile:
    """Read and rewrite ``sandbox-state.json`` for one worktree.

    The file lives next to the worktree's ``HEAD`` in ``.git/worktrees/<name>``
    so it disappears when git removes the worktree.
    """

    def __init__(self, git_dir: Path) -> None:
        self._path = Path(git_dir) / STATE_FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> SandboxStateRecord:
        if not self._path.exists():
            return SandboxStateRecord()
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StoreCorruptionError(f"Sandbox state {self._path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise StoreCorruptionError(f"Sandbox state {self._path} must contain a JSON object")

        state = payload.get("state", "ready")
        if state not in _STATES:
            raise StoreCorruptionError(f"Sandbox state {self._path} has unknown state '{state}'")
        try:
            sessions = [SessionRecord.from_dict(item) for item in payload.get("sessions", [])]
        except (KeyError, TypeError) as exc:
            raise StoreCorruptionError(f"Sandbox state {self._path} has malformed sessions") from exc
        return SandboxStateRecord(
            state=state,
            sessions=sessions,
            conflict_files=[str(item) for item in payload.get("conflict_files", [])],
        )

    def save(self, record: SandboxStateRecord) -> None:
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(record.to_dict(), indent=2) + "\n", encoding="utf-8")
        tmp.replace(self._path)

    def set_state(self, state: SandboxState, *, conflict_files: list[str] | None = None) -> SandboxStateRecord:
        record = self.load()
        record.state = state
        record.conflict_files = list(conflict_files or [])
        self.save(record)
        logger.debug("Sandbox state changed", extra={"state_file": str(self._path), "state": state})
        return record

    def append_session(self, session_id: str, task: str | None = None) -> SessionRecord:
        record = self.load()
        session = SessionRecord(
            session_id=session_id,
            created_at=datetime.now(timezone.utc).isoformat(),
            task=task,
        )
        record.sessions.append(session)
        self.save(record)
        return session


__all__ = ["STATE_FILENAME", "SandboxStateFile", "SandboxStateRecord"]
