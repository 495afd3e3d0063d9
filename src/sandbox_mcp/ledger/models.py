"""Ledger record models for orchestrations, tasks and issues."""

from __future__ import annotations

from typing import Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

OrchestrationStatus = Literal["active", "completed", "failed"]
TaskStatus = Literal["pending", "in_progress", "done", "failed", "cancelled"]
IssueStatus = Literal["open", "in_progress", "resolved", "closed"]
IssuePriority = Literal["high", "medium", "low"]

ORCHESTRATION_STATUSES: tuple[str, ...] = get_args(OrchestrationStatus)
TASK_STATUSES: tuple[str, ...] = get_args(TaskStatus)
ISSUE_STATUSES: tuple[str, ...] = get_args(IssueStatus)
ISSUE_PRIORITIES: tuple[str, ...] = get_args(IssuePriority)

TASK_SUCCESS_STATUS = "done"
TERMINAL_TASK_STATUSES = frozenset({"done", "cancelled"})
TERMINAL_ISSUE_STATUSES = frozenset({"resolved", "closed"})
PRIORITY_ORDER = {priority: rank for rank, priority in enumerate(ISSUE_PRIORITIES)}


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


class LedgerRecord(BaseModel):
    """Base model persisted with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Orchestration(LedgerRecord):
    """A group of related sandbox tasks."""

    id: str
    description: str
    status: OrchestrationStatus = "active"
    created_at: str
    updated_at: str


class Task(LedgerRecord):
    """A unit of sandbox work, optionally depending on other tasks."""

    id: str
    orchestration_id: str
    title: str
    description: str
    status: TaskStatus = "pending"
    dependencies: list[str] = Field(default_factory=list)
    branch: str | None = None
    session_id: str | None = None
    review_session_id: str | None = None
    result: str | None = None
    created_at: str
    updated_at: str

    @field_validator("dependencies")
    @classmethod
    def _dedupe_dependencies(cls, value: list[str]) -> list[str]:
        return _unique(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class Issue(LedgerRecord):
    """A tracked defect or work item, linked to commits and tasks over time."""

    id: str
    title: str
    description: str
    status: IssueStatus = "open"
    priority: IssuePriority = "medium"
    labels: list[str] = Field(default_factory=list)
    linked_commits: list[str] = Field(default_factory=list)
    linked_tasks: list[str] = Field(default_factory=list)
    resolution: str | None = None
    source_file: str | None = None
    created_at: str
    updated_at: str

    @field_validator("labels")
    @classmethod
    def _dedupe_labels(cls, value: list[str]) -> list[str]:
        return _unique(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ISSUE_STATUSES


__all__ = [
    "ISSUE_PRIORITIES",
    "ISSUE_STATUSES",
    "Issue",
    "IssuePriority",
    "IssueStatus",
    "ORCHESTRATION_STATUSES",
    "Orchestration",
    "OrchestrationStatus",
    "PRIORITY_ORDER",
    "TASK_STATUSES",
    "TASK_SUCCESS_STATUS",
    "TERMINAL_ISSUE_STATUSES",
    "TERMINAL_TASK_STATUSES",
    "Task",
    "TaskStatus",
]
