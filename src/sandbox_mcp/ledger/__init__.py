"""Durable orchestration, task and issue records."""

from .document import JsonDocument
from .issues import DEFAULT_ISSUE_DIRNAME, ImportSummary, IssueStore, issue_store_path
from .models import (
    ISSUE_PRIORITIES,
    ISSUE_STATUSES,
    ORCHESTRATION_STATUSES,
    TASK_STATUSES,
    Issue,
    Orchestration,
    Task,
)
from .orchestrations import OrchestratorStore, find_cycles, task_store_path

__all__ = [
    "DEFAULT_ISSUE_DIRNAME",
    "ISSUE_PRIORITIES",
    "ISSUE_STATUSES",
    "ImportSummary",
    "Issue",
    "IssueStore",
    "JsonDocument",
    "ORCHESTRATION_STATUSES",
    "Orchestration",
    "OrchestratorStore",
    "TASK_STATUSES",
    "Task",
    "find_cycles",
    "issue_store_path",
    "task_store_path",
]
