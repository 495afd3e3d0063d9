"""Issue tracker ledger with markdown import and archival."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from pydantic import ValidationError

from ..errors import NotFoundError, StoreCorruptionError
from .document import JsonDocument
from .models import PRIORITY_ORDER, Issue

logger = logging.getLogger(__name__)

ISSUES_FILENAME = "issues.json"
DEFAULT_ISSUE_DIRNAME = "issue-tracker"
RESOLVED_DIRNAME = "resolved"

_ISSUE_FILE = re.compile(r"^(\d{3})-.*\.md$")
_TITLE = re.compile(r"^# (.+)$", re.MULTILINE)
_PRIORITY = re.compile(r"\*\*Priority:\*\* (High|Medium|Low)", re.IGNORECASE)
_CATEGORY = re.compile(r"\*\*Category:\*\* (.+)$", re.MULTILINE)


def _parse_issue(raw: Any) -> Issue:
    try:
        return Issue.model_validate(raw)
    except ValidationError as exc:
        raise StoreCorruptionError(f"Malformed issue record: {exc}") from exc


@dataclass(slots=True)
class ImportSummary:
    """Counts reported by :meth:`IssueStore.import_markdown`."""

    imported: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    scanned: int = 0


class IssueStore:
    """Persist issues in a flat JSON document keyed by issue id."""

    def __init__(self, path: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._document = JsonDocument(path, sections=("issues",))
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def path(self) -> Path:
        return self._document.path

    def _now(self) -> str:
        return self._clock().isoformat()

    def create_issue(
        self,
        title: str,
        description: str,
        *,
        id: str | None = None,
        priority: str = "medium",
        labels: Iterable[str] | None = None,
        source_file: str | None = None,
    ) -> Issue:
        timestamp = self._now()
        with self._document.transaction() as data:
            issue_id = id or str(uuid.uuid4())
            if issue_id in data["issues"]:
                raise ValueError(f"Issue '{issue_id}' already exists")
            issue = Issue(
                id=issue_id,
                title=title,
                description=description,
                priority=priority,
                labels=list(labels or []),
                source_file=source_file,
                created_at=timestamp,
                updated_at=timestamp,
            )
            data["issues"][issue.id] = issue.to_document()

        logger.info("Created issue", extra={"issue_id": issue.id, "priority": issue.priority})
        return issue

    def get_issue(self, issue_id: str) -> Issue | None:
        raw = self._document.read()["issues"].get(issue_id)
        return _parse_issue(raw) if raw is not None else None

    def list_issues(
        self,
        *,
        status: str | None = None,
        priority: str | None = None,
        label: str | None = None,
    ) -> list[Issue]:
        """Filter issues, highest priority first and oldest first within a priority."""

        issues = [_parse_issue(raw) for raw in self._document.read()["issues"].values()]
        if status:
            issues = [issue for issue in issues if issue.status == status]
        if priority:
            issues = [issue for issue in issues if issue.priority == priority]
        if label:
            issues = [issue for issue in issues if label in issue.labels]
        issues.sort(key=lambda issue: (PRIORITY_ORDER[issue.priority], issue.created_at))
        return issues

    def update_issue(
        self,
        issue_id: str,
        *,
        status: str | None = None,
        priority: str | None = None,
        labels: Iterable[str] | None = None,
        resolution: str | None = None,
        linked_commits: Iterable[str] | None = None,
        linked_tasks: Iterable[str] | None = None,
        source_file: str | None = None,
    ) -> Issue:
        """Apply field updates.

        ``labels`` replaces the existing list; ``linked_commits`` and
        ``linked_tasks`` are appended to what is already recorded.
        """

        with self._document.transaction() as data:
            raw = data["issues"].get(issue_id)
            if raw is None:
                raise NotFoundError(f"Issue not found: {issue_id}")
            current = _parse_issue(raw).model_dump()

            if status is not None:
                current["status"] = status
            if priority is not None:
                current["priority"] = priority
            if labels is not None:
                current["labels"] = list(labels)
            if resolution is not None:
                current["resolution"] = resolution
            if linked_commits is not None:
                current["linked_commits"] = [*current["linked_commits"], *linked_commits]
            if linked_tasks is not None:
                current["linked_tasks"] = [*current["linked_tasks"], *linked_tasks]
            if source_file is not None:
                current["source_file"] = source_file
            current["updated_at"] = self._now()

            issue = Issue.model_validate(current)
            data["issues"][issue_id] = issue.to_document()

        logger.info("Updated issue", extra={"issue_id": issue_id, "status": issue.status})
        return issue

    def import_markdown(self, directory: Path) -> ImportSummary:
        """Create issues from ``NNN-slug.md`` files, skipping ids already tracked.

        Raises :class:`NotFoundError` when ``directory`` does not exist.
        """

        directory = Path(directory)
        if not directory.is_dir():
            raise NotFoundError(f"Directory not found: {directory}")

        summary = ImportSummary()
        for path in sorted(directory.iterdir()):
            match = _ISSUE_FILE.match(path.name)
            if match is None or not path.is_file():
                continue
            summary.scanned += 1

            issue_id = match.group(1)
            if self.get_issue(issue_id) is not None:
                summary.skipped.append(issue_id)
                continue

            content = path.read_text(encoding="utf-8")
            title_match = _TITLE.search(content)
            priority_match = _PRIORITY.search(content)
            category_match = _CATEGORY.search(content)

            self.create_issue(
                title_match.group(1).strip() if title_match else path.name,
                content,
                id=issue_id,
                priority=priority_match.group(1).lower() if priority_match else "medium",
                labels=[category_match.group(1).strip()] if category_match else [],
                source_file=str(path.resolve()),
            )
            summary.imported.append(issue_id)

        logger.info(
            "Imported markdown issues",
            extra={
                "directory": str(directory),
                "imported": len(summary.imported),
                "skipped": len(summary.skipped),
            },
        )
        return summary

    def archive_source_file(self, issue_id: str) -> Path | None:
        """Append a resolution section to the issue's markdown and move it under ``resolved/``.

        Returns the new location, or ``None`` when the issue has no source
        file on disk. Filesystem errors propagate as :class:`OSError`.
        """

        issue = self.get_issue(issue_id)
        if issue is None:
            raise NotFoundError(f"Issue not found: {issue_id}")
        if not issue.source_file:
            return None
        source = Path(issue.source_file)
        if not source.is_file():
            return None

        section = ["", "## Resolution", "", "**Status:** Resolved", f"**Date:** {issue.updated_at}"]
        if issue.resolution:
            section.extend(["", issue.resolution])
        if issue.linked_commits:
            section.extend(["", f"**Commits:** {', '.join(issue.linked_commits)}"])
        if issue.linked_tasks:
            section.extend(["", f"**Tasks:** {', '.join(issue.linked_tasks)}"])
        section.append("")

        content = source.read_text(encoding="utf-8").rstrip() + "\n" + "\n".join(section)
        source.write_text(content, encoding="utf-8")

        destination = source.parent / RESOLVED_DIRNAME / source.name
        destination.parent.mkdir(parents=True, exist_ok=True)
        source.replace(destination)
        self.update_issue(issue_id, source_file=str(destination))

        logger.info("Archived issue source", extra={"issue_id": issue_id, "destination": str(destination)})
        return destination


def issue_store_path(git_root: Path, ledger_dirname: str = ".orchestrator") -> Path:
    return Path(git_root) / ledger_dirname / ISSUES_FILENAME


__all__ = ["DEFAULT_ISSUE_DIRNAME", "ImportSummary", "IssueStore", "issue_store_path"]
