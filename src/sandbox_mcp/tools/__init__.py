"""Tool registration for Sandbox MCP."""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from fastmcp import Context, FastMCP

from ..config import SandboxSettings
from ..errors import NotFoundError, StoreCorruptionError
from ..ledger import (
    DEFAULT_ISSUE_DIRNAME,
    IssueStore,
    OrchestratorStore,
    issue_store_path,
    task_store_path,
)
from ..ledger.models import (
    IssuePriority,
    IssueStatus,
    OrchestrationStatus,
    Task,
    TaskStatus,
)
from ..sandbox import SandboxCoordinator

logger = logging.getLogger(__name__)

HEARTBEAT_MESSAGE = "Working..."
CONFLICT_GUIDANCE = (
    "The rebase is in progress. Use sandbox_exec to have the agent resolve the conflicts "
    "in the listed files and stage them, then retry sandbox_merge to continue the rebase."
)
UNCOMMITTED_GUIDANCE = (
    "The sandbox has uncommitted changes in the listed files. Nothing was merged. "
    "Commit or discard them inside the sandbox, then retry sandbox_merge."
)


@dataclass(slots=True)
class ToolHandles:
    sandbox_up: Any
    sandbox_exec: Any
    sandbox_down: Any
    sandbox_merge: Any
    sandbox_list: Any
    sandbox_cleanup: Any
    sandbox_diff: Any
    generate_session_id: Any
    orchestration_create: Any
    orchestration_list: Any
    orchestration_update: Any
    task_create: Any
    task_update: Any
    task_list: Any
    task_get: Any
    task_cycles: Any
    issue_create: Any
    issue_list: Any
    issue_get: Any
    issue_update: Any
    issue_import: Any


class ProgressNotifier:
    """Turn streamed output lines into MCP progress notifications.

    A heartbeat fires every ``interval`` seconds without output so clients
    with request timeouts keep waiting. Notification failures are logged and
    otherwise ignored.
    """

    def __init__(self, context: Context | None, interval: float) -> None:
        self._context = context
        self._interval = interval
        self._tick = 0
        self._last_sent = 0.0
        self._heartbeat: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "ProgressNotifier":
        if self._context is not None:
            self._last_sent = asyncio.get_running_loop().time()
            self._heartbeat = asyncio.create_task(self._beat())
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat

    @property
    def ticks(self) -> int:
        return self._tick

    async def _beat(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self._interval)
            if loop.time() - self._last_sent >= self._interval:
                await self.send(HEARTBEAT_MESSAGE)

    async def send(self, message: str) -> None:
        if self._context is None:
            return
        self._tick += 1
        self._last_sent = asyncio.get_running_loop().time()
        try:
            await self._context.report_progress(progress=self._tick, total=None, message=message)
        except Exception as exc:
            logger.debug("Progress notification failed", extra={"error": str(exc)})

    async def on_output(self, line: str) -> None:
        await self.send(line)


def _task_summary(task: Task) -> dict[str, Any]:
    return {"id": task.id, "title": task.title, "status": task.status, "branch": task.branch}


def register_tools(
    server: FastMCP,
    *,
    settings: SandboxSettings,
    coordinator: SandboxCoordinator,
) -> ToolHandles:
    """Register the sandbox, orchestration and issue tools on the server."""

    async def _git_root(directory: str) -> Path:
        return await coordinator.worktrees.git_root(directory)

    async def _task_store(directory: str) -> OrchestratorStore:
        return OrchestratorStore(task_store_path(await _git_root(directory), settings.ledger_dirname))

    async def _issue_store(directory: str) -> IssueStore:
        return IssueStore(issue_store_path(await _git_root(directory), settings.ledger_dirname))

    def _progress(context: Context | None) -> ProgressNotifier:
        return ProgressNotifier(context, settings.progress_interval)

    # Sandboxes ----------------------------------------------------------

    async def _sandbox_up(
        dir: str,
        branch: str | None = None,
        base: str = "HEAD",
        worktree_dir: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create a sandbox worktree and start its dev container."""

        async with _progress(context) as progress:
            result = await coordinator.up(
                dir,
                branch=branch,
                base=base,
                worktree_dir=worktree_dir,
                on_output=progress.on_output,
            )

        _emit_log(
            context,
            "info",
            "Sandbox created",
            extra={"branch": result.branch, "worktree": result.worktree_path},
        )
        return result.to_dict()

    async def _sandbox_exec(
        dir: str,
        branch: str,
        task: str,
        session_id: str | None = None,
        timeout: float | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run the agent with a task inside an existing sandbox."""

        async with _progress(context) as progress:
            result = await coordinator.exec(
                dir,
                branch,
                task,
                session_id=session_id,
                on_output=progress.on_output,
                timeout=timeout,
            )

        _emit_log(
            context,
            "info",
            "Sandbox exec finished",
            extra={"branch": branch, "exit_code": result.exit_code, "session_id": result.session_id},
        )
        return {"branch": branch, **result.to_dict()}

    async def _sandbox_down(
        dir: str,
        branch: str,
        remove_worktree: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Stop a sandbox's container, optionally removing its worktree and branch."""

        result = await coordinator.down(dir, branch, container_only=not remove_worktree)
        _emit_log(
            context,
            "info",
            "Sandbox stopped",
            extra={"branch": branch, "worktree_removed": result.worktree_removed},
        )
        return result.to_dict()

    async def _sandbox_merge(dir: str, branch: str, context: Context | None = None) -> dict[str, Any]:
        """Rebase the sandbox onto the current branch and fast-forward it."""

        advisory: dict[str, Any] = {}
        try:
            store = await _task_store(dir)
            task = store.find_task_by_branch(branch)
            if task is not None:
                advisory["task"] = _task_summary(task)
                advisory["unmet_dependencies"] = [
                    _task_summary(dep) for dep in store.get_unmet_dependencies(task.id)
                ]
        except StoreCorruptionError as exc:
            _emit_log(
                context,
                "warning",
                "Task ledger unreadable; merging without task context",
                extra={"branch": branch, "error": str(exc)},
            )
            advisory["advisory_error"] = str(exc)

        async with _progress(context):
            result = await coordinator.merge(dir, branch)

        payload = result.to_dict()
        if result.uncommitted_files:
            payload["message"] = UNCOMMITTED_GUIDANCE
        elif not result.success:
            payload["message"] = CONFLICT_GUIDANCE
        payload.update(advisory)

        _emit_log(
            context,
            "info" if result.success else "warning",
            "Sandbox merge finished" if result.success else "Sandbox merge did not complete",
            extra={
                "branch": branch,
                "conflict_files": result.conflict_files,
                "uncommitted_files": result.uncommitted_files,
            },
        )
        return payload

    async def _sandbox_list(dir: str, context: Context | None = None) -> list[dict[str, Any]]:
        """List live sandboxes with their state and session history."""

        sandboxes = [info.to_dict() for info in await coordinator.list_sandboxes(dir)]
        _emit_log(context, "debug", "Listed sandboxes", extra={"count": len(sandboxes)})
        return sandboxes

    async def _sandbox_cleanup(
        dir: str,
        dry_run: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Delete orphaned sandbox branches not referenced by a live task."""

        store = await _task_store(dir)
        protected = {task.branch for task in store.list_tasks() if task.branch and not task.is_terminal}
        result = await coordinator.cleanup(dir, dry_run=dry_run, protected_branches=protected)
        _emit_log(
            context,
            "info",
            "Sandbox cleanup finished",
            extra={"orphaned": len(result.orphaned_branches), "deleted": len(result.deleted_branches)},
        )
        return result.to_dict()

    async def _sandbox_diff(
        dir: str,
        branch: str,
        base: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Show files, stat and patch changed on a sandbox branch."""

        diff = await coordinator.diff(dir, branch, base=base)
        return {"branch": branch, "files": diff.files, "stats": diff.stats, "diff": diff.diff}

    def _generate_session_id() -> dict[str, str]:
        return {"session_id": str(uuid4())}

    tool_up = server.tool(
        name="sandbox_up",
        description=(
            "Create a new sandbox (git worktree + dev container) on its own branch. "
            "Use sandbox_exec afterwards to run the agent with a task."
        ),
    )(_sandbox_up)
    tool_exec = server.tool(
        name="sandbox_exec",
        description=(
            "Run the agent with a task in an existing sandbox, starting its container if needed. "
            "Reuse a session_id to continue an earlier conversation."
        ),
    )(_sandbox_exec)
    tool_down = server.tool(
        name="sandbox_down",
        description=(
            "Stop a sandbox's container. The worktree and branch are kept unless "
            "remove_worktree is true."
        ),
    )(_sandbox_down)
    tool_merge = server.tool(
        name="sandbox_merge",
        description=(
            "Rebase a sandbox branch onto the main checkout's current branch and fast-forward it, "
            "then tear the sandbox down. Conflicts are reported and leave the sandbox in place."
        ),
    )(_sandbox_merge)
    tool_list = server.tool(
        name="sandbox_list",
        description="List active sandboxes (worktrees) for a git repository.",
    )(_sandbox_list)
    tool_cleanup = server.tool(
        name="sandbox_cleanup",
        description="Find and delete orphaned sandbox branches. Use dry_run to only report them.",
    )(_sandbox_cleanup)
    tool_diff = server.tool(
        name="sandbox_diff",
        description="Show the changes made on a sandbox branch.",
    )(_sandbox_diff)
    tool_session = server.tool(
        name="generate_session_id",
        description="Generate a new session id for use with sandbox_exec.",
    )(_generate_session_id)

    # Orchestrations and tasks ---------------------------------------------

    async def _orchestration_create(
        dir: str,
        description: str,
        id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        store = await _task_store(dir)
        orchestration = store.create_orchestration(description, id=id)
        _emit_log(context, "info", "Orchestration created", extra={"orchestration_id": orchestration.id})
        return orchestration.model_dump()

    async def _orchestration_list(
        dir: str,
        status: OrchestrationStatus | None = None,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List orchestrations with per-status task counts."""

        store = await _task_store(dir)
        listing = []
        for orchestration in store.list_orchestrations(status=status):
            tasks = store.list_tasks(orchestration_id=orchestration.id)
            counts: dict[str, int] = {}
            for task in tasks:
                counts[task.status] = counts.get(task.status, 0) + 1
            listing.append(
                {**orchestration.model_dump(), "task_count": len(tasks), "task_status_counts": counts}
            )
        return listing

    async def _orchestration_update(
        dir: str,
        id: str,
        description: str | None = None,
        status: OrchestrationStatus | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        store = await _task_store(dir)
        orchestration = store.update_orchestration(id, description=description, status=status)
        _emit_log(context, "info", "Orchestration updated", extra={"orchestration_id": id})
        return orchestration.model_dump()

    async def _task_create(
        dir: str,
        orchestration_id: str,
        title: str,
        description: str,
        id: str | None = None,
        dependencies: list[str] | None = None,
        branch: str | None = None,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        store = await _task_store(dir)
        task = store.create_task(
            orchestration_id,
            title,
            description,
            id=id,
            dependencies=dependencies,
            branch=branch,
            session_id=session_id,
        )
        _emit_log(context, "info", "Task created", extra={"task_id": task.id})
        return task.model_dump()

    async def _task_update(
        dir: str,
        id: str,
        status: TaskStatus | None = None,
        branch: str | None = None,
        session_id: str | None = None,
        review_session_id: str | None = None,
        result: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        store = await _task_store(dir)
        task = store.update_task(
            id,
            status=status,
            branch=branch,
            session_id=session_id,
            review_session_id=review_session_id,
            result=result,
        )
        _emit_log(context, "info", "Task updated", extra={"task_id": id, "status": task.status})
        return task.model_dump()

    async def _task_list(
        dir: str,
        orchestration_id: str | None = None,
        status: TaskStatus | None = None,
        ready: bool = False,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List tasks; ``ready`` keeps only tasks whose dependencies are all done."""

        store = await _task_store(dir)
        tasks = store.list_tasks(orchestration_id=orchestration_id, status=status, ready=ready)
        return [task.model_dump() for task in tasks]

    async def _task_get(dir: str, id: str, context: Context | None = None) -> dict[str, Any]:
        store = await _task_store(dir)
        task = store.require_task(id)
        unmet = store.get_unmet_dependencies(id)
        return {
            **task.model_dump(),
            "unmet_dependencies": [_task_summary(dep) for dep in unmet],
            "ready": not task.is_terminal and not unmet,
        }

    async def _task_cycles(dir: str, context: Context | None = None) -> dict[str, Any]:
        store = await _task_store(dir)
        cycles = store.find_dependency_cycles()
        return {"has_cycles": bool(cycles), "cycles": cycles}

    tool_orch_create = server.tool(
        name="orchestration_create",
        description="Create an orchestration that groups related sandbox tasks.",
    )(_orchestration_create)
    tool_orch_list = server.tool(
        name="orchestration_list",
        description="List orchestrations with a summary of their tasks.",
    )(_orchestration_list)
    tool_orch_update = server.tool(
        name="orchestration_update",
        description="Update an orchestration's description or status.",
    )(_orchestration_update)
    tool_task_create = server.tool(
        name="task_create",
        description=(
            "Create a task within an orchestration. Dependencies name other task ids and "
            "must not form a cycle."
        ),
    )(_task_create)
    tool_task_update = server.tool(
        name="task_update",
        description="Update a task's status, branch, session ids or result.",
    )(_task_update)
    tool_task_list = server.tool(
        name="task_list",
        description="List tasks, optionally filtered by orchestration, status, or readiness.",
    )(_task_list)
    tool_task_get = server.tool(
        name="task_get",
        description="Get a task with its unmet dependencies and readiness.",
    )(_task_get)
    tool_task_cycles = server.tool(
        name="task_cycles",
        description="Report dependency cycles among recorded tasks.",
    )(_task_cycles)

    # Issues ---------------------------------------------------------------

    async def _issue_create(
        dir: str,
        title: str,
        description: str,
        priority: IssuePriority = "medium",
        labels: list[str] | None = None,
        id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        store = await _issue_store(dir)
        issue = store.create_issue(title, description, id=id, priority=priority, labels=labels)
        _emit_log(context, "info", "Issue created", extra={"issue_id": issue.id})
        return issue.model_dump()

    async def _issue_list(
        dir: str,
        status: IssueStatus | None = None,
        priority: IssuePriority | None = None,
        label: str | None = None,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        store = await _issue_store(dir)
        issues = store.list_issues(status=status, priority=priority, label=label)
        return [issue.model_dump() for issue in issues]

    async def _issue_get(dir: str, id: str, context: Context | None = None) -> dict[str, Any]:
        store = await _issue_store(dir)
        issue = store.get_issue(id)
        if issue is None:
            raise NotFoundError(f"Issue not found: {id}")
        return issue.model_dump()

    async def _issue_update(
        dir: str,
        id: str,
        status: IssueStatus | None = None,
        priority: IssuePriority | None = None,
        labels: list[str] | None = None,
        resolution: str | None = None,
        linked_commits: list[str] | None = None,
        linked_tasks: list[str] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Update an issue. Labels replace; linked commits and tasks append.

        Resolving an issue imported from markdown also archives its source
        file under ``resolved/``; a filesystem failure there is only logged.
        """

        store = await _issue_store(dir)
        issue = store.update_issue(
            id,
            status=status,
            priority=priority,
            labels=labels,
            resolution=resolution,
            linked_commits=linked_commits,
            linked_tasks=linked_tasks,
        )

        if issue.status == "resolved" and issue.source_file:
            try:
                if store.archive_source_file(id) is not None:
                    issue = store.get_issue(id) or issue
            except OSError as exc:
                _emit_log(
                    context,
                    "warning",
                    "Could not archive issue source file",
                    extra={"issue_id": id, "source_file": issue.source_file, "error": str(exc)},
                )

        _emit_log(context, "info", "Issue updated", extra={"issue_id": id, "status": issue.status})
        return issue.model_dump()

    async def _issue_import(
        dir: str,
        issue_dir: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Import ``NNN-slug.md`` files, defaulting to ``<git root>/issue-tracker``."""

        root = await _git_root(dir)
        store = IssueStore(issue_store_path(root, settings.ledger_dirname))
        scan_dir = Path(issue_dir).expanduser() if issue_dir else root / DEFAULT_ISSUE_DIRNAME
        summary = store.import_markdown(scan_dir)
        _emit_log(
            context,
            "info",
            "Issues imported",
            extra={"imported": len(summary.imported), "skipped": len(summary.skipped)},
        )
        return {
            "directory": str(scan_dir),
            "imported": summary.imported,
            "skipped": summary.skipped,
            "scanned": summary.scanned,
        }

    tool_issue_create = server.tool(
        name="issue_create",
        description="Create a new issue in the issue tracker.",
    )(_issue_create)
    tool_issue_list = server.tool(
        name="issue_list",
        description="List issues by priority, optionally filtered by status, priority, or label.",
    )(_issue_list)
    tool_issue_get = server.tool(
        name="issue_get",
        description="Get an issue including its linked commits and tasks.",
    )(_issue_get)
    tool_issue_update = server.tool(
        name="issue_update",
        description=(
            "Update an issue's status, priority, labels or resolution. linked_commits and "
            "linked_tasks are appended; labels replaces the existing list."
        ),
    )(_issue_update)
    tool_issue_import = server.tool(
        name="issue_import",
        description=(
            "Import issues from NNN-slug.md files. The title comes from the first '#' heading, "
            "priority from '**Priority:**' and the label from '**Category:**'. Existing ids are skipped."
        ),
    )(_issue_import)

    return ToolHandles(
        sandbox_up=tool_up,
        sandbox_exec=tool_exec,
        sandbox_down=tool_down,
        sandbox_merge=tool_merge,
        sandbox_list=tool_list,
        sandbox_cleanup=tool_cleanup,
        sandbox_diff=tool_diff,
        generate_session_id=tool_session,
        orchestration_create=tool_orch_create,
        orchestration_list=tool_orch_list,
        orchestration_update=tool_orch_update,
        task_create=tool_task_create,
        task_update=tool_task_update,
        task_list=tool_task_list,
        task_get=tool_task_get,
        task_cycles=tool_task_cycles,
        issue_create=tool_issue_create,
        issue_list=tool_issue_list,
        issue_get=tool_issue_get,
        issue_update=tool_issue_update,
        issue_import=tool_issue_import,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log with the MCP request id attached when a context is available."""

    payload = dict(extra or {})
    request_id = getattr(context, "request_id", None) if context is not None else None
    if request_id is not None:
        payload.setdefault("request_id", request_id)

    log_method = getattr(logger, level, logger.info)
    log_method(message, extra=payload)


__all__ = ["ProgressNotifier", "ToolHandles", "register_tools"]
