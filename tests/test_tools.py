from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import pytest

from helpers import StubRuntime, commit_file, git
from sandbox_mcp.config import SandboxSettings
from sandbox_mcp.errors import DependencyCycleError, NotFoundError
from sandbox_mcp.sandbox import SandboxCoordinator
from sandbox_mcp.tools import CONFLICT_GUIDANCE, UNCOMMITTED_GUIDANCE, ProgressNotifier, register_tools


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubContext:
    def __init__(self, *, fail: bool = False) -> None:
        self.request_id = "req-1"
        self.fail = fail
        self.progress: list[dict[str, Any]] = []

    async def report_progress(self, progress, total=None, message=None) -> None:
        if self.fail:
            raise RuntimeError("client went away")
        self.progress.append({"progress": progress, "total": total, "message": message})


async def _no_token() -> None:
    return None


def _register(runtime: StubRuntime | None = None):
    server = StubServer()
    settings = SandboxSettings()
    coordinator = SandboxCoordinator(
        settings=settings, runtime=runtime or StubRuntime(), token_provider=_no_token
    )
    handles = register_tools(server, settings=settings, coordinator=coordinator)  # type: ignore[arg-type]
    return server, handles


def _run(handle, *args, **kwargs):
    return asyncio.run(handle.fn(*args, **kwargs))


def test_all_tools_registered() -> None:
    server, _ = _register()

    assert set(server._tools) == {
        "sandbox_up",
        "sandbox_exec",
        "sandbox_down",
        "sandbox_merge",
        "sandbox_list",
        "sandbox_cleanup",
        "sandbox_diff",
        "generate_session_id",
        "orchestration_create",
        "orchestration_list",
        "orchestration_update",
        "task_create",
        "task_update",
        "task_list",
        "task_get",
        "task_cycles",
        "issue_create",
        "issue_list",
        "issue_get",
        "issue_update",
        "issue_import",
    }


def test_generate_session_id_is_unique() -> None:
    _, handles = _register()

    first = handles.generate_session_id.fn()
    second = handles.generate_session_id.fn()

    assert first["session_id"] != second["session_id"]


def test_orchestration_and_task_flow(git_repo: Path) -> None:
    _, handles = _register()
    directory = str(git_repo)

    orchestration = _run(handles.orchestration_create, directory, "Ship login", id="orch")
    _run(handles.task_create, directory, "orch", "Schema", "Add tables", id="schema")
    _run(handles.task_create, directory, "orch", "API", "Add endpoints", id="api", dependencies=["schema"])

    assert orchestration["status"] == "active"
    assert (git_repo / ".orchestrator" / "tasks.json").exists()

    ready = _run(handles.task_list, directory, ready=True)
    assert [task["id"] for task in ready] == ["schema"]

    api = _run(handles.task_get, directory, "api")
    assert api["ready"] is False
    assert [dep["id"] for dep in api["unmet_dependencies"]] == ["schema"]

    updated = _run(handles.task_update, directory, "schema", status="done", result="tables added")
    assert updated["result"] == "tables added"
    assert _run(handles.task_get, directory, "api")["ready"] is True

    [listed] = _run(handles.orchestration_list, directory)
    assert listed["task_count"] == 2
    assert listed["task_status_counts"] == {"done": 1, "pending": 1}

    closed = _run(handles.orchestration_update, directory, "orch", status="completed")
    assert closed["status"] == "completed"
    assert _run(handles.orchestration_list, directory, status="active") == []


def test_task_errors_surface(git_repo: Path) -> None:
    _, handles = _register()
    directory = str(git_repo)
    _run(handles.orchestration_create, directory, "o", id="o")
    _run(handles.task_create, directory, "o", "a", "d", id="a", dependencies=["b"])

    with pytest.raises(DependencyCycleError):
        _run(handles.task_create, directory, "o", "b", "d", id="b", dependencies=["a"])
    with pytest.raises(NotFoundError):
        _run(handles.task_get, directory, "missing")
    with pytest.raises(NotFoundError):
        _run(handles.task_create, directory, "nope", "t", "d")

    assert _run(handles.task_cycles, directory) == {"has_cycles": False, "cycles": []}


def test_sandbox_lifecycle_reports_progress(git_repo: Path, tmp_path: Path) -> None:
    runtime = StubRuntime()
    _, handles = _register(runtime)
    directory = str(git_repo)
    context = StubContext()

    up = _run(
        handles.sandbox_up,
        directory,
        branch="sandbox/tool",
        worktree_dir=str(tmp_path / "worktrees"),
        context=context,
    )
    executed = _run(handles.sandbox_exec, directory, "sandbox/tool", "write tests", context=context)

    assert up["branch"] == "sandbox/tool"
    assert executed["branch"] == "sandbox/tool"
    assert executed["exit_code"] == 0
    assert [item["message"] for item in context.progress] == ["container ready", "agent output"]
    assert [item["progress"] for item in context.progress] == [1, 1]

    [listed] = _run(handles.sandbox_list, directory)
    assert listed["branch"] == "sandbox/tool"
    assert listed["sessions"][0]["task"] == "write tests"

    stopped = _run(handles.sandbox_down, directory, "sandbox/tool")
    assert stopped["container_removed"] is True
    assert stopped["worktree_removed"] is False

    removed = _run(handles.sandbox_down, directory, "sandbox/tool", remove_worktree=True)
    assert removed["worktree_removed"] is True
    assert _run(handles.sandbox_list, directory) == []


def test_merge_reports_conflicts_and_task_dependencies(git_repo: Path, tmp_path: Path) -> None:
    _, handles = _register()
    directory = str(git_repo)
    _run(handles.orchestration_create, directory, "o", id="o")
    _run(handles.task_create, directory, "o", "Base", "d", id="base")
    _run(
        handles.task_create,
        directory,
        "o",
        "Feature",
        "d",
        id="feature",
        dependencies=["base"],
        branch="sandbox/feature",
    )
    up = _run(handles.sandbox_up, directory, branch="sandbox/feature", worktree_dir=str(tmp_path / "wt"))
    commit_file(Path(up["worktree_path"]), "README.md", "sandbox\n", "sandbox edit")
    commit_file(git_repo, "README.md", "main\n", "main edit")

    result = _run(handles.sandbox_merge, directory, "sandbox/feature")

    assert result["success"] is False
    assert result["conflict_files"] == ["README.md"]
    assert result["message"] == CONFLICT_GUIDANCE
    assert result["task"]["id"] == "feature"
    assert [dep["id"] for dep in result["unmet_dependencies"]] == ["base"]


def test_merge_and_diff_clean_sandbox(git_repo: Path, tmp_path: Path) -> None:
    _, handles = _register()
    directory = str(git_repo)
    up = _run(handles.sandbox_up, directory, branch="sandbox/clean", worktree_dir=str(tmp_path / "wt"))
    commit_file(Path(up["worktree_path"]), "notes.txt", "notes\n", "add notes")

    diff = _run(handles.sandbox_diff, directory, "sandbox/clean")
    merged = _run(handles.sandbox_merge, directory, "sandbox/clean")

    assert diff["files"] == ["notes.txt"]
    assert merged["success"] is True
    assert "message" not in merged
    assert "task" not in merged
    assert (git_repo / "notes.txt").exists()


def test_merge_completes_when_task_ledger_is_unreadable(
    git_repo: Path, tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    _, handles = _register()
    directory = str(git_repo)
    up = _run(handles.sandbox_up, directory, branch="sandbox/ledgerless", worktree_dir=str(tmp_path / "wt"))
    commit_file(Path(up["worktree_path"]), "f.txt", "f\n", "add f")
    ledger = git_repo / ".orchestrator" / "tasks.json"
    ledger.parent.mkdir()
    ledger.write_text("{not json", encoding="utf-8")

    with caplog.at_level(logging.WARNING, logger="sandbox_mcp.tools"):
        merged = _run(handles.sandbox_merge, directory, "sandbox/ledgerless", context=StubContext())

    assert merged["success"] is True
    assert "advisory_error" in merged
    assert "task" not in merged
    assert (git_repo / "f.txt").exists()
    assert "sandbox/ledgerless" not in git(git_repo, "branch", "--format=%(refname:short)").split()
    record = next(
        r for r in caplog.records if r.getMessage() == "Task ledger unreadable; merging without task context"
    )
    assert record.request_id == "req-1"


def test_merge_reports_uncommitted_changes(git_repo: Path, tmp_path: Path) -> None:
    _, handles = _register()
    directory = str(git_repo)
    up = _run(handles.sandbox_up, directory, branch="sandbox/dirty", worktree_dir=str(tmp_path / "wt"))
    (Path(up["worktree_path"]) / "README.md").write_text("unsaved\n", encoding="utf-8")

    result = _run(handles.sandbox_merge, directory, "sandbox/dirty")

    assert result["success"] is False
    assert result["uncommitted_files"] == ["README.md"]
    assert result["message"] == UNCOMMITTED_GUIDANCE
    assert Path(up["worktree_path"]).exists()


def test_cleanup_protects_branches_of_open_tasks(git_repo: Path) -> None:
    _, handles = _register()
    directory = str(git_repo)
    git(git_repo, "branch", "sandbox/claimed")
    git(git_repo, "branch", "sandbox/finished")
    git(git_repo, "branch", "sandbox/loose")
    _run(handles.orchestration_create, directory, "o", id="o")
    _run(handles.task_create, directory, "o", "open", "d", id="open", branch="sandbox/claimed")
    _run(handles.task_create, directory, "o", "done", "d", id="done", branch="sandbox/finished")
    _run(handles.task_update, directory, "done", status="done")

    result = _run(handles.sandbox_cleanup, directory, dry_run=True)

    assert result["orphaned_branches"] == ["sandbox/finished", "sandbox/loose"]
    assert result["dry_run"] is True


def test_issue_tools_import_and_archive(git_repo: Path) -> None:
    _, handles = _register()
    directory = str(git_repo)
    tracker = git_repo / "issue-tracker"
    tracker.mkdir()
    (tracker / "007-crash.md").write_text(
        "# Crash on start\n\n**Priority:** Low\n**Category:** bug\n", encoding="utf-8"
    )

    imported = _run(handles.issue_import, directory)
    again = _run(handles.issue_import, directory)
    created = _run(handles.issue_create, directory, "Slow search", "d", priority="high", labels=["perf"])

    assert imported["imported"] == ["007"]
    assert again["skipped"] == ["007"]
    assert [issue["id"] for issue in _run(handles.issue_list, directory)] == [created["id"], "007"]
    assert _run(handles.issue_get, directory, "007")["labels"] == ["bug"]

    resolved = _run(
        handles.issue_update,
        directory,
        "007",
        status="resolved",
        resolution="Guarded the null config.",
        linked_commits=["abc123"],
    )

    archived = tracker / "resolved" / "007-crash.md"
    assert archived.exists()
    assert not (tracker / "007-crash.md").exists()
    assert resolved["source_file"] == str(archived.resolve())
    assert resolved["linked_commits"] == ["abc123"]

    with pytest.raises(NotFoundError):
        _run(handles.issue_get, directory, "999")


def test_issue_archive_failure_is_logged(git_repo: Path, caplog: pytest.LogCaptureFixture) -> None:
    _, handles = _register()
    directory = str(git_repo)
    tracker = git_repo / "issue-tracker"
    tracker.mkdir()
    (tracker / "001-bug.md").write_text("# Bug\n", encoding="utf-8")
    (tracker / "resolved").write_text("not a directory", encoding="utf-8")
    _run(handles.issue_import, directory)

    with caplog.at_level(logging.WARNING, logger="sandbox_mcp.tools"):
        result = _run(handles.issue_update, directory, "001", status="resolved", context=StubContext())

    assert result["status"] == "resolved"
    assert result["source_file"].endswith("001-bug.md")
    record = next(r for r in caplog.records if r.getMessage() == "Could not archive issue source file")
    assert record.request_id == "req-1"


def test_issue_import_missing_directory(git_repo: Path) -> None:
    _, handles = _register()

    with pytest.raises(NotFoundError):
        _run(handles.issue_import, str(git_repo), issue_dir=str(git_repo / "nowhere"))


def test_progress_notifier_heartbeat_and_failures() -> None:
    async def _exercise(context: StubContext) -> ProgressNotifier:
        async with ProgressNotifier(context, interval=0.05) as notifier:
            await notifier.on_output("line one")
            await asyncio.sleep(0.2)
        return notifier

    context = StubContext()
    notifier = asyncio.run(_exercise(context))

    assert context.progress[0] == {"progress": 1, "total": None, "message": "line one"}
    assert any(item["message"] == "Working..." for item in context.progress[1:])
    assert notifier.ticks == len(context.progress)

    failing = StubContext(fail=True)
    asyncio.run(_exercise(failing))
    assert failing.progress == []


def test_progress_notifier_without_context_is_silent() -> None:
    async def _exercise() -> int:
        async with ProgressNotifier(None, interval=0.01) as notifier:
            await notifier.on_output("ignored")
            await asyncio.sleep(0.03)
        return notifier.ticks

    assert asyncio.run(_exercise()) == 0
