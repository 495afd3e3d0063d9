"""Sandbox MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from sandbox_mcp.config import SandboxSettings
from sandbox_mcp.errors import SandboxError, StoreCorruptionError
from sandbox_mcp.git import GitRunner, WorktreeManager
from sandbox_mcp.init import init_workspace
from sandbox_mcp.ledger import IssueStore, OrchestratorStore, issue_store_path, task_store_path


def resolve_root(directory: str, settings: SandboxSettings) -> Path:
    manager = WorktreeManager(GitRunner(Path(settings.git_path) if settings.git_path else None))
    try:
        return asyncio.run(manager.git_root(directory))
    except SandboxError as exc:
        print(f"Not a git repository: {exc}")
        raise SystemExit(1)


def load_task_store(args: argparse.Namespace) -> OrchestratorStore:
    settings = SandboxSettings()
    return OrchestratorStore(task_store_path(resolve_root(args.dir, settings), settings.ledger_dirname))


def load_issue_store(args: argparse.Namespace) -> IssueStore:
    settings = SandboxSettings()
    return IssueStore(issue_store_path(resolve_root(args.dir, settings), settings.ledger_dirname))


def cmd_orchestrations(args: argparse.Namespace) -> None:
    store = load_task_store(args)
    try:
        orchestrations = store.list_orchestrations(status=args.status)
        tasks = store.list_tasks()
    except StoreCorruptionError as exc:
        print(f"Ledger unavailable: {exc}")
        raise SystemExit(1)

    if args.json:
        print(json.dumps([record.model_dump() for record in orchestrations], indent=2))
        return
    for orchestration in orchestrations:
        count = sum(1 for task in tasks if task.orchestration_id == orchestration.id)
        print(f"{orchestration.id} [{orchestration.status}] {orchestration.description} ({count} tasks)")


def cmd_tasks(args: argparse.Namespace) -> None:
    store = load_task_store(args)
    try:
        tasks = store.list_tasks(
            orchestration_id=args.orchestration_id, status=args.status, ready=args.ready
        )
    except StoreCorruptionError as exc:
        print(f"Ledger unavailable: {exc}")
        raise SystemExit(1)

    if args.json:
        print(json.dumps([task.model_dump() for task in tasks], indent=2))
    else:
        for task in tasks:
            deps = ", ".join(task.dependencies) or "-"
            print(f"{task.id} [{task.status}] {task.title} (deps: {deps}) -> {task.branch}")


def cmd_cycles(args: argparse.Namespace) -> None:
    store = load_task_store(args)
    try:
        cycles = store.find_dependency_cycles()
    except StoreCorruptionError as exc:
        print(f"Ledger unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps({"has_cycles": bool(cycles), "cycles": cycles}, indent=2))


def cmd_issues(args: argparse.Namespace) -> None:
    store = load_issue_store(args)
    try:
        issues = store.list_issues(status=args.status, priority=args.priority, label=args.label)
    except StoreCorruptionError as exc:
        print(f"Ledger unavailable: {exc}")
        raise SystemExit(1)

    if args.json:
        print(json.dumps([issue.model_dump() for issue in issues], indent=2))
    else:
        for issue in issues:
            labels = ", ".join(issue.labels) or "-"
            print(f"{issue.id} [{issue.status}/{issue.priority}] {issue.title} ({labels})")


def cmd_init(args: argparse.Namespace) -> None:
    report = init_workspace(args.scope, args.dir)
    print(f"MCP config: {report.mcp_config} ({'written' if report.mcp_config_written else 'unchanged'})")
    print(f"Agent: {report.agent} ({'written' if report.agent_written else 'unchanged'})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sandbox MCP diagnostics")
    parser.add_argument("--dir", default=".", help="Path inside the git repository (default: cwd)")
    sub = parser.add_subparsers(dest="cmd")

    p_orch = sub.add_parser("orchestrations", help="List orchestrations")
    p_orch.add_argument("--status")
    p_orch.add_argument("--json", action="store_true", help="Output JSON")
    p_orch.set_defaults(func=cmd_orchestrations)

    p_tasks = sub.add_parser("tasks", help="List tasks")
    p_tasks.add_argument("--orchestration-id")
    p_tasks.add_argument("--status")
    p_tasks.add_argument("--ready", action="store_true", help="Only tasks whose dependencies are done")
    p_tasks.add_argument("--json", action="store_true", help="Output JSON")
    p_tasks.set_defaults(func=cmd_tasks)

    p_cycles = sub.add_parser("cycles", help="Report task dependency cycles")
    p_cycles.set_defaults(func=cmd_cycles)

    p_issues = sub.add_parser("issues", help="List issues by priority")
    p_issues.add_argument("--status")
    p_issues.add_argument("--priority")
    p_issues.add_argument("--label")
    p_issues.add_argument("--json", action="store_true", help="Output JSON")
    p_issues.set_defaults(func=cmd_issues)

    p_init = sub.add_parser("init", help="Install the MCP client entry and orchestrator agent")
    p_init.add_argument("--scope", choices=["repo", "user"], default="repo")
    p_init.set_defaults(func=cmd_init)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
