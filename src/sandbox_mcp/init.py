"""Install the MCP client entry and orchestrator agent definition."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import yaml

logger = logging.getLogger(__name__)

Scope = Literal["repo", "user"]

SERVER_KEY = "sandbox-mcp"
MCP_SERVER_ENTRY: dict[str, Any] = {
    "type": "stdio",
    "command": "sandbox-mcp",
    "args": [],
    "tools": ["*"],
}

AGENT_FRONTMATTER: dict[str, Any] = {
    "name": "orchestrator",
    "description": (
        "Orchestrates sandboxed coding agents working on tasks in parallel. Use it to break a "
        "large task into subtasks and assign each to an isolated agent in its own dev container."
    ),
    "tools": ["read", "search", "web", f"{SERVER_KEY}/*"],
}

AGENT_BODY = """\
You are a sandbox orchestrator. Break complex software engineering tasks into
independent subtasks and delegate each one to an agent running in its own
sandbox (a git worktree plus a dev container).

## Workflow

1. **Analyze**: read the relevant files and search the codebase for context.
2. **Plan**: call `orchestration_create`, then `task_create` for every subtask.
   Record dependencies between tasks; cycles are rejected.
3. **Delegate**: for each task returned by `task_list` with `ready` set, call
   `sandbox_up`, then `sandbox_exec` with a detailed task description. Store the
   branch and session id on the task with `task_update`.
4. **Review**: inspect changes with `sandbox_diff`.
5. **Merge**: call `sandbox_merge`. On conflicts, use `sandbox_exec` with the
   same session id to have the agent resolve and stage the listed files, then
   merge again. Mark the task `done` once the merge succeeds.
6. **Clean up**: `sandbox_down` abandoned sandboxes and run `sandbox_cleanup`
   to reclaim orphaned branches.

## Constraints

- You cannot edit files or run shell commands directly; all changes happen in sandboxes.
- Sandbox agents only know what you tell them. Name the files, expected behavior
  and conventions in every task description.
- Track defects found along the way with the `issue_*` tools.
"""


@dataclass(slots=True)
class InitPaths:
    mcp_config: Path
    agent: Path


@dataclass(slots=True)
class InitReport:
    mcp_config: Path
    agent: Path
    mcp_config_written: bool
    agent_written: bool


def resolve_paths(scope: Scope, directory: Path | str = ".", *, home: Path | None = None) -> InitPaths:
    """User scope writes under ``~/.copilot``; repo scope splits ``.copilot`` and ``.github/agents``."""

    if scope == "user":
        base = (home or Path.home()) / ".copilot"
        return InitPaths(mcp_config=base / "mcp-config.json", agent=base / "agents" / "orchestrator.agent.md")
    if scope != "repo":
        raise ValueError(f"Unknown scope '{scope}'; expected 'repo' or 'user'")

    root = Path(directory).expanduser().resolve()
    return InitPaths(
        mcp_config=root / ".copilot" / "mcp-config.json",
        agent=root / ".github" / "agents" / "orchestrator.agent.md",
    )


def render_agent() -> str:
    frontmatter = yaml.safe_dump(AGENT_FRONTMATTER, sort_keys=False, width=1000).strip()
    return f"---\n{frontmatter}\n---\n\n{AGENT_BODY}"


def write_mcp_config(path: Path) -> bool:
    """Add the server entry, keeping other servers; returns ``False`` if it is already present."""

    config: dict[str, Any] = {}
    if path.exists():
        loaded = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(loaded, dict):
            raise ValueError(f"MCP config {path} must contain a JSON object")
        config = loaded

    servers = config.setdefault("mcpServers", {})
    if SERVER_KEY in servers:
        logger.info("MCP server already configured", extra={"config_path": str(path)})
        return False

    servers[SERVER_KEY] = MCP_SERVER_ENTRY
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config, indent=2) + "\n", encoding="utf-8")
    logger.info("Wrote MCP config", extra={"config_path": str(path)})
    return True


def write_agent(path: Path) -> bool:
    if path.exists():
        logger.info("Agent definition already exists", extra={"agent_path": str(path)})
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_agent(), encoding="utf-8")
    logger.info("Wrote agent definition", extra={"agent_path": str(path)})
    return True


def init_workspace(scope: Scope, directory: Path | str = ".", *, home: Path | None = None) -> InitReport:
    paths = resolve_paths(scope, directory, home=home)
    return InitReport(
        mcp_config=paths.mcp_config,
        agent=paths.agent,
        mcp_config_written=write_mcp_config(paths.mcp_config),
        agent_written=write_agent(paths.agent),
    )


__all__ = [
    "AGENT_FRONTMATTER",
    "InitPaths",
    "InitReport",
    "MCP_SERVER_ENTRY",
    "SERVER_KEY",
    "init_workspace",
    "render_agent",
    "resolve_paths",
]
