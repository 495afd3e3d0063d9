"""FastMCP server bootstrap for Sandbox MCP."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import SandboxSettings, get_settings
from .container import ContainerRuntime
from .errors import ToolNotFoundError
from .git import GitRunner, WorktreeManager
from .sandbox import SandboxCoordinator
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the Sandbox MCP server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _build_coordinator(settings: SandboxSettings, runtime_metadata: dict[str, Any]) -> SandboxCoordinator:
    git_runner = GitRunner(Path(settings.git_path) if settings.git_path else None)

    runtime: ContainerRuntime | None
    try:
        runtime = ContainerRuntime(
            devcontainer=Path(settings.devcontainer_path) if settings.devcontainer_path else None,
            docker=Path(settings.docker_path) if settings.docker_path else None,
        )
        runtime_metadata.update(
            {
                "available": True,
                "devcontainer": str(runtime.devcontainer),
                "docker": str(runtime.docker),
            }
        )
    except ToolNotFoundError as exc:
        runtime_metadata["error"] = str(exc)
        runtime = None

    return SandboxCoordinator(
        settings=settings,
        worktrees=WorktreeManager(git_runner),
        runtime=runtime,
    )


def create_server(
    settings: Optional[SandboxSettings] = None,
    coordinator: SandboxCoordinator | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the sandbox tools and a status resource."""

    settings = settings or get_settings()

    runtime_metadata: dict[str, Any] = {
        "available": False,
        "devcontainer": None,
        "docker": None,
        "error": None,
    }
    if coordinator is None:
        coordinator = _build_coordinator(settings, runtime_metadata)
    else:
        runtime_metadata["available"] = coordinator.runtime is not None

    server = FastMCP(
        name="Sandbox MCP",
        version=__version__,
        instructions=(
            "Sandbox MCP runs coding agents in isolated git worktrees backed by dev containers. "
            "Create a sandbox, execute tasks in it, then merge the branch back. Orchestration, "
            "task and issue tools keep a dependency-aware ledger inside the repository."
        ),
    )

    handles = register_tools(server, settings=settings, coordinator=coordinator)

    @server.resource(
        "resource://sandbox/status",
        name="sandbox_status",
        title="Sandbox MCP Status",
        description="Provides the current runtime status for the Sandbox MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing configuration and tool availability."""

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "git": {"path": str(coordinator.worktrees.runner.executable)},
            "container_runtime": runtime_metadata,
            "agent": {
                "command": settings.agent_command,
                "flags": list(settings.agent_flags),
                "exec_timeout": settings.exec_timeout,
            },
            "sandboxes": {
                "branch_prefix": settings.branch_prefix,
                "worktree_dir": str(settings.worktree_dir) if settings.worktree_dir else None,
                "forward_token": settings.forward_token,
            },
            "ledger": {"directory": settings.ledger_dirname},
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "coordinator", coordinator)
    setattr(server, "runtime_metadata", runtime_metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Sandbox MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Sandbox MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "runtime_available": getattr(server, "runtime_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
