from __future__ import annotations

import asyncio
import json
from pathlib import Path

from fastmcp import Client

from helpers import StubRuntime
from sandbox_mcp import __version__
from sandbox_mcp.config import SandboxSettings
from sandbox_mcp.sandbox import SandboxCoordinator
from sandbox_mcp.server import create_server


async def _no_token() -> None:
    return None


def _server(settings: SandboxSettings | None = None):
    settings = settings or SandboxSettings()
    coordinator = SandboxCoordinator(settings=settings, runtime=StubRuntime(), token_provider=_no_token)
    return create_server(settings, coordinator=coordinator)


def test_create_server_exposes_tools_and_status() -> None:
    server = _server(SandboxSettings(SANDBOX_AGENT_FLAGS="--allow-all-tools --model x"))

    async def _inspect():
        async with Client(server) as client:
            tools = await client.list_tools()
            contents = await client.read_resource("resource://sandbox/status")
        return tools, contents

    tools, contents = asyncio.run(_inspect())

    names = {tool.name for tool in tools}
    assert {"sandbox_up", "sandbox_merge", "task_create", "issue_import", "generate_session_id"} <= names

    payload = json.loads(contents[0].text)
    assert payload["server_version"] == __version__
    assert payload["container_runtime"]["available"] is True
    assert payload["agent"]["flags"] == ["--allow-all-tools", "--model", "x"]
    assert payload["ledger"]["directory"] == ".orchestrator"
    assert getattr(server, "tool_handles").generate_session_id is not None


def test_create_server_without_container_tooling(tmp_path: Path) -> None:
    settings = SandboxSettings(SANDBOX_DEVCONTAINER_PATH=str(tmp_path / "missing-devcontainer"))

    server = create_server(settings)

    metadata = getattr(server, "runtime_metadata")
    assert metadata["available"] is False
    assert "devcontainer" in metadata["error"]
    assert getattr(server, "coordinator").runtime is None


def test_tool_call_through_client(git_repo: Path) -> None:
    server = _server()

    async def _call():
        async with Client(server) as client:
            return await client.call_tool(
                "orchestration_create", {"dir": str(git_repo), "description": "o", "id": "o"}
            )

    result = asyncio.run(_call())

    created = json.loads(result.content[0].text)
    assert created["id"] == "o"
    assert created["status"] == "active"
    assert (git_repo / ".orchestrator" / "tasks.json").exists()
