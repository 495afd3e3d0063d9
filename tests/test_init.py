from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from sandbox_mcp.init import (
    MCP_SERVER_ENTRY,
    SERVER_KEY,
    init_workspace,
    render_agent,
    resolve_paths,
)


def test_resolve_paths_by_scope(tmp_path: Path) -> None:
    repo = resolve_paths("repo", tmp_path)
    user = resolve_paths("user", tmp_path, home=tmp_path / "home")

    assert repo.mcp_config == tmp_path.resolve() / ".copilot" / "mcp-config.json"
    assert repo.agent == tmp_path.resolve() / ".github" / "agents" / "orchestrator.agent.md"
    assert user.mcp_config == tmp_path / "home" / ".copilot" / "mcp-config.json"
    assert user.agent == tmp_path / "home" / ".copilot" / "agents" / "orchestrator.agent.md"

    with pytest.raises(ValueError):
        resolve_paths("global", tmp_path)  # type: ignore[arg-type]


def test_render_agent_frontmatter_parses() -> None:
    text = render_agent()

    _, frontmatter, body = text.split("---\n", 2)
    meta = yaml.safe_load(frontmatter)
    assert meta["name"] == "orchestrator"
    assert f"{SERVER_KEY}/*" in meta["tools"]
    assert "sandbox_merge" in body


def test_init_workspace_is_idempotent_and_preserves_servers(tmp_path: Path) -> None:
    config_path = tmp_path / ".copilot" / "mcp-config.json"
    config_path.parent.mkdir()
    config_path.write_text(json.dumps({"mcpServers": {"other": {"command": "x"}}}), encoding="utf-8")

    first = init_workspace("repo", tmp_path)
    second = init_workspace("repo", tmp_path)

    assert first.mcp_config_written and first.agent_written
    assert not second.mcp_config_written and not second.agent_written
    servers = json.loads(config_path.read_text(encoding="utf-8"))["mcpServers"]
    assert servers["other"] == {"command": "x"}
    assert servers[SERVER_KEY] == MCP_SERVER_ENTRY
    assert first.agent.read_text(encoding="utf-8").startswith("---\n")


def test_init_rejects_non_object_config(tmp_path: Path) -> None:
    config_path = tmp_path / ".copilot" / "mcp-config.json"
    config_path.parent.mkdir()
    config_path.write_text("[]", encoding="utf-8")

    with pytest.raises(ValueError):
        init_workspace("repo", tmp_path)
