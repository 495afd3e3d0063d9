from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from sandbox_mcp.container.devcontainer import (
    AGENT_CLI_FEATURE,
    SAFE_DIRECTORY_CMD,
    SAFE_DIRECTORY_KEY,
    create_default_config,
    ensure_agent_feature,
    find_config,
    has_config,
    load_config,
    resolve_main_git_dir,
    strip_jsonc,
)
from sandbox_mcp.git import WorktreeManager


def _write(workspace: Path, payload: str) -> Path:
    path = workspace / ".devcontainer" / "devcontainer.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(payload, encoding="utf-8")
    return path


def test_strip_jsonc_keeps_string_contents() -> None:
    text = """{
        // line comment
        "image": "mcr.microsoft.com/devcontainers/base", /* block */
        "url": "https://example.com/*not-a-comment*/",
        "features": {"a": {},},
    }"""

    parsed = json.loads(strip_jsonc(text))

    assert parsed["url"] == "https://example.com/*not-a-comment*/"
    assert parsed["features"] == {"a": {}}


def test_create_default_config(tmp_path: Path) -> None:
    assert not has_config(tmp_path)

    path = create_default_config(tmp_path)

    config = load_config(path)
    assert find_config(tmp_path) == path
    assert AGENT_CLI_FEATURE in config["features"]
    assert config["postCreateCommand"] == SAFE_DIRECTORY_CMD


def test_ensure_agent_feature_patches_string_command(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """{
            // project container
            "image": "python:3.12",
            "postCreateCommand": "pip install -e .",
            "mounts": ["source=/var/run/docker.sock,target=/var/run/docker.sock,type=bind", "source=cache,target=/cache,type=volume"],
        }""",
    )

    assert ensure_agent_feature(tmp_path) is True

    config = load_config(path)
    assert AGENT_CLI_FEATURE in config["features"]
    assert config["postCreateCommand"] == f"pip install -e . && {SAFE_DIRECTORY_CMD}"
    assert config["mounts"] == ["source=cache,target=/cache,type=volume"]
    assert ensure_agent_feature(tmp_path) is False


def test_ensure_agent_feature_wraps_array_command(tmp_path: Path) -> None:
    path = _write(tmp_path, json.dumps({"image": "x", "postCreateCommand": ["npm", "ci"]}))

    ensure_agent_feature(tmp_path)

    command = load_config(path)["postCreateCommand"]
    assert command == {"original": ["npm", "ci"], SAFE_DIRECTORY_KEY: SAFE_DIRECTORY_CMD}


def test_ensure_agent_feature_extends_object_command(tmp_path: Path) -> None:
    path = _write(tmp_path, json.dumps({"image": "x", "postCreateCommand": {"deps": "make deps"}}))

    ensure_agent_feature(tmp_path)

    command = load_config(path)["postCreateCommand"]
    assert command == {"deps": "make deps", SAFE_DIRECTORY_KEY: SAFE_DIRECTORY_CMD}


def test_load_config_rejects_non_object(tmp_path: Path) -> None:
    path = _write(tmp_path, "[]")

    with pytest.raises(ValueError):
        load_config(path)


def test_resolve_main_git_dir_for_worktree(git_repo: Path, tmp_path: Path) -> None:
    worktree = asyncio.run(WorktreeManager().create(git_repo, tmp_path / "wt", "sandbox/x", "HEAD"))

    assert resolve_main_git_dir(worktree) == (git_repo / ".git").resolve()
    assert resolve_main_git_dir(git_repo) is None
