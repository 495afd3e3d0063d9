"""Helpers for the dev container descriptor of a sandbox worktree."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

AGENT_CLI_FEATURE = "ghcr.io/devcontainers/features/copilot-cli:1"
SAFE_DIRECTORY_CMD = "git config --global --add safe.directory '*'"
SAFE_DIRECTORY_KEY = "_sandbox_safe_dir"
DEFAULT_IMAGE = "mcr.microsoft.com/devcontainers/base:ubuntu"
DEFAULT_NAME = "Sandbox"

CONFIG_LOCATIONS = (
    Path(".devcontainer") / "devcontainer.json",
    Path(".devcontainer.json"),
)

_COMMENT_PATTERN = re.compile(r'("(?:\\.|[^"\\])*")|//[^\n]*|/\*.*?\*/', re.DOTALL)
_TRAILING_COMMA_PATTERN = re.compile(r'("(?:\\.|[^"\\])*")|,(?=\s*[}\]])')


def strip_jsonc(text: str) -> str:
    """Remove comments and trailing commas from JSONC so ``json.loads`` accepts it."""

    def _keep_strings(match: re.Match[str]) -> str:
        return match.group(1) or ""

    without_comments = _COMMENT_PATTERN.sub(_keep_strings, text)
    return _TRAILING_COMMA_PATTERN.sub(_keep_strings, without_comments)


def find_config(workspace: Path | str) -> Path | None:
    base = Path(workspace)
    for location in CONFIG_LOCATIONS:
        candidate = base / location
        if candidate.exists():
            return candidate
    return None


def has_config(workspace: Path | str) -> bool:
    return find_config(workspace) is not None


def load_config(path: Path) -> dict[str, Any]:
    document = json.loads(strip_jsonc(path.read_text(encoding="utf-8")))
    if not isinstance(document, dict):
        raise ValueError(f"Dev container config at {path} must be a JSON object")
    return document


def _write_config(path: Path, config: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config, indent="\t") + "\n", encoding="utf-8")


def create_default_config(workspace: Path | str, *, feature: str = AGENT_CLI_FEATURE) -> Path:
    """Write a minimal dev container config for a workspace that ships none."""

    path = Path(workspace) / CONFIG_LOCATIONS[0]
    _write_config(
        path,
        {
            "name": DEFAULT_NAME,
            "image": DEFAULT_IMAGE,
            "features": {feature: {}},
            "postCreateCommand": SAFE_DIRECTORY_CMD,
        },
    )
    logger.info("Created default dev container config", extra={"config_path": str(path)})
    return path


def _ensure_safe_directory(config: dict[str, Any]) -> bool:
    existing = config.get("postCreateCommand")
    if not existing:
        config["postCreateCommand"] = SAFE_DIRECTORY_CMD
        return True
    if isinstance(existing, str):
        if "safe.directory" in existing:
            return False
        config["postCreateCommand"] = f"{existing} && {SAFE_DIRECTORY_CMD}"
        return True
    if isinstance(existing, list):
        if any("safe.directory" in str(part) for part in existing):
            return False
        # Object form runs each entry in parallel; the original array stays one command.
        config["postCreateCommand"] = {"original": existing, SAFE_DIRECTORY_KEY: SAFE_DIRECTORY_CMD}
        return True
    if isinstance(existing, dict):
        if any(isinstance(value, str) and "safe.directory" in value for value in existing.values()):
            return False
        existing[SAFE_DIRECTORY_KEY] = SAFE_DIRECTORY_CMD
        return True
    return False


def _drop_docker_socket_mounts(config: dict[str, Any]) -> bool:
    mounts = config.get("mounts")
    if not isinstance(mounts, list):
        return False

    def _source(mount: Any) -> str:
        if isinstance(mount, str):
            return mount
        if isinstance(mount, dict):
            return str(mount.get("source", ""))
        return ""

    filtered = [mount for mount in mounts if "docker.sock" not in _source(mount)]
    if len(filtered) == len(mounts):
        return False
    config["mounts"] = filtered
    return True


def ensure_agent_feature(workspace: Path | str, *, feature: str = AGENT_CLI_FEATURE) -> bool:
    """Patch the workspace's dev container config for agent use.

    Adds the agent CLI feature, marks every directory as a git safe.directory
    in ``postCreateCommand`` and drops host docker socket mounts. Returns
    ``True`` when the file was rewritten. The worktree is a disposable branch,
    so editing the config in place never touches the main checkout.
    """

    path = find_config(workspace)
    if path is None:
        return False

    config = load_config(path)
    modified = False

    features = config.setdefault("features", {})
    if feature not in features:
        features[feature] = {}
        modified = True

    modified = _ensure_safe_directory(config) or modified
    modified = _drop_docker_socket_mounts(config) or modified

    if modified:
        _write_config(path, config)
        logger.debug("Patched dev container config", extra={"config_path": str(path)})
    return modified


def resolve_main_git_dir(workspace: Path | str) -> Path | None:
    """Return the shared ``.git`` directory behind a linked worktree, if any."""

    dot_git = Path(workspace) / ".git"
    if not dot_git.is_file():
        return None

    match = re.match(r"^gitdir:\s*(.+)$", dot_git.read_text(encoding="utf-8").strip())
    if match is None:
        return None

    worktree_git_dir = (Path(workspace) / match.group(1).strip()).resolve()
    commondir = worktree_git_dir / "commondir"
    if not commondir.is_file():
        return None
    return (worktree_git_dir / commondir.read_text(encoding="utf-8").strip()).resolve()


__all__ = [
    "AGENT_CLI_FEATURE",
    "CONFIG_LOCATIONS",
    "SAFE_DIRECTORY_CMD",
    "create_default_config",
    "ensure_agent_feature",
    "find_config",
    "has_config",
    "load_config",
    "resolve_main_git_dir",
    "strip_jsonc",
]
