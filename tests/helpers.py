from __future__ import annotations

import subprocess
from pathlib import Path

from sandbox_mcp.container import ContainerUpResult, notify


def git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def commit_file(cwd: Path, name: str, content: str, message: str) -> None:
    path = cwd / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    git(cwd, "add", name)
    git(cwd, "commit", "-q", "-m", message)


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return path


class StubRuntime:
    """Records container calls without touching docker."""

    def __init__(self, *, running: bool = True, fail_up: Exception | None = None, exit_code: int = 0) -> None:
        self.running = running
        self.fail_up = fail_up
        self.exit_code = exit_code
        self.calls: list[tuple] = []

    async def up(self, workspace, *, remote_env=None, on_output=None):
        self.calls.append(("up", str(workspace), dict(remote_env or {})))
        if self.fail_up is not None:
            raise self.fail_up
        await notify(on_output, "container ready")
        self.running = True
        return ContainerUpResult(
            outcome="success",
            container_id="stub-container",
            remote_user="vscode",
            remote_workspace_folder=f"/workspaces/{Path(workspace).name}",
        )

    async def exec(self, workspace, command, *, remote_env=None, on_output=None, timeout=None):
        self.calls.append(("exec", str(workspace), list(command), dict(remote_env or {}), timeout))
        await notify(on_output, "agent output")
        return self.exit_code

    async def is_running(self, workspace) -> bool:
        return self.running

    async def down(self, workspace) -> bool:
        self.calls.append(("down", str(workspace)))
        was_running = self.running
        self.running = False
        return was_running
