"""Async wrapper around the devcontainer CLI and docker."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import posixpath
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

from ..errors import (
    ContainerRuntimeError,
    EnvironmentStartError,
    ExecTimeoutError,
    ToolNotFoundError,
)
from .devcontainer import resolve_main_git_dir

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], "Awaitable[None] | None"]

WORKSPACE_LABEL = "devcontainer.local_folder"
CONTAINER_WORKSPACES_ROOT = "/workspaces"
_STREAM_LIMIT = 1024 * 1024


async def notify(callback: OutputCallback | None, line: str) -> None:
    """Invoke a sync or async output callback; ``None`` is a no-op."""

    if callback is None:
        return
    result = callback(line)
    if inspect.isawaitable(result):
        await result


@dataclass(slots=True)
class ContainerUpResult:
    """Outcome record reported by ``devcontainer up``."""

    outcome: str
    container_id: str | None = None
    remote_user: str | None = None
    remote_workspace_folder: str | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == "success"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ContainerUpResult":
        return cls(
            outcome=str(payload.get("outcome")),
            container_id=payload.get("containerId"),
            remote_user=payload.get("remoteUser"),
            remote_workspace_folder=payload.get("remoteWorkspaceFolder"),
            message=payload.get("message") or payload.get("description"),
        )


def parse_up_output(lines: Iterable[str]) -> ContainerUpResult | None:
    """Return the last JSON line carrying an ``outcome`` key."""

    for line in reversed(list(lines)):
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict) and parsed.get("outcome"):
            return ContainerUpResult.from_payload(parsed)
    return None


def _remote_env_args(remote_env: Mapping[str, str] | None) -> list[str]:
    args: list[str] = []
    for key, value in (remote_env or {}).items():
        args.extend(["--remote-env", f"{key}={value}"])
    return args


def git_mount_args(workspace: Path) -> list[str]:
    """Bind-mount the shared ``.git`` directory where the worktree's relative gitdir expects it."""

    main_git_dir = resolve_main_git_dir(workspace)
    if main_git_dir is None:
        return []
    relative = os.path.relpath(main_git_dir, workspace.parent)
    target = posixpath.normpath(posixpath.join(CONTAINER_WORKSPACES_ROOT, Path(relative).as_posix()))
    return ["--mount", f"type=bind,source={main_git_dir},target={target}"]


class ContainerRuntime:
    """Start, exec into and stop dev containers bound to worktree paths."""

    def __init__(self, devcontainer: Path | None = None, docker: Path | None = None) -> None:
        self._devcontainer = self._resolve_executable("devcontainer", devcontainer)
        self._docker = self._resolve_executable("docker", docker)

    @staticmethod
    def _resolve_executable(name: str, explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise ToolNotFoundError(f"{name} executable not found at {candidate}")

        binary = shutil.which(name)
        if binary is None:
            raise ToolNotFoundError(f"{name} executable not found on PATH")
        return Path(binary)

    @property
    def devcontainer(self) -> Path:
        return self._devcontainer

    @property
    def docker(self) -> Path:
        return self._docker

    async def up(
        self,
        workspace: Path | str,
        *,
        remote_env: Mapping[str, str] | None = None,
        on_output: OutputCallback | None = None,
    ) -> ContainerUpResult:
        """Start (or reuse) the dev container for ``workspace``.

        Raises :class:`EnvironmentStartError` when the CLI fails or reports a
        non-success outcome.
        """

        workspace_path = Path(workspace).resolve()
        args = [
            "up",
            "--workspace-folder",
            str(workspace_path),
            "--log-format",
            "json",
            # Keep the worktree itself as the workspace so exec resolves the right directory.
            "--mount-workspace-git-root",
            "false",
            *git_mount_args(workspace_path),
            *_remote_env_args(remote_env),
        ]

        async def _forward(line: str) -> None:
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                await notify(on_output, line)
                return
            if isinstance(parsed, dict) and isinstance(parsed.get("text"), str):
                await notify(on_output, parsed["text"].rstrip("\n"))

        process = await self._spawn(self._devcontainer, args, merge_stderr=False)
        returncode, lines, stderr = await self._collect(process, _forward)

        result = parse_up_output(lines)
        if result is not None and not result.ok:
            raise EnvironmentStartError(
                f"Container failed to start: {result.message or 'unknown error'}"
            )
        if returncode != 0:
            detail = stderr.strip() or f"exit code {returncode}"
            raise EnvironmentStartError(f"devcontainer up failed: {detail}")
        if result is None:
            raise EnvironmentStartError("Failed to parse devcontainer up output:\n" + "\n".join(lines))

        logger.info(
            "Container started",
            extra={"workspace": str(workspace_path), "container_id": result.container_id},
        )
        return result

    async def exec(
        self,
        workspace: Path | str,
        command: Sequence[str],
        *,
        remote_env: Mapping[str, str] | None = None,
        on_output: OutputCallback | None = None,
        timeout: float | None = None,
    ) -> int:
        """Run ``command`` inside the running container and return its exit code.

        Output lines (stdout and stderr interleaved) are forwarded to
        ``on_output``. When ``timeout`` elapses the process is killed and
        :class:`ExecTimeoutError` is raised.
        """

        workspace_path = Path(workspace).resolve()
        args = [
            "exec",
            "--workspace-folder",
            str(workspace_path),
            *_remote_env_args(remote_env),
            *command,
        ]

        process = await self._spawn(self._devcontainer, args, merge_stderr=True)
        try:
            returncode, _, _ = await asyncio.wait_for(
                self._collect(process, lambda line: notify(on_output, line)),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            if process.returncode is None:
                process.kill()
            await process.wait()
            raise ExecTimeoutError(
                f"Command in {workspace_path} exceeded {timeout} seconds", timeout=timeout or 0
            ) from None
        return returncode

    async def find_container(self, workspace: Path | str, *, running_only: bool = False) -> str | None:
        """Return the id of the container labelled with ``workspace``, if any."""

        args = ["ps", "--filter", f"label={WORKSPACE_LABEL}={Path(workspace).resolve()}"]
        if running_only:
            args.extend(["--filter", "status=running"])
        else:
            args.append("-a")
        args.extend(["--format", "{{.ID}}"])

        stdout = await self._docker_run(args)
        ids = [line.strip() for line in stdout.splitlines() if line.strip()]
        return ids[0] if ids else None

    async def is_running(self, workspace: Path | str) -> bool:
        return await self.find_container(workspace, running_only=True) is not None

    async def down(self, workspace: Path | str) -> bool:
        """Stop and remove the workspace's container; ``False`` when none exists."""

        container_id = await self.find_container(workspace)
        if container_id is None:
            return False
        await self._docker_run(["rm", "-f", container_id])
        logger.info("Container removed", extra={"workspace": str(workspace), "container_id": container_id})
        return True

    async def _docker_run(self, args: Sequence[str]) -> str:
        process = await asyncio.create_subprocess_exec(
            str(self._docker),
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip() or f"exit code {process.returncode}"
            raise ContainerRuntimeError(f"docker {' '.join(args)} failed: {detail}")
        return stdout.decode("utf-8", errors="replace")

    @staticmethod
    async def _spawn(
        executable: Path, args: Sequence[str], *, merge_stderr: bool
    ) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            str(executable),
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
            limit=_STREAM_LIMIT,
        )

    @staticmethod
    async def _collect(
        process: asyncio.subprocess.Process,
        on_line: Callable[[str], Awaitable[None]],
    ) -> tuple[int, list[str], str]:
        lines: list[str] = []

        async def _pump_stdout() -> None:
            assert process.stdout is not None
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                lines.append(line)
                await on_line(line)

        async def _pump_stderr() -> str:
            if process.stderr is None:
                return ""
            data = await process.stderr.read()
            return data.decode("utf-8", errors="replace")

        _, stderr = await asyncio.gather(_pump_stdout(), _pump_stderr())
        returncode = await process.wait()
        return returncode, lines, stderr


__all__ = [
    "ContainerRuntime",
    "ContainerUpResult",
    "OutputCallback",
    "git_mount_args",
    "notify",
    "parse_up_output",
]
