"""Async runner for the git CLI."""

from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from ..errors import ToolNotFoundError, VcsError

_SANITIZED_VARS = {
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_INDEX_FILE",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return an environment that lets ``git -C`` discover the repository itself."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


@dataclass(slots=True)
class GitResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitRunner:
    """Execute git commands asynchronously against a working directory."""

    def __init__(self, executable: Path | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise ToolNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise ToolNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def run(
        self,
        cwd: Path | str,
        *args: str,
        check: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> GitResult:
        """Run ``git -C cwd <args>``; raise :class:`VcsError` on failure when ``check`` is set."""

        result = await self._invoke("-C", str(cwd), *args, env=env)
        if check and not result.ok:
            detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
            raise VcsError(
                f"git {' '.join(args)} failed: {detail}",
                args=result.args,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    async def _invoke(self, *args: str, env: Mapping[str, str] | None = None) -> GitResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(env),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return GitResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


__all__ = ["GitResult", "GitRunner", "sanitize_environment"]
