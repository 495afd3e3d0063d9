"""Error taxonomy shared by the sandbox coordinator and the ledger."""

from __future__ import annotations

from typing import Sequence


class SandboxError(RuntimeError):
    """Base class for sandbox MCP errors."""


class ToolNotFoundError(SandboxError):
    """Raised when a required external executable cannot be located."""


class VcsError(SandboxError):
    """Raised when a git command fails for a reason other than a content conflict."""

    def __init__(
        self,
        message: str,
        *,
        args: Sequence[str] = (),
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = tuple(args)
        self.returncode = returncode
        self.stderr = stderr


class EnvironmentStartError(SandboxError):
    """Raised when the dev container for a sandbox fails to start."""


class ContainerRuntimeError(SandboxError):
    """Raised when a devcontainer or docker command fails outside of start-up."""


class ExecTimeoutError(SandboxError):
    """Raised when agent execution inside a sandbox exceeds its deadline."""

    def __init__(self, message: str, *, timeout: float) -> None:
        super().__init__(message)
        self.timeout = timeout


class NotFoundError(SandboxError, LookupError):
    """Raised when a referenced branch, task, issue, or orchestration does not exist."""


class StoreCorruptionError(SandboxError):
    """Raised when a persisted ledger document cannot be parsed."""


class DependencyCycleError(SandboxError, ValueError):
    """Raised when a task's dependencies would close a cycle."""

    def __init__(self, message: str, *, cycle: Sequence[str]) -> None:
        super().__init__(message)
        self.cycle = list(cycle)


__all__ = [
    "ContainerRuntimeError",
    "DependencyCycleError",
    "EnvironmentStartError",
    "ExecTimeoutError",
    "NotFoundError",
    "SandboxError",
    "StoreCorruptionError",
    "ToolNotFoundError",
    "VcsError",
]
