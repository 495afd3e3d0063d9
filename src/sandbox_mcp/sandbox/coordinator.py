"""Sandbox lifecycle: create, execute, merge, tear down and reclaim."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Iterable

from ..config import SandboxSettings, get_settings
from ..container import ContainerRuntime, OutputCallback, host_token
from ..container.devcontainer import (
    CONFIG_LOCATIONS,
    create_default_config,
    ensure_agent_feature,
    has_config,
)
from ..errors import NotFoundError, SandboxError, ToolNotFoundError
from ..git import DiffResult, GitRunner, WorktreeInfo, WorktreeManager, generate_branch_name
from .models import (
    CleanupResult,
    DownResult,
    MergeResult,
    SandboxExecResult,
    SandboxInfo,
    SandboxUpResult,
)
from .state import SandboxStateFile, SandboxStateRecord

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable["str | None"]]


def worktree_location(base_dir: Path, branch: str) -> Path:
    """Directory for ``branch`` under ``base_dir``; slashes become dashes."""

    return Path(base_dir) / branch.replace("/", "-")


class SandboxCoordinator:
    """Drive sandboxes through ``ready``, ``stopped`` and ``conflicted``.

    A sandbox is a branch checked out in its own worktree plus the dev
    container started on that worktree. ``runtime`` may be ``None`` when the
    container tooling is missing; git-only operations (merge, cleanup, list,
    diff) keep working and container steps are skipped with a warning.
    """

    def __init__(
        self,
        *,
        settings: SandboxSettings | None = None,
        worktrees: WorktreeManager | None = None,
        runtime: ContainerRuntime | None = None,
        token_provider: TokenProvider | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        if worktrees is None:
            git_path = Path(self._settings.git_path) if self._settings.git_path else None
            worktrees = WorktreeManager(GitRunner(git_path))
        self._worktrees = worktrees
        self._runtime = runtime
        self._token_provider = token_provider or host_token

    @property
    def settings(self) -> SandboxSettings:
        return self._settings

    @property
    def worktrees(self) -> WorktreeManager:
        return self._worktrees

    @property
    def runtime(self) -> ContainerRuntime | None:
        return self._runtime

    def _require_runtime(self) -> ContainerRuntime:
        if self._runtime is None:
            raise ToolNotFoundError(
                "Container runtime is unavailable; install the devcontainer CLI and docker"
            )
        return self._runtime

    async def _reconcile_state(self, worktree_path: Path, state_file: SandboxStateFile) -> SandboxStateRecord:
        """Drop a ``conflicted`` state whose rebase was aborted or finished outside the coordinator."""

        record = state_file.load()
        if record.state == "conflicted" and not await self._worktrees.rebase_in_progress(worktree_path):
            logger.info("Rebase no longer in progress; sandbox ready", extra={"worktree": str(worktree_path)})
            record = state_file.set_state("ready")
        return record

    async def _remote_env(self) -> dict[str, str]:
        if not self._settings.forward_token:
            return {}
        token = await self._token_provider()
        if not token:
            logger.debug("No host token to forward")
            return {}
        return {self._settings.token_env_var: token}

    async def _require_worktree(self, root: Path, branch: str) -> WorktreeInfo:
        info = await self._worktrees.find_worktree(root, branch)
        if info is None or info.is_prunable:
            raise NotFoundError(f"No sandbox worktree found for branch '{branch}'")
        return info

    async def _state_file(self, worktree_path: Path | str) -> SandboxStateFile:
        return SandboxStateFile(await self._worktrees.git_dir(worktree_path))

    def _worktree_base(self, root: Path, worktree_dir: Path | str | None) -> Path:
        if worktree_dir is not None:
            return Path(worktree_dir).expanduser().resolve()
        if self._settings.worktree_dir is not None:
            return Path(self._settings.worktree_dir)
        return root.parent / f"{root.name}-worktrees"

    async def up(
        self,
        directory: Path | str,
        *,
        branch: str | None = None,
        base: str = "HEAD",
        worktree_dir: Path | str | None = None,
        on_output: OutputCallback | None = None,
    ) -> SandboxUpResult:
        """Create the worktree and start its container.

        Any failure after the worktree exists removes the worktree and deletes
        the branch before the original error is re-raised.
        """

        runtime = self._require_runtime()
        root = await self._worktrees.git_root(directory)
        branch = branch or generate_branch_name(self._settings.branch_prefix)
        path = worktree_location(self._worktree_base(root, worktree_dir), branch)

        worktree_path = await self._worktrees.create(root, path, branch, base)
        logger.info("Created sandbox worktree", extra={"branch": branch, "worktree": str(worktree_path)})

        try:
            if not has_config(worktree_path):
                create_default_config(worktree_path)
            ensure_agent_feature(worktree_path)
            (await self._state_file(worktree_path)).set_state("ready")

            remote_env = await self._remote_env()
            started = await runtime.up(worktree_path, remote_env=remote_env, on_output=on_output)
        except Exception:
            logger.warning("Sandbox start failed; rolling back", extra={"branch": branch})
            await self._rollback(root, worktree_path, branch)
            raise

        return SandboxUpResult(
            branch=branch,
            worktree_path=str(worktree_path),
            container_id=started.container_id,
            remote_user=started.remote_user,
            remote_workspace_folder=started.remote_workspace_folder,
        )

    async def _rollback(self, root: Path, worktree_path: Path, branch: str) -> None:
        try:
            await self._worktrees.remove(root, worktree_path)
        except SandboxError as exc:
            logger.warning(
                "Rollback could not remove worktree",
                extra={"worktree": str(worktree_path), "error": str(exc)},
            )
        try:
            await self._worktrees.delete_branch(root, branch)
        except SandboxError as exc:
            logger.warning(
                "Rollback could not delete branch",
                extra={"branch": branch, "error": str(exc)},
            )

    async def exec(
        self,
        directory: Path | str,
        branch: str,
        task: str,
        *,
        session_id: str | None = None,
        on_output: OutputCallback | None = None,
        timeout: float | None = None,
    ) -> SandboxExecResult:
        """Run the agent with ``task`` inside the sandbox, starting its container if needed."""

        runtime = self._require_runtime()
        root = await self._worktrees.git_root(directory)
        info = await self._require_worktree(root, branch)
        worktree_path = Path(info.path)
        state_file = await self._state_file(worktree_path)
        await self._reconcile_state(worktree_path, state_file)

        remote_env = await self._remote_env()
        if not await runtime.is_running(worktree_path):
            logger.info("Starting stopped sandbox container", extra={"branch": branch})
            await runtime.up(worktree_path, remote_env=remote_env, on_output=on_output)
            if state_file.load().state == "stopped":
                state_file.set_state("ready")

        session_id = session_id or str(uuid.uuid4())
        command = [
            self._settings.agent_command,
            *self._settings.agent_flags,
            "-p",
            task,
            "--resume",
            session_id,
        ]
        exit_code = await runtime.exec(
            worktree_path,
            command,
            remote_env=remote_env,
            on_output=on_output,
            timeout=timeout if timeout is not None else self._settings.exec_timeout,
        )
        state_file.append_session(session_id, task)

        logger.info(
            "Agent run finished",
            extra={"branch": branch, "exit_code": exit_code, "session_id": session_id},
        )
        return SandboxExecResult(worktree_path=str(worktree_path), exit_code=exit_code, session_id=session_id)

    async def merge(self, directory: Path | str, branch: str) -> MergeResult:
        """Rebase the sandbox onto the main checkout's branch and fast-forward it.

        A worktree with uncommitted changes outside the dev container config
        is left untouched and reported through ``uncommitted_files``. A
        conflict leaves the rebase in progress, records the sandbox as
        ``conflicted`` and returns an unsuccessful result. Calling again after
        the conflicts are resolved continues that rebase.
        """

        root = await self._worktrees.git_root(directory)
        info = await self._require_worktree(root, branch)
        worktree_path = Path(info.path)
        state_file = await self._state_file(worktree_path)
        target = await self._worktrees.current_branch(root)

        if await self._worktrees.rebase_in_progress(worktree_path):
            logger.info("Resuming in-progress rebase", extra={"branch": branch})
            rebase = await self._worktrees.continue_rebase(worktree_path)
        else:
            uncommitted = await self._worktrees.uncommitted_files(
                worktree_path, ignore=[location.as_posix() for location in CONFIG_LOCATIONS]
            )
            if uncommitted:
                logger.warning(
                    "Refusing to merge sandbox with uncommitted changes",
                    extra={"branch": branch, "uncommitted_files": uncommitted},
                )
                return MergeResult(
                    success=False, branch=branch, target=target, uncommitted_files=uncommitted
                )
            rebase = await self._worktrees.rebase(worktree_path, target)

        if not rebase.success:
            state_file.set_state("conflicted", conflict_files=rebase.conflict_files)
            logger.info(
                "Rebase stopped on conflicts",
                extra={"branch": branch, "conflict_files": rebase.conflict_files},
            )
            return MergeResult(
                success=False, branch=branch, target=target, conflict_files=rebase.conflict_files
            )

        await self._worktrees.fast_forward_merge(root, branch)
        logger.info("Merged sandbox", extra={"branch": branch, "target": target})
        await self._teardown(root, worktree_path, branch)
        return MergeResult(success=True, branch=branch, target=target)

    async def down(self, directory: Path | str, branch: str, *, container_only: bool = False) -> DownResult:
        root = await self._worktrees.git_root(directory)
        info = await self._require_worktree(root, branch)
        worktree_path = Path(info.path)

        if container_only:
            container_removed = await self._stop_container(worktree_path)
            state_file = await self._state_file(worktree_path)
            if state_file.load().state != "conflicted":
                state_file.set_state("stopped")
            return DownResult(
                branch=branch, worktree_path=str(worktree_path), container_removed=container_removed
            )

        container_removed, worktree_removed = await self._teardown(root, worktree_path, branch)
        return DownResult(
            branch=branch,
            worktree_path=str(worktree_path),
            container_removed=container_removed,
            worktree_removed=worktree_removed,
        )

    async def _stop_container(self, worktree_path: Path) -> bool:
        if self._runtime is None:
            logger.warning(
                "Container runtime unavailable; skipping container stop",
                extra={"worktree": str(worktree_path)},
            )
            return False
        try:
            return await self._runtime.down(worktree_path)
        except SandboxError as exc:
            logger.warning(
                "Failed to stop container",
                extra={"worktree": str(worktree_path), "error": str(exc)},
            )
            return False

    async def _teardown(self, root: Path, worktree_path: Path, branch: str) -> tuple[bool, bool]:
        container_removed = await self._stop_container(worktree_path)

        worktree_removed = False
        try:
            await self._worktrees.remove(root, worktree_path)
            worktree_removed = True
        except SandboxError as exc:
            logger.warning(
                "Failed to remove worktree",
                extra={"worktree": str(worktree_path), "error": str(exc)},
            )
        try:
            await self._worktrees.delete_branch(root, branch)
        except SandboxError as exc:
            logger.warning("Failed to delete branch", extra={"branch": branch, "error": str(exc)})

        return container_removed, worktree_removed

    async def cleanup(
        self,
        directory: Path | str,
        *,
        dry_run: bool = False,
        protected_branches: Iterable[str] = (),
    ) -> CleanupResult:
        """Delete sandbox branches that no live worktree, checkout or task still uses."""

        root = await self._worktrees.git_root(directory)
        prefix = self._settings.branch_prefix

        live: set[str] = set()
        for worktree in await self._worktrees.list_worktrees(root):
            if worktree.is_bare or worktree.is_prunable:
                continue
            resolved = await self._worktrees.resolve_branch(worktree)
            if resolved:
                live.add(resolved)
        live.add(await self._worktrees.current_branch(root))
        protected = set(protected_branches)

        orphaned = [
            branch
            for branch in await self._worktrees.list_local_branches(root)
            if branch.startswith(prefix) and branch not in live and branch not in protected
        ]
        result = CleanupResult(orphaned_branches=orphaned, dry_run=dry_run)
        if dry_run or not orphaned:
            return result

        await self._worktrees.prune(root)
        for branch in orphaned:
            try:
                await self._worktrees.delete_branch(root, branch)
            except SandboxError as exc:
                logger.warning(
                    "Failed to delete orphaned branch",
                    extra={"branch": branch, "error": str(exc)},
                )
                continue
            result.deleted_branches.append(branch)

        logger.info("Cleaned up orphaned branches", extra={"deleted": result.deleted_branches})
        return result

    async def list_sandboxes(self, directory: Path | str) -> list[SandboxInfo]:
        root = await self._worktrees.git_root(directory)
        sandboxes: list[SandboxInfo] = []
        for worktree in await self._worktrees.list_worktrees(root):
            if worktree.is_bare or worktree.is_prunable or Path(worktree.path) == root:
                continue
            branch = await self._worktrees.resolve_branch(worktree) or worktree.branch or ""
            record = await self._reconcile_state(
                Path(worktree.path), await self._state_file(worktree.path)
            )
            sandboxes.append(
                SandboxInfo(
                    branch=branch,
                    worktree_path=worktree.path,
                    head=worktree.head,
                    state=record.state,
                    sessions=record.sessions,
                    conflict_files=record.conflict_files,
                )
            )
        return sandboxes

    async def diff(self, directory: Path | str, branch: str, *, base: str | None = None) -> DiffResult:
        """Changes on the sandbox branch since ``base`` or its fork point from the main checkout."""

        root = await self._worktrees.git_root(directory)
        info = await self._require_worktree(root, branch)
        if base is None:
            target = await self._worktrees.current_branch(root)
            base = await self._worktrees.merge_base(info.path, target, "HEAD")
        return await self._worktrees.diff(info.path, base)


__all__ = ["SandboxCoordinator", "TokenProvider", "worktree_location"]
