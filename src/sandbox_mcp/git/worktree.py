"""Git worktree management for sandboxes."""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from ..errors import VcsError
from .models import DETACHED_BRANCH, DiffResult, RebaseResult, WorktreeInfo
from .runner import GitRunner

logger = logging.getLogger(__name__)

_GITDIR_PATTERN = re.compile(r"^gitdir:\s*(.+)$")

# Accept the default commit message when a resumed rebase needs one.
_NON_INTERACTIVE_ENV = {"GIT_EDITOR": "true", "GIT_SEQUENCE_EDITOR": "true"}


def generate_branch_name(prefix: str = "sandbox/", *, now: datetime | None = None) -> str:
    """Return a timestamp-derived sandbox branch name, e.g. ``sandbox/2026-02-07T04-30-00``."""

    moment = now or datetime.now(timezone.utc)
    return f"{prefix}{moment.strftime('%Y-%m-%dT%H-%M-%S')}"


def parse_worktree_porcelain(output: str) -> list[WorktreeInfo]:
    """Parse ``git worktree list --porcelain`` output into records."""

    worktrees: list[WorktreeInfo] = []
    current: WorktreeInfo | None = None

    for line in output.splitlines():
        if line.startswith("worktree "):
            if current is not None:
                worktrees.append(current)
            current = WorktreeInfo(path=line[len("worktree "):])
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current.head = line[len("HEAD "):]
        elif line.startswith("branch "):
            current.branch = line[len("branch "):].removeprefix("refs/heads/")
        elif line == "bare":
            current.is_bare = True
        elif line == "detached":
            current.is_detached = True
            current.branch = DETACHED_BRANCH
        elif line == "prunable" or line.startswith("prunable "):
            current.is_prunable = True

    if current is not None:
        worktrees.append(current)

    return worktrees


class WorktreeManager:
    """Create, inspect, rebase and merge git worktrees through the git CLI."""

    def __init__(self, runner: GitRunner | None = None) -> None:
        self._git = runner or GitRunner()

    @property
    def runner(self) -> GitRunner:
        return self._git

    async def git_root(self, directory: Path | str) -> Path:
        result = await self._git.run(directory, "rev-parse", "--show-toplevel")
        return Path(result.stdout.strip())

    async def repo_name(self, directory: Path | str) -> str:
        return (await self.git_root(directory)).name

    async def git_dir(self, worktree_path: Path | str) -> Path:
        """Return the private git directory of a worktree."""

        result = await self._git.run(worktree_path, "rev-parse", "--absolute-git-dir")
        return Path(result.stdout.strip())

    async def create(
        self,
        repo_root: Path | str,
        path: Path | str,
        branch: str,
        base_ref: str,
    ) -> Path:
        """Create ``branch`` from ``base_ref`` checked out at ``path``.

        The worktree's ``.git`` file is rewritten to point at its git directory
        through a path relative to the worktree itself. Git writes an absolute
        host path by default, which does not resolve once the worktree is
        mounted inside a container. ``--relative-paths`` is avoided because it
        enables the ``extensions.relativeWorktrees`` repository extension,
        which some git consumers refuse to read.
        """

        worktree_path = Path(path).expanduser()
        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        worktree_path = worktree_path.resolve()

        await self._git.run(repo_root, "worktree", "add", "-b", branch, str(worktree_path), base_ref)
        self._relativize_gitdir(worktree_path)

        logger.debug(
            "Created worktree",
            extra={"path": str(worktree_path), "branch": branch, "base": base_ref},
        )
        return worktree_path

    @staticmethod
    def _relativize_gitdir(worktree_path: Path) -> None:
        dot_git = worktree_path / ".git"
        content = dot_git.read_text(encoding="utf-8").strip()
        match = _GITDIR_PATTERN.match(content)
        if match is None:
            return
        absolute_gitdir = (worktree_path / match.group(1).strip()).resolve()
        relative_gitdir = os.path.relpath(absolute_gitdir, worktree_path)
        dot_git.write_text(f"gitdir: {relative_gitdir}\n", encoding="utf-8")

    async def remove(self, repo_root: Path | str, path: Path | str) -> None:
        """Force-remove a worktree; a directory that is already gone only gets pruned."""

        if not Path(path).exists():
            logger.debug("Worktree path already missing; pruning", extra={"path": str(path)})
            await self.prune(repo_root)
            return
        await self._git.run(repo_root, "worktree", "remove", "--force", str(path))

    async def prune(self, repo_root: Path | str) -> None:
        await self._git.run(repo_root, "worktree", "prune")

    async def list_worktrees(self, repo_root: Path | str) -> list[WorktreeInfo]:
        result = await self._git.run(repo_root, "worktree", "list", "--porcelain")
        return parse_worktree_porcelain(result.stdout)

    async def find_worktree(self, repo_root: Path | str, branch: str) -> WorktreeInfo | None:
        """Return the worktree holding ``branch``, including one detached mid-rebase."""

        worktrees = await self.list_worktrees(repo_root)
        for worktree in worktrees:
            if worktree.branch == branch and not worktree.is_bare:
                return worktree
        for worktree in worktrees:
            if worktree.is_detached and not worktree.is_prunable:
                if await self.rebasing_branch(worktree.path) == branch:
                    return worktree
        return None

    async def resolve_branch(self, worktree: WorktreeInfo) -> str | None:
        """Branch a worktree belongs to; detached worktrees resolve through an in-progress rebase."""

        if worktree.is_detached:
            return await self.rebasing_branch(worktree.path)
        return worktree.branch

    async def rebasing_branch(self, worktree_path: Path | str) -> str | None:
        """Return the branch being rebased in ``worktree_path``, if a rebase is in progress."""

        git_dir = await self.git_dir(worktree_path)
        for state_dir in ("rebase-merge", "rebase-apply"):
            head_name = git_dir / state_dir / "head-name"
            if head_name.is_file():
                ref = head_name.read_text(encoding="utf-8").strip()
                return ref.removeprefix("refs/heads/")
        return None

    async def delete_branch(self, repo_root: Path | str, branch: str) -> None:
        await self._git.run(repo_root, "branch", "-D", branch)

    async def list_local_branches(self, repo_root: Path | str) -> list[str]:
        result = await self._git.run(repo_root, "branch", "--list", "--format=%(refname:short)")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def current_branch(self, repo_root: Path | str) -> str:
        result = await self._git.run(repo_root, "rev-parse", "--abbrev-ref", "HEAD")
        return result.stdout.strip()

    async def conflicted_files(self, worktree_path: Path | str) -> list[str]:
        result = await self._git.run(
            worktree_path, "diff", "--name-only", "--diff-filter=U", check=False
        )
        if not result.ok:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def uncommitted_files(
        self, worktree_path: Path | str, *, ignore: Iterable[str] = ()
    ) -> list[str]:
        """Paths with staged, unstaged or untracked changes, minus ``ignore``."""

        result = await self._git.run(
            worktree_path, "status", "--porcelain", "--untracked-files=all"
        )
        skipped = set(ignore)
        paths: list[str] = []
        for line in result.stdout.splitlines():
            if len(line) < 4:
                continue
            path = line[3:].split(" -> ")[-1]
            if path not in skipped:
                paths.append(path)
        return paths

    async def rebase_in_progress(self, worktree_path: Path | str) -> bool:
        git_dir = await self.git_dir(worktree_path)
        return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()

    async def rebase(self, worktree_path: Path | str, onto: str) -> RebaseResult:
        """Replay the worktree's branch onto ``onto``.

        A content conflict leaves the rebase in progress and is reported as an
        unsuccessful result. Any other failure aborts the rebase and raises
        :class:`VcsError`.
        """

        result = await self._git.run(
            worktree_path, "rebase", "--autostash", onto, check=False, env=_NON_INTERACTIVE_ENV
        )
        if result.ok:
            return RebaseResult(success=True)
        return await self._handle_rebase_failure(
            worktree_path, f"Rebase of worktree onto '{onto}'", result.stderr
        )

    async def continue_rebase(self, worktree_path: Path | str) -> RebaseResult:
        """Resume an in-progress rebase once its conflicts have been resolved."""

        conflicts = await self.conflicted_files(worktree_path)
        if conflicts:
            return RebaseResult(success=False, conflict_files=conflicts)

        result = await self._git.run(
            worktree_path, "rebase", "--continue", check=False, env=_NON_INTERACTIVE_ENV
        )
        if result.ok:
            return RebaseResult(success=True)
        return await self._handle_rebase_failure(worktree_path, "Continuing rebase", result.stderr)

    async def _handle_rebase_failure(
        self, worktree_path: Path | str, action: str, stderr: str
    ) -> RebaseResult:
        conflicts = await self.conflicted_files(worktree_path)
        if conflicts:
            return RebaseResult(success=False, conflict_files=conflicts)

        abort = await self._git.run(worktree_path, "rebase", "--abort", check=False)
        if not abort.ok:
            logger.warning(
                "Failed to abort rebase",
                extra={"worktree": str(worktree_path), "stderr": abort.stderr.strip()},
            )
        raise VcsError(f"{action} failed: {stderr.strip() or 'unknown error'}", stderr=stderr)

    async def fast_forward_merge(self, repo_root: Path | str, branch: str) -> None:
        await self._git.run(repo_root, "merge", "--ff-only", branch)

    async def merge_base(self, worktree_path: Path | str, *refs: str) -> str:
        result = await self._git.run(worktree_path, "merge-base", *refs)
        return result.stdout.strip()

    async def diff(self, worktree_path: Path | str, base: str) -> DiffResult:
        """Summarize changes between ``base`` and the worktree's HEAD."""

        revision = f"{base}..HEAD"
        stats = await self._git.run(worktree_path, "diff", "--stat", revision)
        full = await self._git.run(worktree_path, "diff", revision)
        names = await self._git.run(worktree_path, "diff", "--name-only", revision)
        return DiffResult(
            files=[line for line in names.stdout.splitlines() if line.strip()],
            stats=stats.stdout.strip(),
            diff=full.stdout.strip(),
        )


__all__ = ["WorktreeManager", "generate_branch_name", "parse_worktree_porcelain"]
