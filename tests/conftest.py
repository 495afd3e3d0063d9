from __future__ import annotations

from pathlib import Path

import pytest

from helpers import commit_file, git


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "project"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.email", "sandbox@example.com")
    git(repo, "config", "user.name", "Sandbox Tests")
    git(repo, "config", "commit.gpgsign", "false")
    commit_file(repo, "README.md", "hello\n", "initial")
    return repo
