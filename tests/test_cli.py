from __future__ import annotations

import argparse
import importlib.util
import json
from pathlib import Path

import pytest

from sandbox_mcp.ledger import IssueStore, OrchestratorStore, issue_store_path, task_store_path


def _load_diag(name: str):
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "sandbox_diag.py"
    spec = importlib.util.spec_from_file_location(name, module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


def _seed(repo: Path) -> None:
    store = OrchestratorStore(task_store_path(repo))
    store.create_orchestration("Ship login", id="orch")
    store.create_task("orch", "Schema", "d", id="schema", branch="sandbox/schema")
    store.create_task("orch", "API", "d", id="api", dependencies=["schema"])
    issues = IssueStore(issue_store_path(repo))
    issues.create_issue("Crash", "d", id="001", priority="high", labels=["bug"])


def test_tasks_and_orchestrations_output(git_repo: Path, capsys) -> None:
    _seed(git_repo)
    diag = _load_diag("sandbox_diag_tasks")

    diag.main(["--dir", str(git_repo), "orchestrations"])
    diag.main(["--dir", str(git_repo), "tasks", "--ready"])

    out = capsys.readouterr().out.splitlines()
    assert out[0] == "orch [active] Ship login (2 tasks)"
    assert out[1] == "schema [pending] Schema (deps: -) -> sandbox/schema"
    assert len(out) == 2

    diag.main(["--dir", str(git_repo), "tasks", "--json", "--orchestration-id", "orch"])
    payload = json.loads(capsys.readouterr().out)
    assert [task["id"] for task in payload] == ["schema", "api"]


def test_cycles_and_issues_output(git_repo: Path, capsys) -> None:
    _seed(git_repo)
    diag = _load_diag("sandbox_diag_cycles")

    diag.cmd_cycles(argparse.Namespace(dir=str(git_repo)))
    assert json.loads(capsys.readouterr().out) == {"has_cycles": False, "cycles": []}

    diag.main(["--dir", str(git_repo), "issues", "--label", "bug"])
    assert capsys.readouterr().out.strip() == "001 [open/high] Crash (bug)"


def test_corrupt_ledger_exits(git_repo: Path, capsys) -> None:
    path = task_store_path(git_repo)
    path.parent.mkdir(parents=True)
    path.write_text("{broken", encoding="utf-8")
    diag = _load_diag("sandbox_diag_corrupt")

    with pytest.raises(SystemExit) as excinfo:
        diag.main(["--dir", str(git_repo), "tasks"])

    assert excinfo.value.code == 1
    assert "Ledger unavailable" in capsys.readouterr().out


def test_outside_git_repository_exits(tmp_path: Path, capsys) -> None:
    diag = _load_diag("sandbox_diag_nogit")

    with pytest.raises(SystemExit):
        diag.main(["--dir", str(tmp_path), "cycles"])

    assert "Not a git repository" in capsys.readouterr().out


def test_init_writes_repo_files(tmp_path: Path, capsys) -> None:
    diag = _load_diag("sandbox_diag_init")

    diag.main(["--dir", str(tmp_path), "init"])

    out = capsys.readouterr().out
    assert "(written)" in out
    assert (tmp_path / ".copilot" / "mcp-config.json").exists()
    assert (tmp_path / ".github" / "agents" / "orchestrator.agent.md").exists()
