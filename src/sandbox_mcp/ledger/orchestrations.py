"""Orchestration and task ledger with dependency-readiness queries."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from pydantic import ValidationError

from ..errors import DependencyCycleError, NotFoundError, StoreCorruptionError
from .document import JsonDocument
from .models import TASK_SUCCESS_STATUS, TERMINAL_TASK_STATUSES, Orchestration, Task

logger = logging.getLogger(__name__)

TASKS_FILENAME = "tasks.json"


def _parse_task(raw: Any) -> Task:
    try:
        return Task.model_validate(raw)
    except ValidationError as exc:
        raise StoreCorruptionError(f"Malformed task record: {exc}") from exc


def _parse_orchestration(raw: Any) -> Orchestration:
    try:
        return Orchestration.model_validate(raw)
    except ValidationError as exc:
        raise StoreCorruptionError(f"Malformed orchestration record: {exc}") from exc


def _dependency_graph(tasks: Mapping[str, Any]) -> dict[str, list[str]]:
    graph: dict[str, list[str]] = {}
    for task_id, raw in tasks.items():
        deps = raw.get("dependencies", []) if isinstance(raw, dict) else []
        graph[task_id] = [str(dep) for dep in deps]
    return graph


def _find_path(graph: Mapping[str, list[str]], start: str, goal: str) -> list[str] | None:
    """Depth-first search for a dependency path from ``start`` to ``goal``."""

    stack: list[tuple[str, list[str]]] = [(start, [start])]
    seen: set[str] = set()
    while stack:
        node, path = stack.pop()
        if node == goal:
            return path
        if node in seen:
            continue
        seen.add(node)
        for dep in graph.get(node, []):
            stack.append((dep, [*path, dep]))
    return None


def find_cycles(graph: Mapping[str, list[str]]) -> list[list[str]]:
    """Return each distinct dependency cycle, rotated to start at its smallest id."""

    white, gray, black = 0, 1, 2
    color = {node: white for node in graph}
    stack: list[str] = []
    found: dict[tuple[str, ...], list[str]] = {}

    def visit(node: str) -> None:
        color[node] = gray
        stack.append(node)
        for dep in graph.get(node, []):
            if dep not in graph:
                continue
            if color[dep] == gray:
                cycle = stack[stack.index(dep):]
                pivot = cycle.index(min(cycle))
                rotated = cycle[pivot:] + cycle[:pivot]
                found.setdefault(tuple(rotated), rotated)
            elif color[dep] == white:
                visit(dep)
        stack.pop()
        color[node] = black

    for node in graph:
        if color[node] == white:
            visit(node)
    return list(found.values())


class OrchestratorStore:
    """Persist orchestrations and their tasks in one flat JSON document."""

    def __init__(self, path: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._document = JsonDocument(path, sections=("orchestrations", "tasks"))
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def path(self) -> Path:
        return self._document.path

    def _now(self) -> str:
        return self._clock().isoformat()

    # Orchestrations -----------------------------------------------------

    def create_orchestration(self, description: str, *, id: str | None = None) -> Orchestration:
        timestamp = self._now()
        with self._document.transaction() as data:
            orchestration_id = id or str(uuid.uuid4())
            if orchestration_id in data["orchestrations"]:
                raise ValueError(f"Orchestration '{orchestration_id}' already exists")
            orchestration = Orchestration(
                id=orchestration_id,
                description=description,
                created_at=timestamp,
                updated_at=timestamp,
            )
            data["orchestrations"][orchestration.id] = orchestration.to_document()

        logger.info("Created orchestration", extra={"orchestration_id": orchestration.id})
        return orchestration

    def get_orchestration(self, orchestration_id: str) -> Orchestration | None:
        raw = self._document.read()["orchestrations"].get(orchestration_id)
        return _parse_orchestration(raw) if raw is not None else None

    def require_orchestration(self, orchestration_id: str) -> Orchestration:
        orchestration = self.get_orchestration(orchestration_id)
        if orchestration is None:
            raise NotFoundError(f"Orchestration not found: {orchestration_id}")
        return orchestration

    def list_orchestrations(self, *, status: str | None = None) -> list[Orchestration]:
        records = [_parse_orchestration(raw) for raw in self._document.read()["orchestrations"].values()]
        if status:
            records = [record for record in records if record.status == status]
        return records

    def update_orchestration(
        self,
        orchestration_id: str,
        *,
        description: str | None = None,
        status: str | None = None,
    ) -> Orchestration:
        updates: dict[str, Any] = {}
        if description is not None:
            updates["description"] = description
        if status is not None:
            updates["status"] = status

        with self._document.transaction() as data:
            raw = data["orchestrations"].get(orchestration_id)
            if raw is None:
                raise NotFoundError(f"Orchestration not found: {orchestration_id}")
            current = _parse_orchestration(raw)
            orchestration = Orchestration.model_validate(
                {**current.model_dump(), **updates, "updated_at": self._now()}
            )
            data["orchestrations"][orchestration_id] = orchestration.to_document()
        return orchestration

    # Tasks --------------------------------------------------------------

    def create_task(
        self,
        orchestration_id: str,
        title: str,
        description: str,
        *,
        id: str | None = None,
        dependencies: Iterable[str] | None = None,
        branch: str | None = None,
        session_id: str | None = None,
    ) -> Task:
        """Create a pending task.

        The orchestration must exist and the id must be unused. Dependencies
        may name tasks that do not exist yet, but may not close a cycle: the
        check also covers existing tasks that already list the new id.
        """

        timestamp = self._now()
        deps = list(dict.fromkeys(dependencies or []))

        with self._document.transaction() as data:
            if orchestration_id not in data["orchestrations"]:
                raise NotFoundError(f"Orchestration not found: {orchestration_id}")

            task_id = id or str(uuid.uuid4())
            if task_id in data["tasks"]:
                raise ValueError(f"Task '{task_id}' already exists")

            graph = _dependency_graph(data["tasks"])
            graph[task_id] = deps
            for dep in deps:
                path = _find_path(graph, dep, task_id)
                if path is not None:
                    cycle = [task_id, *path]
                    raise DependencyCycleError(
                        f"Task '{task_id}' would create a dependency cycle: {' -> '.join(cycle)}",
                        cycle=cycle,
                    )

            task = Task(
                id=task_id,
                orchestration_id=orchestration_id,
                title=title,
                description=description,
                dependencies=deps,
                branch=branch,
                session_id=session_id,
                created_at=timestamp,
                updated_at=timestamp,
            )
            data["tasks"][task.id] = task.to_document()

        logger.info(
            "Created task",
            extra={"task_id": task.id, "orchestration_id": orchestration_id, "dependencies": deps},
        )
        return task

    def get_task(self, task_id: str) -> Task | None:
        raw = self._document.read()["tasks"].get(task_id)
        return _parse_task(raw) if raw is not None else None

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def _all_tasks(self) -> dict[str, Task]:
        return {task_id: _parse_task(raw) for task_id, raw in self._document.read()["tasks"].items()}

    def list_tasks(
        self,
        *,
        orchestration_id: str | None = None,
        status: str | None = None,
        ready: bool = False,
    ) -> list[Task]:
        """List tasks in creation order; ``ready`` keeps only tasks that can start now."""

        tasks = self._all_tasks()
        results = list(tasks.values())
        if orchestration_id:
            results = [task for task in results if task.orchestration_id == orchestration_id]
        if status:
            results = [task for task in results if task.status == status]
        if ready:
            results = [task for task in results if self._is_ready(task, tasks)]
        return results

    def update_task(
        self,
        task_id: str,
        *,
        status: str | None = None,
        branch: str | None = None,
        session_id: str | None = None,
        review_session_id: str | None = None,
        result: str | None = None,
    ) -> Task:
        updates = {
            key: value
            for key, value in {
                "status": status,
                "branch": branch,
                "session_id": session_id,
                "review_session_id": review_session_id,
                "result": result,
            }.items()
            if value is not None
        }

        with self._document.transaction() as data:
            raw = data["tasks"].get(task_id)
            if raw is None:
                raise NotFoundError(f"Task not found: {task_id}")
            current = _parse_task(raw)
            task = Task.model_validate({**current.model_dump(), **updates, "updated_at": self._now()})
            data["tasks"][task_id] = task.to_document()

        logger.info("Updated task", extra={"task_id": task_id, "fields": sorted(updates)})
        return task

    @staticmethod
    def _unmet(task: Task, tasks: Mapping[str, Task]) -> list[Task]:
        # Ids that resolve to no task are dropped rather than treated as unmet.
        return [
            tasks[dep]
            for dep in task.dependencies
            if dep in tasks and tasks[dep].status != TASK_SUCCESS_STATUS
        ]

    def _is_ready(self, task: Task, tasks: Mapping[str, Task]) -> bool:
        return task.status not in TERMINAL_TASK_STATUSES and not self._unmet(task, tasks)

    def get_unmet_dependencies(self, task_id: str) -> list[Task]:
        tasks = self._all_tasks()
        task = tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return self._unmet(task, tasks)

    def is_ready(self, task_id: str) -> bool:
        tasks = self._all_tasks()
        task = tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return self._is_ready(task, tasks)

    def find_task_by_branch(self, branch: str) -> Task | None:
        for task in self._all_tasks().values():
            if task.branch == branch:
                return task
        return None

    def find_dependency_cycles(self) -> list[list[str]]:
        return find_cycles(_dependency_graph(self._document.read()["tasks"]))


def task_store_path(git_root: Path, ledger_dirname: str = ".orchestrator") -> Path:
    return Path(git_root) / ledger_dirname / TASKS_FILENAME


__all__ = ["OrchestratorStore", "find_cycles", "task_store_path"]
