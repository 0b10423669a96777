"""Task store interface and the ``bd`` (beads) command-line client.

The graph builder and the orchestrator only need the :class:`TaskStore`
protocol. :class:`BeadsTaskStore` implements it by shelling out to
``bd --sandbox`` inside a plan directory. Every command is an argv list;
nothing passes through a shell.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

log = logging.getLogger(__name__)

TASK_OPEN = "open"
TASK_CLOSED = "closed"

ASSIGNMENT_STATUSES = ("pending", "sent", "in_progress", "completed", "failed")

_CREATED_ID = re.compile(r"([A-Za-z0-9._-]+)\s*$", re.MULTILINE)


class TaskStoreError(RuntimeError):
    """The task store command failed or produced unusable output."""


@dataclass
class Task:
    id: str
    title: str
    status: str = TASK_OPEN
    type: str = "task"
    parent: str | None = None
    assignee: str | None = None
    labels: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "type": self.type,
            "parent": self.parent,
            "assignee": self.assignee,
            "labels": list(self.labels),
            "blocked_by": list(self.blocked_by),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Build a task from our own ``to_dict`` shape (``blockedBy`` accepted too)."""
        blocked_by = data.get("blocked_by")
        if blocked_by is None:
            blocked_by = data.get("blockedBy") or []
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            status=data.get("status") or TASK_OPEN,
            type=data.get("type") or "task",
            parent=data.get("parent"),
            assignee=data.get("assignee"),
            labels=list(data.get("labels") or []),
            blocked_by=[str(b) for b in blocked_by],
        )


@dataclass
class TaskAssignment:
    task_id: str
    agent_id: str
    plan_id: str
    status: str = "pending"
    assigned_at: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "assigned_at": self.assigned_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskAssignment:
        return cls(
            task_id=str(data["task_id"]),
            agent_id=str(data.get("agent_id") or ""),
            plan_id=str(data.get("plan_id") or ""),
            status=data.get("status") or "pending",
            assigned_at=data.get("assigned_at"),
            completed_at=data.get("completed_at"),
        )


class TaskStore(Protocol):
    async def list_tasks(
        self,
        *,
        parent: str | None = None,
        status: str | None = None,
        labels: Sequence[str] = (),
    ) -> list[Task]: ...

    async def create_task(
        self,
        title: str,
        *,
        type: str = "task",
        parent: str | None = None,
        assignee: str | None = None,
        labels: Sequence[str] = (),
    ) -> str: ...

    async def update_task(
        self,
        task_id: str,
        *,
        assignee: str | None = None,
        add_labels: Sequence[str] = (),
        remove_labels: Sequence[str] = (),
        title: str | None = None,
    ) -> None: ...

    async def close_task(self, task_id: str) -> None: ...

    async def add_dependency(self, task_id: str, blocked_by: str) -> None: ...

    async def get_dependents(self, task_id: str) -> list[str]: ...


def _blockers(dependencies: Any) -> list[str]:
    if not isinstance(dependencies, list):
        return []
    return [
        str(dep["depends_on_id"])
        for dep in dependencies
        if isinstance(dep, dict) and dep.get("type") == "blocks" and dep.get("depends_on_id")
    ]


def parse_task_list(raw: str) -> list[Task]:
    """Map ``bd list --json`` output to :class:`Task` objects.

    bd names some fields differently: ``issue_type`` is the task type,
    ``owner`` the assignee, and ``blocks`` dependencies carry the blocker in
    ``depends_on_id``. Empty output is an empty list; anything that is not
    a JSON array raises :class:`TaskStoreError`.
    """
    if not raw.strip():
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise TaskStoreError(f"Unparsable task list output: {exc}") from exc
    if not isinstance(data, list):
        raise TaskStoreError(f"Task list output is not an array: {raw[:100]!r}")

    tasks: list[Task] = []
    for item in data:
        if not isinstance(item, dict) or "id" not in item:
            log.debug("Skipping task list entry without id: %r", item)
            continue
        tasks.append(
            Task(
                id=str(item["id"]),
                title=str(item.get("title") or ""),
                status=item.get("status") or TASK_OPEN,
                type=item.get("issue_type") or "task",
                parent=item.get("parent"),
                assignee=item.get("owner"),
                labels=list(item.get("labels") or []),
                blocked_by=_blockers(item.get("dependencies")),
            )
        )
    return tasks


class BeadsTaskStore:
    """Async client for the ``bd`` CLI scoped to one plan directory."""

    def __init__(self, plan_dir: str | Path, bd_bin: str = "bd") -> None:
        self.plan_dir = Path(plan_dir)
        self.bd_bin = bd_bin

    async def _run(self, *args: str) -> str:
        argv = [self.bd_bin, "--sandbox", *args]
        log.debug("Executing: %s (cwd=%s)", " ".join(argv), self.plan_dir)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.plan_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TaskStoreError(f"Could not run {self.bd_bin!r}: {exc}") from exc
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip() or f"exit code {proc.returncode}"
            raise TaskStoreError(f"bd {args[0]} failed: {message}")
        return stdout.decode(errors="replace")

    async def list_tasks(
        self,
        *,
        parent: str | None = None,
        status: str | None = None,
        labels: Sequence[str] = (),
    ) -> list[Task]:
        """List tasks. ``status`` of ``None`` or ``"all"`` includes closed tasks."""
        args = ["list", "--json", "--limit", "0"]
        if parent:
            args += ["--parent", parent]
        if status in (None, "all"):
            args.append("--all")
        else:
            args += ["--status", status]
        for label in labels:
            args += ["--label", label]
        tasks = parse_task_list(await self._run(*args))
        log.debug("List returned %d tasks (status=%s labels=%s)", len(tasks), status, list(labels))
        return tasks

    async def create_task(
        self,
        title: str,
        *,
        type: str = "task",
        parent: str | None = None,
        assignee: str | None = None,
        labels: Sequence[str] = (),
    ) -> str:
        args = ["create"]
        if type == "epic":
            args += ["--type", "epic"]
        if parent:
            args += ["--parent", parent]
        args.append(title)
        output = await self._run(*args)
        match = _CREATED_ID.search(output)
        task_id = match.group(1) if match else output.strip()
        if not task_id:
            raise TaskStoreError(f"bd create returned no task id for {title!r}")
        log.info("Created %s %s: %s", type, task_id, title)
        if assignee or labels:
            await self.update_task(task_id, assignee=assignee, add_labels=labels)
        return task_id

    async def update_task(
        self,
        task_id: str,
        *,
        assignee: str | None = None,
        add_labels: Sequence[str] = (),
        remove_labels: Sequence[str] = (),
        title: str | None = None,
    ) -> None:
        args = ["update", task_id]
        if assignee:
            args += ["--assignee", assignee]
        for label in add_labels:
            args += ["--add-label", label]
        for label in remove_labels:
            args += ["--remove-label", label]
        if title:
            args += ["--title", title]
        await self._run(*args)
        log.info("Updated task %s", task_id)

    async def close_task(self, task_id: str) -> None:
        await self._run("close", task_id)
        log.info("Closed task %s", task_id)

    async def add_dependency(self, task_id: str, blocked_by: str) -> None:
        """Record that *task_id* is blocked by *blocked_by*."""
        await self._run("dep", blocked_by, "--blocks", task_id)
        log.info("Added dependency: %s <- %s", task_id, blocked_by)

    async def get_dependents(self, task_id: str) -> list[str]:
        """Ids of tasks blocked by *task_id*. Best-effort: failures yield ``[]``."""
        try:
            output = await self._run("dep", "list", task_id, "--direction=up", "--json")
        except TaskStoreError as exc:
            log.debug("No dependents for %s (%s)", task_id, exc)
            return []
        if not output.strip():
            return []
        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            log.warning("Unparsable dependents output for %s", task_id)
            return []
        if not isinstance(data, list):
            return []
        return _ids(data)


def _ids(items: Iterable[Any]) -> list[str]:
    result = []
    for item in items:
        value = item if isinstance(item, str) else (item.get("id") if isinstance(item, dict) else None)
        if value:
            result.append(str(value))
    return result
