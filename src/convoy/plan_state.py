"""Per-plan JSON state shared by the supervisor and its worker callbacks.

Each plan directory holds three files:

- ``task-assignments.json``: list of :class:`TaskAssignment` dicts
- ``activities.json``: activity log, newest last, capped at 500 entries
- ``agents.json``: one snapshot per worker agent, including its events

Every read-modify-write runs under ``NamedMutex("plan-state")`` keyed by
plan id, so concurrent updates to the same plan never lose writes while
different plans proceed independently. Outward git pushes for a plan go
through a second mutex so they serialize without blocking state writes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from convoy.agent import WorkerAgent
from convoy.mutex import NamedMutex
from convoy.paths import PLANS_DIR
from convoy.task_store import TaskAssignment

log = logging.getLogger(__name__)

T = TypeVar("T")

ASSIGNMENTS_FILE = "task-assignments.json"
ACTIVITIES_FILE = "activities.json"
AGENTS_FILE = "agents.json"

MAX_ACTIVITIES = 500

ACTIVITY_TYPES = ("info", "success", "warning", "error")


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _read_json_list(path: Path) -> list[dict[str, Any]]:
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        return []
    except (json.JSONDecodeError, UnicodeDecodeError):
        log.warning("Ignoring unreadable plan state file %s", path)
        return []
    if not isinstance(data, list):
        log.warning("Ignoring plan state file %s: expected a list", path)
        return []
    return [item for item in data if isinstance(item, dict)]


def _write_json_atomic(path: Path, data: Any) -> None:
    """Write *data* as JSON via a temp file in the same directory + ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as handle:
            json.dump(data, handle, indent=2)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def agent_snapshot(agent: WorkerAgent) -> dict[str, Any]:
    """Serializable view of a worker agent for ``agents.json``."""
    opts = agent.options
    result = agent.result
    return {
        "id": agent.id,
        "task_id": opts.task_id if opts else None,
        "plan_id": opts.plan_id if opts else None,
        "status": agent.status,
        "worktree_path": opts.worktree_path if opts else None,
        "events": [event.to_dict() for event in agent.events],
        "result": result.to_dict() if result else None,
        "updated_at": _now(),
    }


class PlanStateStore:
    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root is not None else PLANS_DIR
        self._state_lock = NamedMutex("plan-state")
        self._push_lock = NamedMutex("plan-push")

    def plan_dir(self, plan_id: str) -> Path:
        return self.root / plan_id

    def _path(self, plan_id: str, name: str) -> Path:
        return self.plan_dir(plan_id) / name

    async def _load(self, plan_id: str, name: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(_read_json_list, self._path(plan_id, name))

    async def _save(self, plan_id: str, name: str, items: list[dict[str, Any]]) -> None:
        await asyncio.to_thread(_write_json_atomic, self._path(plan_id, name), items)

    async def _update(
        self,
        plan_id: str,
        name: str,
        mutate: Callable[[list[dict[str, Any]]], list[dict[str, Any]]],
    ) -> list[dict[str, Any]]:
        async def read_modify_write() -> list[dict[str, Any]]:
            items = mutate(await self._load(plan_id, name))
            await self._save(plan_id, name, items)
            return items

        return await self._state_lock.run_exclusive(plan_id, read_modify_write)

    # -- Assignments --

    async def load_assignments(self, plan_id: str) -> list[TaskAssignment]:
        return [TaskAssignment.from_dict(item) for item in await self._load(plan_id, ASSIGNMENTS_FILE)]

    async def upsert_assignment(self, assignment: TaskAssignment) -> None:
        """Insert or replace the assignment for ``assignment.task_id``."""

        def mutate(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
            kept = [item for item in items if item.get("task_id") != assignment.task_id]
            return [*kept, assignment.to_dict()]

        await self._update(assignment.plan_id, ASSIGNMENTS_FILE, mutate)
        log.info(
            "Plan %s: task %s assigned to %s (%s)",
            assignment.plan_id,
            assignment.task_id,
            assignment.agent_id,
            assignment.status,
        )

    async def set_assignment_status(
        self, plan_id: str, task_id: str, status: str
    ) -> TaskAssignment | None:
        """Update an existing assignment's status. Returns ``None`` if unassigned."""
        updated: list[TaskAssignment] = []

        def mutate(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
            for item in items:
                if item.get("task_id") == task_id:
                    item["status"] = status
                    if status in ("completed", "failed"):
                        item["completed_at"] = _now()
                    updated.append(TaskAssignment.from_dict(item))
            return items

        await self._update(plan_id, ASSIGNMENTS_FILE, mutate)
        if not updated:
            log.warning("Plan %s: no assignment for task %s", plan_id, task_id)
            return None
        return updated[0]

    # -- Activities --

    async def load_activities(self, plan_id: str) -> list[dict[str, Any]]:
        return await self._load(plan_id, ACTIVITIES_FILE)

    async def add_activity(
        self,
        plan_id: str,
        activity_type: str,
        message: str,
        details: str | None = None,
    ) -> dict[str, Any]:
        if activity_type not in ACTIVITY_TYPES:
            raise ValueError(f"Unknown activity type: {activity_type}")
        activity = {
            "id": f"activity-{uuid.uuid4().hex[:12]}",
            "plan_id": plan_id,
            "timestamp": _now(),
            "type": activity_type,
            "message": message,
            "details": details,
        }
        await self._update(
            plan_id, ACTIVITIES_FILE, lambda items: [*items, activity][-MAX_ACTIVITIES:]
        )
        return activity

    # -- Agents --

    async def load_agents(self, plan_id: str) -> list[dict[str, Any]]:
        return await self._load(plan_id, AGENTS_FILE)

    async def save_agent(self, plan_id: str, agent: WorkerAgent) -> None:
        """Insert or replace the snapshot of *agent*."""
        snapshot = agent_snapshot(agent)

        def mutate(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
            return [*(item for item in items if item.get("id") != agent.id), snapshot]

        await self._update(plan_id, AGENTS_FILE, mutate)

    async def remove_agent(self, plan_id: str, agent_id: str) -> None:
        await self._update(
            plan_id, AGENTS_FILE, lambda items: [i for i in items if i.get("id") != agent_id]
        )

    # -- Pushes --

    async def run_push(self, plan_id: str, fn: Callable[[], Awaitable[T] | T]) -> T:
        """Run an outward push for *plan_id*; pushes for one plan never overlap."""
        log.debug("Plan %s: push queued", plan_id)
        return await self._push_lock.run_exclusive(plan_id, fn)
