"""Per-task checkouts for worker agents.

A checkout is a git worktree at ``.convoy/worktrees/<task id>`` on the
branch ``convoy/<title slug>-<task id>``. Parallel agents therefore never
share files, and a task always maps back to the same directory, so a
retried task reuses its previous checkout.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from convoy.task_store import Task, TaskStore

log = logging.getLogger(__name__)

WORKTREES_DIR = Path(".convoy") / "worktrees"

_SLUG_MAX = 40


class CheckoutError(RuntimeError):
    """git could not be run or refused the worktree operation."""


@dataclass(frozen=True)
class Checkout:
    task_id: str
    repo_dir: str
    branch: str
    path: str


def branch_name(task: Task, prefix: str = "convoy") -> str:
    """Branch for *task*: the title's alphanumeric words, then the task id."""
    slug = "-".join(re.findall(r"[a-z0-9]+", task.title.lower()))[:_SLUG_MAX].strip("-")
    return f"{prefix}/{slug}-{task.id}" if slug else f"{prefix}/{task.id}"


def checkout_path(repo_dir: str | Path, task_id: str) -> Path:
    return Path(repo_dir) / WORKTREES_DIR / task_id


async def _git(repo_dir: str | Path, *args: str) -> str:
    log.debug("Executing: git %s (cwd=%s)", " ".join(args), repo_dir)
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(repo_dir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise CheckoutError(f"git is not available: {exc}") from exc
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        message = stderr.decode(errors="replace").strip() or f"exit code {proc.returncode}"
        raise CheckoutError(f"git {' '.join(args[:2])} failed: {message}")
    return stdout.decode(errors="replace")


async def create_checkout(repo_dir: str | Path, task: Task, *, base_branch: str = "main") -> Checkout:
    """Create the worktree for *task*, or reuse it when it already exists."""
    if task.type == "epic":
        raise CheckoutError(f"Task {task.id} is an epic and gets no checkout")
    path = checkout_path(repo_dir, task.id)
    checkout = Checkout(
        task_id=task.id, repo_dir=str(repo_dir), branch=branch_name(task), path=str(path)
    )
    if path.is_dir():
        log.info("Reusing checkout %s for task %s", path, task.id)
        return checkout

    path.parent.mkdir(parents=True, exist_ok=True)
    await _git(repo_dir, "worktree", "add", "-b", checkout.branch, str(path), base_branch)
    log.info("Created checkout %s for task %s on %s", path, task.id, checkout.branch)
    return checkout


async def checkout_task(
    store: TaskStore,
    repo_dir: str | Path,
    task_id: str,
    *,
    base_branch: str = "main",
) -> Checkout:
    """Look *task_id* up in the task store and create its checkout."""
    tasks = await store.list_tasks()
    task = next((t for t in tasks if t.id == task_id), None)
    if task is None:
        raise CheckoutError(f"Unknown task: {task_id}")
    return await create_checkout(repo_dir, task, base_branch=base_branch)


async def remove_checkout(checkout: Checkout) -> None:
    """Remove the worktree and its branch. Best-effort: failures are logged."""
    steps = (
        ("worktree", "remove", "--force", checkout.path),
        ("branch", "-D", checkout.branch),
    )
    for step in steps:
        try:
            await _git(checkout.repo_dir, *step)
        except CheckoutError as exc:
            log.warning("Checkout cleanup for task %s: %s", checkout.task_id, exc)
