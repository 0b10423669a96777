"""Tests for per-task git worktrees."""

import logging
import shutil
import subprocess
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from convoy.checkout import (
    Checkout,
    CheckoutError,
    branch_name,
    checkout_task,
    create_checkout,
    remove_checkout,
)
from convoy.task_store import Task

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


@pytest.fixture(autouse=True)
def git_identity_env(monkeypatch):
    """Ensure commits succeed without relying on global git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "convoy-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "convoy-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "convoy-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "convoy-tests@example.com")


def _init_repo(path: Path) -> Path:
    path.mkdir()
    subprocess.run(["git", "init"], cwd=str(path), check=True, capture_output=True)
    subprocess.run(
        ["git", "commit", "--allow-empty", "-m", "init"],
        cwd=str(path),
        check=True,
        capture_output=True,
    )
    return path


def _branches(repo: Path) -> str:
    return subprocess.run(
        ["git", "branch", "--list"], cwd=str(repo), check=True, capture_output=True, text=True
    ).stdout


def test_branch_name():
    assert branch_name(Task(id="bd-1", title="Fix login/auth bug!")) == "convoy/fix-login-auth-bug-bd-1"
    assert branch_name(Task(id="bd-1", title="!!!")) == "convoy/bd-1"
    long = branch_name(Task(id="bd-2", title="word " * 30))
    assert long.endswith("-bd-2")
    assert "--" not in long


@pytest.mark.asyncio
async def test_epics_get_no_checkout(tmp_path):
    with pytest.raises(CheckoutError, match="epic"):
        await create_checkout(tmp_path, Task(id="bd-9", title="Milestone", type="epic"))


@pytest.mark.asyncio
async def test_create_checkout_without_git_raises(tmp_path):
    with (
        patch(
            "convoy.checkout.asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError("git")),
        ),
        pytest.raises(CheckoutError, match="git is not available"),
    ):
        await create_checkout(tmp_path, Task(id="bd-1", title="Task"))


@pytest.mark.asyncio
async def test_remove_checkout_without_git_only_logs(tmp_path, caplog):
    checkout = Checkout(
        task_id="bd-1", repo_dir=str(tmp_path), branch="convoy/bd-1", path=str(tmp_path / "wt")
    )
    spawn = AsyncMock(side_effect=FileNotFoundError("git"))
    with (
        patch("convoy.checkout.asyncio.create_subprocess_exec", spawn),
        caplog.at_level(logging.WARNING, logger="convoy.checkout"),
    ):
        await remove_checkout(checkout)
    assert spawn.await_count == 2
    assert caplog.text.count("git is not available") == 2


@pytest.mark.asyncio
async def test_checkout_task_looks_up_the_store(tmp_path):
    store = MagicMock()
    store.list_tasks = AsyncMock(return_value=[Task(id="bd-3", title="Add parser")])
    proc = MagicMock(returncode=0)
    proc.communicate = AsyncMock(return_value=(b"", b""))
    spawn = AsyncMock(return_value=proc)
    with patch("convoy.checkout.asyncio.create_subprocess_exec", spawn):
        checkout = await checkout_task(store, tmp_path, "bd-3", base_branch="dev")
    assert checkout.branch == "convoy/add-parser-bd-3"
    assert checkout.path == str(tmp_path / ".convoy" / "worktrees" / "bd-3")
    args = spawn.await_args.args
    assert args == ("git", "worktree", "add", "-b", checkout.branch, checkout.path, "dev")


@pytest.mark.asyncio
async def test_checkout_task_unknown_id_raises(tmp_path):
    store = MagicMock()
    store.list_tasks = AsyncMock(return_value=[])
    with pytest.raises(CheckoutError, match="Unknown task: bd-404"):
        await checkout_task(store, tmp_path, "bd-404")


@pytest.mark.slow
@needs_git
@pytest.mark.asyncio
async def test_create_reuse_and_remove_checkout(tmp_path):
    repo = _init_repo(tmp_path / "project")
    task = Task(id="bd-42", title="Write parser")

    checkout = await create_checkout(repo, task, base_branch="HEAD")
    assert checkout.branch == "convoy/write-parser-bd-42"
    assert Path(checkout.path).is_dir()
    assert Path(checkout.path).name == "bd-42"

    again = await create_checkout(repo, task, base_branch="HEAD")
    assert again == checkout

    await remove_checkout(checkout)
    assert not Path(checkout.path).exists()
    assert "convoy/write-parser-bd-42" not in _branches(repo)


@pytest.mark.slow
@needs_git
@pytest.mark.asyncio
async def test_create_checkout_bad_base_raises(tmp_path):
    repo = _init_repo(tmp_path / "project")
    with pytest.raises(CheckoutError, match="git worktree add failed"):
        await create_checkout(repo, Task(id="bd-7", title="Task"), base_branch="no-such-branch")


@pytest.mark.slow
@needs_git
@pytest.mark.asyncio
async def test_remove_missing_checkout_is_best_effort(tmp_path, caplog):
    repo = _init_repo(tmp_path / "project")
    ghost = Checkout(task_id="bd-0", repo_dir=str(repo), branch="convoy/ghost", path=str(repo / "ghost"))
    with caplog.at_level(logging.WARNING, logger="convoy.checkout"):
        await remove_checkout(ghost)
    assert "git worktree remove failed" in caplog.text
    assert "git branch -D failed" in caplog.text
