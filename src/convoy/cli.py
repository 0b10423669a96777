from __future__ import annotations

import asyncio
import dataclasses
import difflib
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, BinaryIO

import click

from convoy import __version__
from convoy.agent import AgentOptions, AgentResult, WorkerAgent
from convoy.checkout import CheckoutError, checkout_task
from convoy.config import ConfigError, Settings, load_settings
from convoy.graph import DependencyCycleError, build_dependency_graph, calculate_graph_stats
from convoy.sandbox import ContainerRuntime, SandboxError, SpawnError
from convoy.stream_parser import StreamEvent, StreamEventParser
from convoy.task_store import BeadsTaskStore, Task, TaskAssignment, TaskStoreError

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class CommandFailed(click.ClickException):
    """A command failure printed as ``{"ok": false, "error", "kind", ...}``.

    Extra keyword *fields* are merged into the JSON payload.
    """

    def __init__(self, message: str, kind: str = "error", exit_code: int = 1, **fields: Any):
        super().__init__(message)
        self.kind = kind
        self.exit_code = exit_code
        self.fields = fields

    def payload(self) -> dict[str, Any]:
        return {"ok": False, "error": self.format_message(), "kind": self.kind, **self.fields}


# Most specific first: SpawnError is a SandboxError.
_ERROR_KINDS: tuple[tuple[type[Exception], str], ...] = (
    (DependencyCycleError, "dependency_cycle"),
    (SpawnError, "spawn"),
    (SandboxError, "sandbox"),
    (ConfigError, "config"),
    (TaskStoreError, "task_store"),
    (CheckoutError, "checkout"),
)
_DOMAIN_ERRORS = tuple(cls for cls, _kind in _ERROR_KINDS)


def _command_failed(exc: Exception) -> CommandFailed:
    kind = next(kind for cls, kind in _ERROR_KINDS if isinstance(exc, cls))
    if isinstance(exc, DependencyCycleError):
        return CommandFailed(str(exc), kind, cycle=exc.cycle)
    return CommandFailed(str(exc), kind)


class _ConvoyGroup(click.Group):
    """Every failure, usage errors included, is one JSON line on stdout.

    Domain exceptions escaping a command are mapped to a ``kind`` so
    callers can branch without parsing messages.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        name = args[0] if args else ""
        if name and not name.startswith("-") and self.get_command(ctx, name) is None:
            suggestions = difflib.get_close_matches(name, self.list_commands(ctx), n=2, cutoff=0.5)
            raise CommandFailed(
                f"No such command '{name}'.", "usage", exit_code=2, suggestions=suggestions
            )
        return super().resolve_command(ctx, args)

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except _DOMAIN_ERRORS as exc:
            log.debug("Command failed", exc_info=True)
            raise _command_failed(exc) from None

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
        except CommandFailed as exc:
            click.echo(json.dumps(exc.payload()))
            rv = exc.exit_code
        except click.ClickException as exc:
            kind = "usage" if isinstance(exc, click.UsageError) else "error"
            click.echo(json.dumps({"ok": False, "error": exc.format_message(), "kind": kind}))
            rv = exc.exit_code
        except click.Abort:
            click.echo(json.dumps({"ok": False, "error": "Aborted", "kind": "aborted"}))
            rv = 1
        if standalone_mode:
            raise SystemExit(rv or 0)
        return rv


def _configure_logging(verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = getattr(logging, os.environ.get("CONVOY_LOG_LEVEL", "WARNING").upper(), None)
        if not isinstance(level, int):
            level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


@click.group(cls=_ConvoyGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", count=True, help="Log to stderr (-v info, -vv debug).")
def main(verbose: int):
    """Run sandboxed coding agents against a dependency-ordered task list.

    \b
    Quick start:
      convoy doctor                          Check docker, image, Redis, config
      convoy graph tasks.json                Dependency graph, readiness, critical path
      convoy run --worktree . --prompt "…"   Run one agent, stream its events
      convoy parse recorded.ndjson           Normalize a recorded event stream
      convoy events --plan-id PLAN           Tail published worker events
      convoy checkout TASK --plan-dir PLAN   Worktree for one task
    """
    _configure_logging(verbose)


# -- graph --


def _load_graph_input(raw: str) -> tuple[list[Task], list[TaskAssignment]]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CommandFailed(f"Invalid JSON: {e}", "input") from None
    if isinstance(data, list):
        task_items, assignment_items = data, []
    elif isinstance(data, dict):
        task_items = data.get("tasks") or []
        assignment_items = data.get("assignments") or []
    else:
        raise CommandFailed("Expected a task list or {tasks, assignments} object.", "input")
    try:
        tasks = [Task.from_dict(item) for item in task_items]
        assignments = [TaskAssignment.from_dict(item) for item in assignment_items]
    except (KeyError, TypeError, AttributeError) as e:
        raise CommandFailed(f"Malformed task entry: {e}", "input") from None
    return tasks, assignments


@main.command()
@click.argument("tasks_json", type=click.File("r"), default="-")
def graph(tasks_json):
    """Build the dependency graph for TASKS_JSON (default: stdin).

    Input is a list of tasks ({id, title, status, type, blocked_by}) or an
    object with "tasks" and optional "assignments".
    """
    tasks, assignments = _load_graph_input(tasks_json.read())
    built = build_dependency_graph(tasks, assignments)
    payload = built.to_dict()
    payload["stats"] = calculate_graph_stats(built).to_dict()
    click.echo(json.dumps(payload, indent=2))


# -- run --


def _echo_event(event: StreamEvent) -> None:
    click.echo(json.dumps(event.to_dict()))


async def _run_agent(options: AgentOptions, settings: Settings, *, publish: bool) -> AgentResult:
    runtime = ContainerRuntime(settings)
    agent = WorkerAgent(runtime)
    agent.on("event", _echo_event)
    if publish:
        from convoy.events import AgentEventForwarder

        AgentEventForwarder(agent, settings=settings, source="cli")

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(agent.stop()))
    try:
        await agent.start(options)
        return await agent.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await runtime.stop_all()


@main.command()
@click.option(
    "--worktree",
    required=True,
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Checkout mounted read-write at /workspace.",
)
@click.option("--prompt", required=True, help="Prompt passed to the agent.")
@click.option(
    "--plan-dir",
    default=None,
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Plan directory mounted read-only at /plan.",
)
@click.option("--plan-id", default=None, help="Plan id exported to the sandbox.")
@click.option("--task-id", default=None, help="Task id exported as CONVOY_TASK_ID.")
@click.option("--image", default=None, help="Sandbox image (default from config).")
@click.option(
    "--entrypoint",
    "use_entrypoint",
    is_flag=True,
    help="Use the image's entrypoint instead of the agent command (mock images).",
)
@click.option("--publish", is_flag=True, help="Publish status and events to Redis.")
def run(
    worktree: str,
    prompt: str,
    plan_dir: str | None,
    plan_id: str | None,
    task_id: str | None,
    image: str | None,
    use_entrypoint: bool,
    publish: bool,
):
    """Run one sandboxed agent and stream its events as NDJSON."""
    settings = load_settings()
    options = AgentOptions(
        prompt=prompt,
        worktree_path=worktree,
        plan_dir=plan_dir,
        plan_id=plan_id,
        task_id=task_id,
        image=image,
        use_entrypoint=use_entrypoint,
    )
    result = asyncio.run(_run_agent(options, settings, publish=publish))

    click.echo(json.dumps({"ok": result.success, "result": result.to_dict()}))
    if not result.success:
        raise SystemExit(1)


# -- parse --


@main.command()
@click.argument("stream", type=click.File("rb"), default="-")
def parse(stream: BinaryIO):
    """Normalize a recorded agent stream (default: stdin) to canonical NDJSON."""
    parser = StreamEventParser()
    parser.on("event", _echo_event)
    while chunk := stream.read(64 * 1024):
        parser.write(chunk)
    parser.end()


# -- events --


@main.command()
@click.option("--plan-id", default=None, help="Only events for this plan.")
@click.option("--task-id", default=None, help="Only events for this task.")
@click.option("--agent-id", default=None, help="Only events from this agent.")
@click.option(
    "--kind",
    "kinds",
    multiple=True,
    type=click.Choice(["agent:status", "agent:event"]),
    help="Only these entry kinds (repeatable).",
)
@click.option("--from-start", is_flag=True, help="Replay the retained stream first.")
@click.option("--timeout", default=30.0, show_default=True, help="Seconds per blocking read.")
@click.option("--count", default=0, help="Exit after this many events (0 = follow forever).")
def events(
    plan_id: str | None,
    task_id: str | None,
    agent_id: str | None,
    kinds: tuple[str, ...],
    from_start: bool,
    timeout: float,
    count: int,
):
    """Tail agent status and events published to the Redis stream."""
    from convoy.events import EventSubscriber

    settings = load_settings()
    subscriber = EventSubscriber(
        plan_id=plan_id,
        task_id=task_id,
        agent_id=agent_id,
        kinds=kinds,
        timeout=timeout,
        cursor="0" if from_start else "$",
        settings=settings,
    )
    if not subscriber.available:
        raise CommandFailed(f"Redis is unavailable at {settings.redis_url}", "redis")
    seen = 0
    try:
        for event in subscriber:
            if event is None:
                continue
            click.echo(json.dumps(event.to_dict()))
            seen += 1
            if count and seen >= count:
                break
    except KeyboardInterrupt:
        pass


# -- checkout --


@main.command()
@click.argument("task_id")
@click.option(
    "--plan-dir",
    required=True,
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Plan directory holding the task store.",
)
@click.option(
    "--repo",
    "repo_dir",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Repository to add the worktree to.",
)
@click.option("--base", "base_branch", default="main", show_default=True, help="Branch to start from.")
def checkout(task_id: str, plan_dir: str, repo_dir: str, base_branch: str):
    """Create (or reuse) the worktree for TASK_ID and print its path."""
    settings = load_settings()
    store = BeadsTaskStore(plan_dir, bd_bin=settings.bd_bin)
    created = asyncio.run(checkout_task(store, repo_dir, task_id, base_branch=base_branch))
    click.echo(json.dumps({"ok": True, "checkout": dataclasses.asdict(created)}))


# -- doctor --


@main.command()
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file to check (default: ~/.config/convoy/config.toml).",
)
def doctor(config_path: Path | None):
    """Run health checks on the convoy runtime."""
    from convoy.doctor import run_doctor

    report: Any = asyncio.run(run_doctor(config_path))
    click.echo(json.dumps(report))
    if report["status"] == "fail":
        raise CommandFailed("Doctor checks failed.", "doctor")
