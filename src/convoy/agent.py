"""Worker agent: one sandboxed coding-assistant process handling one task.

:class:`WorkerAgent` drives a :class:`~convoy.sandbox.SandboxProcess`
and a :class:`~convoy.stream_parser.StreamEventParser` through a single
lifecycle::

    idle -> starting -> running -> completed | failed
                     \\-> stopping -> completed

The append-only ``events`` log is the source of truth. Consumers either
register callbacks per kind with :meth:`WorkerAgent.on` or iterate the
log with :meth:`WorkerAgent.subscribe`.

Callback kinds:

- ``event``: every parsed :class:`StreamEvent`
- ``message``: text extracted from message, assistant and delta events
- ``tool_use`` / ``tool_result`` / ``result``: the typed events
- ``status``: the new status string after each transition
- ``complete``: the final :class:`AgentResult`
- ``error``: the exception that prevented the sandbox from starting
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from convoy.callbacks import CallbackTable, Handler
from convoy.sandbox import ContainerConfig, ContainerRuntime, SandboxProcess
from convoy.stream_parser import (
    ANY_EVENT,
    EVENT_ASSISTANT,
    EVENT_CONTENT_BLOCK_DELTA,
    EVENT_MESSAGE,
    EVENT_RESULT,
    EVENT_TOOL_RESULT,
    EVENT_TOOL_USE,
    ResultEvent,
    StreamEvent,
    StreamEventParser,
    extract_text_content,
)

log = logging.getLogger(__name__)

STATUS_IDLE = "idle"
STATUS_STARTING = "starting"
STATUS_RUNNING = "running"
STATUS_STOPPING = "stopping"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

AGENT_STATUSES = (
    STATUS_IDLE,
    STATUS_STARTING,
    STATUS_RUNNING,
    STATUS_STOPPING,
    STATUS_COMPLETED,
    STATUS_FAILED,
)
AGENT_TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

_TEXT_EVENT_TYPES = (EVENT_MESSAGE, EVENT_ASSISTANT, EVENT_CONTENT_BLOCK_DELTA)


class IllegalTransitionError(RuntimeError):
    """A lifecycle method was called from a status that does not allow it."""


@dataclass(frozen=True)
class AgentOptions:
    prompt: str
    worktree_path: str
    plan_dir: str | None = None
    plan_id: str | None = None
    task_id: str | None = None
    image: str | None = None
    agent_flags: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    use_entrypoint: bool = False


@dataclass(frozen=True)
class AgentResult:
    success: bool
    exit_code: int | None
    result: str | None = None
    cost: dict[str, Any] | None = None
    duration_ms: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "exit_code": self.exit_code,
            "result": self.result,
            "cost": self.cost,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


class WorkerAgent:
    def __init__(self, runtime: ContainerRuntime, *, agent_id: str | None = None) -> None:
        self.id = agent_id or f"agent-{uuid.uuid4().hex[:8]}"
        self._runtime = runtime
        self._status = STATUS_IDLE
        self._options: AgentOptions | None = None
        self._process: SandboxProcess | None = None
        self._parser: StreamEventParser | None = None
        self._events: list[StreamEvent] = []
        self._callbacks = CallbackTable(f"agent {self.id}")
        self._changed = asyncio.Condition()
        self._done = asyncio.Event()
        self._result: AgentResult | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stop_task: asyncio.Task[None] | None = None
        self._spawned: asyncio.Future[SandboxProcess | None] | None = None
        self._started_at = 0.0

    # -- Introspection --

    @property
    def status(self) -> str:
        return self._status

    @property
    def events(self) -> tuple[StreamEvent, ...]:
        return tuple(self._events)

    @property
    def result(self) -> AgentResult | None:
        return self._result

    @property
    def options(self) -> AgentOptions | None:
        return self._options

    @property
    def process_id(self) -> str | None:
        return self._process.id if self._process else None

    def _log_context(self) -> str:
        opts = self._options
        if opts is None:
            return self.id
        return f"{self.id} plan={opts.plan_id or '-'} task={opts.task_id or '-'}"

    # -- Subscription --

    def on(self, kind: str, handler: Handler) -> None:
        self._callbacks.add(kind, handler)

    def off(self, kind: str, handler: Handler) -> None:
        self._callbacks.remove(kind, handler)

    async def subscribe(self, start: int = 0) -> AsyncIterator[StreamEvent]:
        """Yield logged events from index *start* until the agent is terminal."""
        index = start
        while True:
            async with self._changed:
                await self._changed.wait_for(
                    lambda: index < len(self._events) or self._done.is_set()
                )
                batch = self._events[index:]
                finished = self._done.is_set()
            for event in batch:
                yield event
            index += len(batch)
            if finished and index >= len(self._events):
                return

    async def wait(self) -> AgentResult:
        """Wait until the agent reaches a terminal status and return its result."""
        await self._done.wait()
        assert self._result is not None
        return self._result

    # -- Lifecycle --

    async def start(self, options: AgentOptions) -> None:
        """Spawn the sandbox. Only legal from ``idle``."""
        if self._status != STATUS_IDLE:
            raise IllegalTransitionError(f"Cannot start agent in status: {self._status}")

        self._options = options
        self._events = []
        self._started_at = time.monotonic()
        self._set_status(STATUS_STARTING)

        env = dict(options.env)
        env["CONVOY_TASK_ID"] = options.task_id or ""
        config = ContainerConfig(
            prompt=options.prompt,
            working_dir=options.worktree_path,
            image=options.image or self._runtime.settings.image,
            plan_dir=options.plan_dir,
            plan_id=options.plan_id,
            env=env,
            agent_flags=options.agent_flags,
            use_entrypoint=options.use_entrypoint,
        )

        spawned = self._spawned = asyncio.get_running_loop().create_future()
        try:
            process = await self._runtime.spawn(config)
        except Exception as exc:
            spawned.set_result(None)
            if self._status != STATUS_STARTING:
                # stop() arrived while the spawn was in flight and owns the outcome.
                log.info(
                    "Agent %s spawn failed after stop was requested: %s", self._log_context(), exc
                )
                return
            log.warning("Agent %s failed to start: %s", self._log_context(), exc)
            self._finish(
                STATUS_FAILED,
                AgentResult(success=False, exit_code=None, error=str(exc)),
            )
            self._callbacks.dispatch("error", exc)
            raise
        except BaseException:
            spawned.set_result(None)
            raise

        self._process = process
        spawned.set_result(process)
        if self._status != STATUS_STARTING:
            log.info("Agent %s stopped during spawn; handing sandbox to stop", self._log_context())
            return

        self._parser = StreamEventParser()
        self._parser.on(ANY_EVENT, self._handle_event)
        self._set_status(STATUS_RUNNING)
        self._stderr_task = asyncio.create_task(self._drain_stderr(process))
        self._pump_task = asyncio.create_task(self._pump(process))

    async def stop(self) -> None:
        """Stop the sandbox. A no-op unless the agent is starting or running."""
        if self._status == STATUS_STOPPING and self._stop_task is not None:
            await asyncio.shield(self._stop_task)
            return
        if self._status not in (STATUS_STARTING, STATUS_RUNNING):
            log.info("Agent %s stop skipped in status %s", self._log_context(), self._status)
            return
        self._set_status(STATUS_STOPPING)
        self._stop_task = asyncio.create_task(self._stop())
        await asyncio.shield(self._stop_task)

    async def _stop(self) -> None:
        started = time.monotonic()
        process = self._process
        if process is None and self._spawned is not None:
            log.info("Agent %s waiting for in-flight spawn before stopping", self._log_context())
            process = await asyncio.shield(self._spawned)
        if process is not None:
            try:
                await process.stop()
            except Exception:
                log.warning("Error stopping sandbox for %s", self._log_context(), exc_info=True)
        else:
            log.info("Agent %s has no sandbox; nothing to terminate", self._log_context())
        if self._pump_task is not None:
            with contextlib.suppress(Exception):
                await self._pump_task
        log.info(
            "Agent %s stopped in %.0fms", self._log_context(), (time.monotonic() - started) * 1000
        )
        self._finish(
            STATUS_COMPLETED,
            AgentResult(
                success=True,
                exit_code=process.returncode if process else None,
                duration_ms=self._elapsed_ms(),
            ),
        )

    # -- Internals --

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started_at) * 1000)

    def _set_status(self, status: str) -> None:
        previous, self._status = self._status, status
        log.info("Agent %s status %s -> %s", self._log_context(), previous, status)
        self._callbacks.dispatch("status", status)
        self._notify()

    def _notify(self) -> None:
        async def _wake() -> None:
            async with self._changed:
                self._changed.notify_all()

        with contextlib.suppress(RuntimeError):
            asyncio.get_running_loop().create_task(_wake())

    def _finish(self, status: str, result: AgentResult) -> None:
        self._result = result
        self._done.set()
        self._set_status(status)
        self._callbacks.dispatch("complete", result)

    def _handle_event(self, event: StreamEvent) -> None:
        self._events.append(event)
        self._callbacks.dispatch(ANY_EVENT, event)
        if event.type in _TEXT_EVENT_TYPES:
            text = extract_text_content(event)
            if text:
                self._callbacks.dispatch("message", text)
        elif event.type in (EVENT_TOOL_USE, EVENT_TOOL_RESULT, EVENT_RESULT):
            self._callbacks.dispatch(event.type, event)
        self._notify()

    async def _drain_stderr(self, process: SandboxProcess) -> None:
        """Log stderr so the OS pipe buffer never fills."""
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            log.debug(
                "Agent %s stderr: %s",
                self._log_context(),
                line.decode(errors="replace").rstrip()[:500],
            )

    async def _pump(self, process: SandboxProcess) -> None:
        assert self._parser is not None
        parser = self._parser
        while True:
            chunk = await process.stdout.read(64 * 1024)
            if not chunk:
                break
            log.debug("Agent %s stdout received (%d bytes)", self._log_context(), len(chunk))
            parser.write(chunk)
        exit_code = await process.wait()
        parser.end()
        if self._stderr_task is not None:
            with contextlib.suppress(Exception):
                await self._stderr_task
        self._handle_exit(exit_code)

    def _handle_exit(self, exit_code: int) -> None:
        duration = self._elapsed_ms()
        log.info(
            "Agent %s sandbox exited with code %s after %dms (%d events)",
            self._log_context(),
            exit_code,
            duration,
            len(self._events),
        )
        if self._status != STATUS_RUNNING:
            # A deliberate stop owns the final transition.
            return

        result_event = next((e for e in self._events if isinstance(e, ResultEvent)), None)
        success = exit_code == 0 or result_event is not None
        result = AgentResult(
            success=success,
            exit_code=exit_code,
            result=result_event.result if result_event else None,
            cost=result_event.cost.to_dict() if result_event and result_event.cost else None,
            duration_ms=(result_event.duration_ms if result_event else None) or duration,
            error=None if success else f"Container exited with code {exit_code}",
        )
        self._finish(STATUS_COMPLETED if success else STATUS_FAILED, result)


async def start_worker_agent(runtime: ContainerRuntime, options: AgentOptions) -> WorkerAgent:
    """Create an agent, start it and return it for event subscription."""
    agent = WorkerAgent(runtime)
    await agent.start(options)
    return agent


async def run_worker_agent(runtime: ContainerRuntime, options: AgentOptions) -> AgentResult:
    """Run an agent to completion and return its result.

    Raises :class:`~convoy.sandbox.SpawnError` when the sandbox cannot start.
    """
    agent = await start_worker_agent(runtime, options)
    return await agent.wait()
