"""Docker sandbox for worker processes.

Every worker runs as ``docker run --rm -i`` with its checkout mounted
read-write at ``/workspace`` and, optionally, the plan directory mounted
read-only at ``/plan``. stdin is closed at spawn; the prompt travels on
the command line and the worker streams NDJSON on stdout.

:class:`ContainerRuntime` owns the table of live invocations. Only three
operations touch it: spawn adds an entry, process exit removes its own
entry, and :meth:`ContainerRuntime.stop_all` stops a snapshot of the
table and clears it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from convoy.config import DEFAULT_IMAGE, Settings, load_settings

log = logging.getLogger(__name__)

WORKSPACE_MOUNT = "/workspace"
PLAN_MOUNT = "/plan"
SSH_AGENT_MOUNT = "/ssh-agent"
MACOS_SSH_AGENT_SOCKET = "/run/host-services/ssh-auth.sock"

STREAM_LIMIT = 10 * 1024 * 1024  # 10MB, a single tool result line can be large

_SECRET_MARKERS = ("TOKEN", "KEY", "SECRET", "PASSWORD")


class SandboxError(RuntimeError):
    """Base class for sandbox failures."""


class SpawnError(SandboxError):
    """The sandbox process could not be started at all."""


@dataclass(frozen=True)
class ContainerConfig:
    """Everything needed to launch one sandboxed worker. Immutable."""

    prompt: str
    working_dir: str
    image: str = DEFAULT_IMAGE
    plan_dir: str | None = None
    plan_id: str | None = None
    proxy_url: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    agent_flags: tuple[str, ...] = ()
    use_entrypoint: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))
        object.__setattr__(self, "agent_flags", tuple(self.agent_flags))


def _ssh_agent_args(settings: Settings, *, platform: str, environ: Mapping[str, str]) -> list[str]:
    if not settings.forward_ssh_agent:
        return []
    if platform == "darwin":
        # Docker Desktop exposes the host agent at a fixed path owned by root.
        return [
            "--mount",
            f"type=bind,src={MACOS_SSH_AGENT_SOCKET},target={SSH_AGENT_MOUNT}",
            "-e",
            f"SSH_AUTH_SOCK={SSH_AGENT_MOUNT}",
            "--group-add",
            "0",
        ]
    sock = environ.get("SSH_AUTH_SOCK")
    if sock:
        return ["-v", f"{sock}:{SSH_AGENT_MOUNT}", "-e", f"SSH_AUTH_SOCK={SSH_AGENT_MOUNT}"]
    return []


def build_docker_args(
    config: ContainerConfig,
    settings: Settings,
    *,
    platform: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> list[str]:
    """Build the ``docker`` argv (without the binary) for *config*."""
    platform = platform or sys.platform
    environ = os.environ if environ is None else environ

    args = ["run", "--rm", "-i"]
    args += ["-v", f"{config.working_dir}:{WORKSPACE_MOUNT}"]
    if config.plan_dir:
        args += ["-v", f"{config.plan_dir}:{PLAN_MOUNT}:ro"]
    args += ["-w", WORKSPACE_MOUNT]

    proxy_url = config.proxy_url or settings.effective_proxy_url
    args += ["-e", f"TOOL_PROXY_URL={proxy_url}"]
    if config.plan_id:
        args += ["-e", f"CONVOY_PLAN_ID={config.plan_id}"]
    args += ["-e", f"CONVOY_HOST_WORKTREE_PATH={config.working_dir}"]

    args += _ssh_agent_args(settings, platform=platform, environ=environ)

    if settings.oauth_token:
        args += ["-e", f"CLAUDE_CODE_OAUTH_TOKEN={settings.oauth_token}"]

    for key, value in config.env.items():
        args += ["-e", f"{key}={value}"]

    if platform not in ("darwin", "win32"):
        args += ["--add-host", "host.docker.internal:host-gateway"]

    args.append(config.image or settings.image)

    if not config.use_entrypoint:
        args += [
            "claude",
            "--dangerously-skip-permissions",
            "-p",
            config.prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            *config.agent_flags,
        ]
    return args


def redact_env_args(args: Sequence[str]) -> list[str]:
    """Return the ``-e`` assignments in *args* with secret values masked."""
    redacted: list[str] = []
    for previous, arg in zip(args, args[1:], strict=False):
        if previous != "-e":
            continue
        key, _, value = arg.partition("=")
        if any(marker in key.upper() for marker in _SECRET_MARKERS):
            redacted.append(f"{key}=[set]")
        else:
            redacted.append(f"{key}={value}")
    return redacted


class SandboxProcess:
    """Handle to one running sandbox invocation.

    ``wait()`` resolves with the exit code; every caller gets the same
    value. ``stop()`` sends SIGTERM, waits the grace period, then SIGKILLs
    if the process is still alive. Calling it again, or after the process
    already exited, is harmless.
    """

    def __init__(
        self,
        invocation_id: str,
        process: asyncio.subprocess.Process,
        runtime: ContainerRuntime,
        *,
        grace_seconds: float,
    ) -> None:
        self.id = invocation_id
        self._process = process
        self._runtime = runtime
        self._grace_seconds = grace_seconds
        self._exit_task: asyncio.Task[int] = asyncio.create_task(self._watch_exit())
        self._stop_task: asyncio.Task[None] | None = None

    @property
    def stdout(self) -> asyncio.StreamReader:
        assert self._process.stdout is not None
        return self._process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        assert self._process.stderr is not None
        return self._process.stderr

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def _watch_exit(self) -> int:
        try:
            code = await self._process.wait()
        finally:
            self._runtime._forget(self.id)
        log.info("Sandbox %s exited with code %s", self.id, code)
        return code

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        return await asyncio.shield(self._exit_task)

    async def stop(self) -> None:
        """Terminate gracefully, escalating to SIGKILL after the grace period."""
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._stop())
        await asyncio.shield(self._stop_task)

    def _signal(self, sig: signal.Signals) -> bool:
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            return False
        return True

    async def _stop(self) -> None:
        if self._exit_task.done():
            log.debug("Sandbox %s already exited; nothing to stop", self.id)
            return

        log.info("Stopping sandbox %s (pid %s)", self.id, self.pid)
        self._signal(signal.SIGTERM)
        try:
            await asyncio.wait_for(asyncio.shield(self._exit_task), timeout=self._grace_seconds)
        except TimeoutError:
            log.info(
                "Sandbox %s still running %.1fs after SIGTERM, sending SIGKILL",
                self.id,
                self._grace_seconds,
            )
            self._signal(signal.SIGKILL)
            await asyncio.shield(self._exit_task)
        log.info("Sandbox %s stop completed (exit code %s)", self.id, self.returncode)


class ContainerRuntime:
    """Spawns sandboxed workers and owns the table of live invocations."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        grace_seconds: float | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.grace_seconds = (
            grace_seconds if grace_seconds is not None else self.settings.stop_grace_seconds
        )
        self._running: dict[str, SandboxProcess] = {}

    def __len__(self) -> int:
        return len(self._running)

    def running_ids(self) -> list[str]:
        return list(self._running)

    def get(self, invocation_id: str) -> SandboxProcess | None:
        return self._running.get(invocation_id)

    def _forget(self, invocation_id: str) -> None:
        self._running.pop(invocation_id, None)

    async def spawn(self, config: ContainerConfig) -> SandboxProcess:
        """Start one sandboxed worker. Raises :class:`SpawnError` if it cannot start."""
        args = build_docker_args(config, self.settings)
        invocation_id = f"container-{uuid.uuid4().hex[:12]}"

        log.info(
            "Spawning sandbox %s image=%s workdir=%s env=%s",
            invocation_id,
            config.image,
            config.working_dir,
            redact_env_args(args),
        )
        log.debug("Docker argv for %s: %d args", invocation_id, len(args))

        try:
            process = await asyncio.create_subprocess_exec(
                self.settings.docker_bin,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            log.warning("Sandbox %s could not start: %s", invocation_id, exc)
            raise SpawnError(
                f"Could not start sandbox with {self.settings.docker_bin!r}: {exc}"
            ) from exc

        handle = SandboxProcess(invocation_id, process, self, grace_seconds=self.grace_seconds)
        self._running[invocation_id] = handle
        log.info("Sandbox %s started (pid %s)", invocation_id, process.pid)
        return handle

    async def stop_all(self) -> None:
        """Stop every live invocation in parallel, then clear the table."""
        snapshot = list(self._running.values())
        log.info("Stopping %d running sandboxes", len(snapshot))
        results = await asyncio.gather(
            *(handle.stop() for handle in snapshot), return_exceptions=True
        )
        for handle, outcome in zip(snapshot, results, strict=True):
            if isinstance(outcome, BaseException):
                log.warning("Error stopping sandbox %s: %s", handle.id, outcome)
        self._running.clear()


# ---------------------------------------------------------------------------
# Docker checks
# ---------------------------------------------------------------------------


async def _run_quiet(*argv: str) -> tuple[int, str]:
    """Run a short docker command, returning (exit code, combined output)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        return 127, str(exc)
    out, _ = await proc.communicate()
    return proc.returncode if proc.returncode is not None else 1, out.decode(errors="replace")


async def check_docker_available(docker_bin: str = "docker") -> bool:
    code, _ = await _run_quiet(docker_bin, "version")
    return code == 0


async def check_image_exists(image: str = DEFAULT_IMAGE, *, docker_bin: str = "docker") -> bool:
    code, _ = await _run_quiet(docker_bin, "image", "inspect", image)
    return code == 0


async def build_agent_image(
    dockerfile: str | Path,
    image: str = DEFAULT_IMAGE,
    *,
    docker_bin: str = "docker",
) -> tuple[bool, str]:
    """Build the agent image. Returns ``(success, build output)``."""
    dockerfile = Path(dockerfile)
    log.info("Building sandbox image %s from %s", image, dockerfile)
    code, output = await _run_quiet(
        docker_bin, "build", "-t", image, "-f", str(dockerfile), str(dockerfile.parent)
    )
    if code != 0:
        log.error("Sandbox image build failed: %.500s", output)
    return code == 0, output
