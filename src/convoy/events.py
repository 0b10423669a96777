"""Worker event bus on a Redis Stream.

Publishing is best-effort: a Redis outage is logged and never interrupts
the worker pipeline. Supervisors tail the stream with
:class:`EventSubscriber`, which decodes entries into :class:`BusEvent`.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError

from convoy.agent import WorkerAgent
from convoy.config import Settings, load_settings
from convoy.stream_parser import (
    EVENT_ASSISTANT,
    EVENT_INIT,
    EVENT_MESSAGE,
    EVENT_RESULT,
    EVENT_SYSTEM,
    EVENT_TOOL_RESULT,
    EVENT_TOOL_USE,
    ResultEvent,
    StreamEvent,
    SystemEvent,
    ToolResultEvent,
    ToolUseEvent,
    extract_text_content,
)

log = logging.getLogger(__name__)

EVENT_VERSION = 1  # Bump when payload shape changes

EVENT_AGENT_STATUS = "agent:status"
EVENT_AGENT_EVENT = "agent:event"

_TEXT_TRUNCATE = 500

_pools: dict[str, ConnectionPool] = {}
_settings: Settings | None = None


def _current_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def get_redis(url: str | None = None) -> Redis:
    url = url or _current_settings().redis_url
    pool = _pools.get(url)
    if pool is None:
        pool = _pools[url] = ConnectionPool.from_url(url)
    return Redis(connection_pool=pool)


def publish_event(
    event_type: str,
    entity_id: str,
    status: str,
    *,
    plan_id: str | None = None,
    source: str = "worker",
    extra: dict | None = None,
    settings: Settings | None = None,
) -> None:
    """Publish a pipeline event to the Redis Stream. Best-effort, never raises.

    *source* identifies the producer: ``"worker"`` (agent callbacks) or
    ``"cli"`` (interactive command).

    *extra* is merged into the payload.
    """
    settings = settings or _current_settings()
    event: dict = {
        "event_id": str(uuid.uuid4()),
        "type": event_type,
        "id": entity_id,
        "plan_id": plan_id or entity_id,
        "status": status,
        "source": source,
        "v": EVENT_VERSION,
        "ts": datetime.now(UTC).isoformat(),
    }
    if extra:
        event.update(extra)
    payload = json.dumps(event)
    try:
        r = get_redis(settings.redis_url)
        r.xadd(
            settings.events_stream,
            {"data": payload},
            maxlen=settings.events_stream_maxlen,
            approximate=True,
        )
    except RedisError:
        log.warning("Event publish failed (Redis unavailable): %s %s", event_type, entity_id)


def _event_summary(event: StreamEvent) -> dict:
    """Small summary of a stream event for the bus. Full events stay in plan state."""
    summary: dict = {"event_type": event.type}
    if isinstance(event, ToolUseEvent):
        summary["tool_name"] = event.tool_name
        summary["tool_id"] = event.tool_id
    elif isinstance(event, ToolResultEvent):
        summary["tool_id"] = event.tool_id
        summary["is_error"] = event.is_error
    elif isinstance(event, ResultEvent):
        if event.cost is not None:
            summary["cost"] = event.cost.to_dict()
        if event.num_turns is not None:
            summary["num_turns"] = event.num_turns
    elif isinstance(event, SystemEvent):
        summary["subtype"] = event.subtype
    text = extract_text_content(event)
    if text:
        summary["text"] = text[:_TEXT_TRUNCATE]
    return summary


class AgentEventForwarder:
    """Publish a worker agent's status changes and notable events.

    Per-token ``content_block_*`` deltas are not forwarded; they would
    flood the stream. Call :meth:`detach` to stop forwarding.
    """

    FORWARDED_TYPES = frozenset(
        {
            EVENT_INIT,
            EVENT_MESSAGE,
            EVENT_ASSISTANT,
            EVENT_TOOL_USE,
            EVENT_TOOL_RESULT,
            EVENT_RESULT,
            EVENT_SYSTEM,
        }
    )

    def __init__(
        self,
        agent: WorkerAgent,
        *,
        settings: Settings | None = None,
        source: str = "worker",
    ) -> None:
        self.agent = agent
        self.settings = settings
        self.source = source
        agent.on("status", self._on_status)
        agent.on("event", self._on_event)

    def _entity_id(self) -> str:
        opts = self.agent.options
        return (opts.task_id if opts and opts.task_id else None) or self.agent.id

    def _plan_id(self) -> str | None:
        opts = self.agent.options
        return opts.plan_id if opts else None

    def _on_status(self, status: str) -> None:
        extra: dict[str, Any] = {"agent_id": self.agent.id}
        result = self.agent.result
        if result is not None and status in ("completed", "failed"):
            extra["result"] = result.to_dict()
        publish_event(
            EVENT_AGENT_STATUS,
            self._entity_id(),
            status,
            plan_id=self._plan_id(),
            source=self.source,
            extra=extra,
            settings=self.settings,
        )

    def _on_event(self, event: StreamEvent) -> None:
        if event.type not in self.FORWARDED_TYPES:
            return
        publish_event(
            EVENT_AGENT_EVENT,
            self._entity_id(),
            self.agent.status,
            plan_id=self._plan_id(),
            source=self.source,
            extra={"agent_id": self.agent.id, **_event_summary(event)},
            settings=self.settings,
        )

    def detach(self) -> None:
        self.agent.off("status", self._on_status)
        self.agent.off("event", self._on_event)


# Envelope keys written by publish_event; everything else is detail.
_ENVELOPE_KEYS = frozenset(
    {"event_id", "type", "id", "plan_id", "status", "source", "v", "ts", "agent_id", "event_type"}
)


@dataclass(frozen=True)
class BusEvent:
    """One decoded stream entry published by :func:`publish_event`."""

    stream_id: str
    kind: str
    entity_id: str
    status: str
    plan_id: str | None = None
    agent_id: str | None = None
    event_type: str | None = None
    source: str | None = None
    ts: str | None = None
    version: int = EVENT_VERSION
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, stream_id: str, payload: dict[str, Any]) -> BusEvent:
        return cls(
            stream_id=stream_id,
            kind=str(payload.get("type", "")),
            entity_id=str(payload.get("id", "")),
            status=str(payload.get("status", "")),
            plan_id=payload.get("plan_id"),
            agent_id=payload.get("agent_id"),
            event_type=payload.get("event_type"),
            source=payload.get("source"),
            ts=payload.get("ts"),
            version=payload.get("v", EVENT_VERSION),
            detail={k: v for k, v in payload.items() if k not in _ENVELOPE_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "stream_id": self.stream_id,
            "type": self.kind,
            "id": self.entity_id,
            "status": self.status,
            "plan_id": self.plan_id,
            "agent_id": self.agent_id,
            "source": self.source,
            "v": self.version,
            "ts": self.ts,
        }
        if self.event_type is not None:
            data["event_type"] = self.event_type
        data.update(self.detail)
        return data


def _decode_entry(entry_id: bytes | str, fields: dict) -> BusEvent | None:
    stream_id = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
    raw = fields.get(b"data") or fields.get("data")
    try:
        payload = json.loads(raw) if raw else None
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
        payload = None
    if not isinstance(payload, dict) or payload.get("type") not in (
        EVENT_AGENT_STATUS,
        EVENT_AGENT_EVENT,
    ):
        log.debug("Skipping stream entry %s: not an agent event", stream_id)
        return None
    return BusEvent.from_payload(stream_id, payload)


class EventSubscriber:
    """Tail agent events on the stream, filtered by plan, task, agent or kind.

    Iterating yields :class:`BusEvent` objects, or ``None`` when a blocking
    read of ``timeout`` seconds returns nothing new. Every entry read moves
    the cursor, so filtered-out entries are never read twice. When Redis is
    unavailable each step sleeps for ``timeout`` and yields ``None``.
    """

    BATCH = 10

    def __init__(
        self,
        *,
        plan_id: str | None = None,
        task_id: str | None = None,
        agent_id: str | None = None,
        kinds: Iterable[str] | None = None,
        timeout: float = 30.0,
        cursor: str = "$",
        settings: Settings | None = None,
    ):
        self.plan_id = plan_id
        self.task_id = task_id
        self.agent_id = agent_id
        self.kinds = frozenset(kinds) if kinds else None
        self.timeout = timeout
        self._settings = settings or _current_settings()
        self._cursor: bytes | str = cursor  # "$" tails new entries, "0" replays
        self._pending: deque[BusEvent] = deque()
        self._redis: Redis | None
        try:
            self._redis = get_redis(self._settings.redis_url)
            self._redis.ping()
        except RedisError:
            log.warning("Event subscriber: Redis unavailable at %s", self._settings.redis_url)
            self._redis = None

    @property
    def available(self) -> bool:
        return self._redis is not None

    def matches(self, event: BusEvent) -> bool:
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.plan_id and event.plan_id != self.plan_id:
            return False
        if self.task_id and event.entity_id != self.task_id:
            return False
        return not (self.agent_id and event.agent_id != self.agent_id)

    def read_batch(self) -> int:
        """Run one blocking read and queue the matches. Returns entries read."""
        assert self._redis is not None
        # [[stream_name, [(entry_id, fields), ...]]]
        reply = self._redis.xread(
            {self._settings.events_stream: self._cursor},
            block=int(self.timeout * 1000),
            count=self.BATCH,
        )
        read = 0
        for _stream, entries in reply or ():
            for entry_id, fields in entries:
                read += 1
                self._cursor = entry_id
                event = _decode_entry(entry_id, fields)
                if event is not None and self.matches(event):
                    self._pending.append(event)
        return read

    def __iter__(self):
        return self

    def __next__(self) -> BusEvent | None:
        if self._redis is None:
            time.sleep(self.timeout)
            return None
        while not self._pending:
            if not self.read_batch():
                return None
        return self._pending.popleft()
