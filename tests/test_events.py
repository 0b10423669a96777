"""Tests for the Redis Stream event bus."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from convoy.agent import AgentOptions, AgentResult, WorkerAgent
from convoy.config import Settings
from convoy.events import (
    EVENT_AGENT_EVENT,
    EVENT_AGENT_STATUS,
    EVENT_VERSION,
    AgentEventForwarder,
    BusEvent,
    EventSubscriber,
    publish_event,
)
from convoy.stream_parser import ContentBlockDeltaEvent, ToolUseEvent

SETTINGS = Settings(events_stream="test:stream", events_stream_maxlen=25)


def _payload(mock_redis: MagicMock, index: int = -1) -> dict:
    _stream, fields = mock_redis.xadd.call_args_list[index][0]
    return json.loads(fields["data"])


@pytest.fixture
def mock_redis():
    redis = MagicMock()
    with patch("convoy.events.get_redis", return_value=redis):
        yield redis


def test_publish_event_payload(mock_redis):
    publish_event(
        EVENT_AGENT_STATUS, "t1", "running", plan_id="p1", extra={"agent_id": "a1"}, settings=SETTINGS
    )

    stream, _fields = mock_redis.xadd.call_args[0]
    assert stream == "test:stream"
    assert mock_redis.xadd.call_args[1] == {"maxlen": 25, "approximate": True}
    payload = _payload(mock_redis)
    assert payload["type"] == "agent:status"
    assert payload["id"] == "t1"
    assert payload["plan_id"] == "p1"
    assert payload["status"] == "running"
    assert payload["source"] == "worker"
    assert payload["v"] == EVENT_VERSION
    assert payload["agent_id"] == "a1"
    assert payload["event_id"]
    assert payload["ts"]


def test_publish_event_plan_id_defaults_to_entity(mock_redis):
    publish_event(EVENT_AGENT_STATUS, "t1", "idle", settings=SETTINGS)
    assert _payload(mock_redis)["plan_id"] == "t1"


def test_publish_event_swallows_redis_errors(mock_redis, caplog):
    mock_redis.xadd.side_effect = RedisConnectionError("down")
    publish_event(EVENT_AGENT_STATUS, "t1", "running", settings=SETTINGS)
    assert "Event publish failed" in caplog.text


def test_forwarder_publishes_status_and_notable_events(mock_redis):
    agent = WorkerAgent(runtime=None, agent_id="agent-1")  # type: ignore[arg-type]
    agent._options = AgentOptions(prompt="p", worktree_path="/wt", plan_id="p1", task_id="t1")
    forwarder = AgentEventForwarder(agent, settings=SETTINGS)

    agent._callbacks.dispatch("status", "running")
    agent._callbacks.dispatch(
        "event", ToolUseEvent(timestamp="t", tool_name="Bash", tool_id="u1", input={})
    )
    agent._callbacks.dispatch("event", ContentBlockDeltaEvent(timestamp="t", delta={"text": "x"}))

    assert mock_redis.xadd.call_count == 2
    status = _payload(mock_redis, 0)
    assert status["type"] == EVENT_AGENT_STATUS
    assert status["id"] == "t1"
    assert status["plan_id"] == "p1"
    assert "result" not in status
    event = _payload(mock_redis, 1)
    assert event["type"] == EVENT_AGENT_EVENT
    assert event["event_type"] == "tool_use"
    assert event["tool_name"] == "Bash"

    forwarder.detach()
    agent._callbacks.dispatch("status", "stopping")
    assert mock_redis.xadd.call_count == 2


def test_forwarder_attaches_result_on_terminal_status(mock_redis):
    agent = WorkerAgent(runtime=None, agent_id="agent-2")  # type: ignore[arg-type]
    AgentEventForwarder(agent, settings=SETTINGS, source="cli")
    agent._result = AgentResult(success=False, exit_code=2, error="Container exited with code 2")

    agent._callbacks.dispatch("status", "failed")

    payload = _payload(mock_redis)
    assert payload["id"] == "agent-2"
    assert payload["source"] == "cli"
    assert payload["result"]["error"] == "Container exited with code 2"


def _entry(entry_id: bytes, **payload) -> tuple[bytes, dict]:
    payload.setdefault("type", EVENT_AGENT_STATUS)
    payload.setdefault("status", "running")
    return entry_id, {b"data": json.dumps(payload).encode()}


def _reply(*entries) -> list:
    return [[b"test:stream", list(entries)]]


def test_subscriber_decodes_bus_events_and_advances_cursor(mock_redis):
    mock_redis.xread.side_effect = [
        _reply(
            _entry(b"1-0", id="t1", plan_id="other"),
            (b"2-0", {b"data": b"not json"}),
            _entry(b"3-0", id="t2", plan_id="p1"),
            _entry(b"4-0", id="t1", plan_id="p1", agent_id="a1", result={"success": True}),
        ),
        [],
    ]
    subscriber = EventSubscriber(plan_id="p1", task_id="t1", timeout=0.1, settings=SETTINGS)

    event = next(subscriber)
    assert isinstance(event, BusEvent)
    assert event.stream_id == "4-0"
    assert event.kind == EVENT_AGENT_STATUS
    assert event.agent_id == "a1"
    assert event.detail == {"result": {"success": True}}
    assert event.to_dict()["result"] == {"success": True}
    assert next(subscriber) is None
    assert mock_redis.xread.call_args[0][0] == {"test:stream": b"4-0"}
    assert mock_redis.xread.call_args[1] == {"block": 100, "count": 10}


def test_subscriber_filters_by_agent_and_kind(mock_redis):
    mock_redis.xread.side_effect = [
        _reply(
            _entry(b"1-0", id="t1", agent_id="a1"),
            _entry(b"2-0", type=EVENT_AGENT_EVENT, id="t1", agent_id="a2", event_type="tool_use"),
            _entry(b"3-0", type=EVENT_AGENT_EVENT, id="t1", agent_id="a1", event_type="result"),
            _entry(b"4-0", type="plan:status", id="t1", agent_id="a1"),
        ),
        [],
    ]
    subscriber = EventSubscriber(
        agent_id="a1", kinds=[EVENT_AGENT_EVENT], timeout=0, settings=SETTINGS
    )

    event = next(subscriber)
    assert (event.stream_id, event.event_type) == ("3-0", "result")
    assert next(subscriber) is None
    assert mock_redis.xread.call_count == 2


def test_subscriber_queues_every_match_in_a_batch(mock_redis):
    mock_redis.xread.side_effect = [
        _reply(_entry(b"1-0", id="t1"), _entry(b"2-0", id="t2")),
        [],
    ]
    subscriber = EventSubscriber(timeout=0, settings=SETTINGS)

    assert next(subscriber).entity_id == "t1"
    assert next(subscriber).entity_id == "t2"
    assert mock_redis.xread.call_count == 1
    assert next(subscriber) is None


def test_subscriber_unavailable(mock_redis):
    mock_redis.ping.side_effect = RedisConnectionError("down")
    subscriber = EventSubscriber(timeout=0, settings=SETTINGS)
    assert subscriber.available is False
    assert next(subscriber) is None
