"""Tests for the CLI commands."""

from __future__ import annotations

import dataclasses
import json
from unittest.mock import AsyncMock, MagicMock, patch

from click.testing import CliRunner

from convoy.agent import AgentResult
from convoy.checkout import Checkout, CheckoutError
from convoy.cli import main
from convoy.config import ConfigError
from convoy.events import BusEvent
from convoy.sandbox import SpawnError

# ---------------------------------------------------------------------------
# JSON error handling (group-level)
# ---------------------------------------------------------------------------


def test_usage_error_is_json():
    runner = CliRunner()
    result = runner.invoke(main, ["graph", "--no-such-flag"])
    assert result.exit_code != 0
    payload = json.loads(result.output)
    assert payload["ok"] is False
    assert "no-such-flag" in payload["error"].lower() or "no such option" in payload["error"].lower()


def test_unknown_command_suggests_close_match():
    runner = CliRunner()
    result = runner.invoke(main, ["grahp"])
    assert result.exit_code != 0
    assert result.exit_code == 2
    payload = json.loads(result.output)
    assert payload["kind"] == "usage"
    assert payload["suggestions"] == ["graph"]


# ---------------------------------------------------------------------------
# graph
# ---------------------------------------------------------------------------


def test_graph_from_task_list(tmp_path):
    tasks = tmp_path / "tasks.json"
    tasks.write_text(
        json.dumps(
            [
                {"id": "A", "title": "First", "status": "closed"},
                {"id": "B", "title": "Second", "blocked_by": ["A"]},
                {"id": "C", "title": "Third", "blocked_by": ["B"]},
            ]
        )
    )
    runner = CliRunner()
    result = runner.invoke(main, ["graph", str(tasks)])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["critical_path"] == ["B", "C"]
    assert payload["max_depth"] == 2
    assert payload["stats"]["completed"] == 1
    assert payload["stats"]["ready"] == 1


def test_graph_from_stdin_with_assignments():
    data = {
        "tasks": [{"id": "A", "title": "First"}, {"id": "B", "title": "Second", "blockedBy": ["A"]}],
        "assignments": [{"task_id": "A", "agent_id": "agent-1", "plan_id": "p", "status": "completed"}],
    }
    runner = CliRunner()
    result = runner.invoke(main, ["graph"], input=json.dumps(data))
    assert result.exit_code == 0, result.output
    nodes = {n["id"]: n for n in json.loads(result.output)["nodes"]}
    assert nodes["A"]["status"] == "completed"
    assert nodes["B"]["status"] == "ready"


def test_graph_cycle_is_json_error():
    data = [{"id": "A", "title": "a", "blocked_by": ["B"]}, {"id": "B", "title": "b", "blocked_by": ["A"]}]
    runner = CliRunner()
    result = runner.invoke(main, ["graph"], input=json.dumps(data))
    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload["ok"] is False
    assert payload["kind"] == "dependency_cycle"
    assert payload["error"].startswith("Dependency cycle:")
    assert payload["cycle"] in (["A", "B", "A"], ["B", "A", "B"])


def test_graph_invalid_json():
    runner = CliRunner()
    result = runner.invoke(main, ["graph"], input="{nope")
    assert result.exit_code == 1
    assert "Invalid JSON" in json.loads(result.output)["error"]


# ---------------------------------------------------------------------------
# parse
# ---------------------------------------------------------------------------


def test_parse_normalizes_stream():
    stream = "\n".join(
        [
            "npm WARN noise",
            json.dumps({"type": "tool_use", "name": "Bash", "id": "t1", "input": {}}),
            json.dumps({"type": "result", "result": "done"}),
        ]
    )
    runner = CliRunner()
    result = runner.invoke(main, ["parse"], input=stream)
    assert result.exit_code == 0, result.output
    events = [json.loads(line) for line in result.output.splitlines()]
    assert [e["type"] for e in events] == ["tool_use", "result"]
    assert events[0]["tool_name"] == "Bash"
    assert events[0]["tool_id"] == "t1"


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


def test_run_reports_result(tmp_path):
    result_value = AgentResult(success=True, exit_code=0, result="ok")
    runner = CliRunner()
    with patch("convoy.cli._run_agent", AsyncMock(return_value=result_value)) as run_agent:
        result = runner.invoke(
            main, ["run", "--worktree", str(tmp_path), "--prompt", "go", "--task-id", "t1"]
        )
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output.splitlines()[-1])
    assert payload == {"ok": True, "result": result_value.to_dict()}
    options = run_agent.call_args[0][0]
    assert options.task_id == "t1"
    assert options.worktree_path == str(tmp_path.resolve())
    assert run_agent.call_args[1] == {"publish": False}


def test_run_failure_exits_nonzero(tmp_path):
    failed = AgentResult(success=False, exit_code=2, error="Container exited with code 2")
    runner = CliRunner()
    with patch("convoy.cli._run_agent", AsyncMock(return_value=failed)):
        result = runner.invoke(main, ["run", "--worktree", str(tmp_path), "--prompt", "go"])
    assert result.exit_code == 1
    assert json.loads(result.output.splitlines()[-1])["ok"] is False


def test_run_spawn_error_is_json_error(tmp_path):
    runner = CliRunner()
    with patch("convoy.cli._run_agent", AsyncMock(side_effect=SpawnError("no docker"))):
        result = runner.invoke(main, ["run", "--worktree", str(tmp_path), "--prompt", "go"])
    assert result.exit_code == 1
    assert json.loads(result.output) == {"ok": False, "error": "no docker", "kind": "spawn"}


# ---------------------------------------------------------------------------
# events / doctor
# ---------------------------------------------------------------------------


def test_events_prints_until_count():
    subscriber = MagicMock()
    subscriber.available = True
    subscriber.__iter__.return_value = iter(
        [
            None,
            BusEvent(stream_id="1-0", kind="agent:status", entity_id="t1", status="running", agent_id="a1"),
            BusEvent(stream_id="2-0", kind="agent:event", entity_id="t2", status="running", agent_id="a1"),
            BusEvent(stream_id="3-0", kind="agent:status", entity_id="t3", status="completed"),
        ]
    )
    runner = CliRunner()
    with patch("convoy.events.EventSubscriber", return_value=subscriber) as factory:
        result = runner.invoke(
            main,
            ["events", "--plan-id", "p1", "--agent-id", "a1", "--from-start", "--count", "2"],
        )
    assert result.exit_code == 0, result.output
    lines = [json.loads(line) for line in result.output.splitlines()]
    assert [line["id"] for line in lines] == ["t1", "t2"]
    assert lines[0]["stream_id"] == "1-0"
    assert factory.call_args[1]["cursor"] == "0"
    assert factory.call_args[1]["plan_id"] == "p1"
    assert factory.call_args[1]["agent_id"] == "a1"
    assert factory.call_args[1]["kinds"] == ()


def test_events_kind_filter_is_passed_through():
    subscriber = MagicMock()
    subscriber.available = True
    subscriber.__iter__.return_value = iter([])
    runner = CliRunner()
    with patch("convoy.events.EventSubscriber", return_value=subscriber) as factory:
        result = runner.invoke(main, ["events", "--kind", "agent:status"])
    assert result.exit_code == 0, result.output
    assert factory.call_args[1]["kinds"] == ("agent:status",)


def test_events_redis_unavailable():
    subscriber = MagicMock()
    subscriber.available = False
    runner = CliRunner()
    with patch("convoy.events.EventSubscriber", return_value=subscriber):
        result = runner.invoke(main, ["events"])
    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload["kind"] == "redis"
    assert "Redis is unavailable" in payload["error"]


def test_checkout_prints_worktree(tmp_path):
    created = Checkout(task_id="bd-1", repo_dir=str(tmp_path), branch="convoy/x-bd-1", path="/wt/bd-1")
    runner = CliRunner()
    with patch("convoy.cli.checkout_task", AsyncMock(return_value=created)) as make:
        result = runner.invoke(
            main, ["checkout", "bd-1", "--plan-dir", str(tmp_path), "--repo", str(tmp_path)]
        )
    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {"ok": True, "checkout": dataclasses.asdict(created)}
    store, repo, task_id = make.call_args[0]
    assert store.plan_dir == tmp_path.resolve()
    assert (repo, task_id) == (str(tmp_path.resolve()), "bd-1")
    assert make.call_args[1] == {"base_branch": "main"}


def test_checkout_error_is_json_error(tmp_path):
    runner = CliRunner()
    failing = AsyncMock(side_effect=CheckoutError("Unknown task: bd-9"))
    with patch("convoy.cli.checkout_task", failing):
        result = runner.invoke(main, ["checkout", "bd-9", "--plan-dir", str(tmp_path)])
    assert result.exit_code == 1
    assert json.loads(result.output) == {
        "ok": False,
        "error": "Unknown task: bd-9",
        "kind": "checkout",
    }


def test_config_error_is_json_error(tmp_path):
    runner = CliRunner()
    with patch("convoy.cli.load_settings", side_effect=ConfigError("Failed to parse config")):
        result = runner.invoke(main, ["run", "--worktree", str(tmp_path), "--prompt", "go"])
    assert result.exit_code == 1
    assert json.loads(result.output)["kind"] == "config"


def test_doctor_failure_exit_code():
    report = {"status": "fail", "summary": "0 checks passed, 0 warnings, 1 failed.", "checks": []}
    runner = CliRunner()
    with patch("convoy.doctor.run_doctor", AsyncMock(return_value=report)):
        result = runner.invoke(main, ["doctor"])
    assert result.exit_code == 1
    lines = result.output.splitlines()
    assert json.loads(lines[0])["status"] == "fail"
    assert json.loads(lines[1]) == {"ok": False, "error": "Doctor checks failed.", "kind": "doctor"}


def test_doctor_pass():
    report = {"status": "pass", "summary": "5 checks passed, 0 warnings, 0 failed.", "checks": []}
    runner = CliRunner()
    with patch("convoy.doctor.run_doctor", AsyncMock(return_value=report)):
        result = runner.invoke(main, ["doctor"])
    assert result.exit_code == 0
    assert json.loads(result.output)["status"] == "pass"
