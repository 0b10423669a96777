"""Health checks for the convoy runtime."""

from __future__ import annotations

import shutil
import time
from pathlib import Path
from typing import Literal, TypedDict, cast

from convoy.config import ConfigError, Settings, load_settings
from convoy.events import get_redis
from convoy.paths import CONFIG_FILE
from convoy.sandbox import check_docker_available, check_image_exists

Status = Literal["pass", "warning", "fail"]
_STATUS_RANK: dict[Status, int] = {"pass": 0, "warning": 1, "fail": 2}

_REDIS_STREAM_STALE_SECONDS = 300


class _CheckFindingRequired(TypedDict):
    status: Status
    message: str


class CheckFinding(_CheckFindingRequired, total=False):
    details: dict[str, object]


class CheckReport(TypedDict):
    name: str
    status: Status
    summary: str
    findings: list[CheckFinding]


class DoctorReport(TypedDict):
    status: Status
    summary: str
    checks: list[CheckReport]


async def run_doctor(config_path: Path | None = None) -> DoctorReport:
    """Run all health checks."""
    config_check, settings = _check_config(config_path or CONFIG_FILE)
    checks = [
        config_check,
        await _check_docker(settings),
        await _check_image(settings),
        _check_task_cli(settings),
        _check_redis_stream(settings),
    ]
    return {
        "status": _worst_status([check["status"] for check in checks]),
        "summary": _report_summary(checks),
        "checks": checks,
    }


def _worst_status(statuses: list[Status]) -> Status:
    if not statuses:
        return "pass"
    return max(statuses, key=lambda s: _STATUS_RANK[s])


def _report_summary(checks: list[CheckReport]) -> str:
    counts: dict[Status, int] = {"pass": 0, "warning": 0, "fail": 0}
    for check in checks:
        counts[check["status"]] += 1
    return f"{counts['pass']} checks passed, {counts['warning']} warnings, {counts['fail']} failed."


def _check_config(path: Path) -> tuple[CheckReport, Settings]:
    try:
        settings = load_settings(path)
    except ConfigError as exc:
        return (
            {
                "name": "config",
                "status": "fail",
                "summary": "Configuration file is invalid; using defaults.",
                "findings": [{"status": "fail", "message": str(exc), "details": {"path": str(path)}}],
            },
            Settings(),
        )
    exists = path.exists()
    return (
        {
            "name": "config",
            "status": "pass",
            "summary": f"Loaded {path}." if exists else "No config file; using defaults.",
            "findings": [
                {
                    "status": "pass",
                    "message": f"image={settings.image}, grace={settings.stop_grace_seconds}s, "
                    f"oauth_token={'[set]' if settings.oauth_token else '[unset]'}",
                    "details": {"path": str(path), "exists": exists},
                }
            ],
        },
        settings,
    )


async def _check_docker(settings: Settings) -> CheckReport:
    if shutil.which(settings.docker_bin) is None:
        return {
            "name": "docker",
            "status": "fail",
            "summary": f"{settings.docker_bin} not found on PATH.",
            "findings": [
                {
                    "status": "fail",
                    "message": f"{settings.docker_bin} not found on PATH",
                    "details": {"docker_bin": settings.docker_bin},
                }
            ],
        }
    if not await check_docker_available(settings.docker_bin):
        return {
            "name": "docker",
            "status": "fail",
            "summary": "Docker daemon is not responding.",
            "findings": [
                {
                    "status": "fail",
                    "message": f"'{settings.docker_bin} version' failed; is the daemon running?",
                }
            ],
        }
    return {
        "name": "docker",
        "status": "pass",
        "summary": "Docker is available.",
        "findings": [],
    }


async def _check_image(settings: Settings) -> CheckReport:
    if shutil.which(settings.docker_bin) is None:
        return {
            "name": "image",
            "status": "warning",
            "summary": "Skipped: docker is not installed.",
            "findings": [],
        }
    if await check_image_exists(settings.image, docker_bin=settings.docker_bin):
        return {
            "name": "image",
            "status": "pass",
            "summary": f"Image {settings.image} is present.",
            "findings": [],
        }
    return {
        "name": "image",
        "status": "fail",
        "summary": f"Image {settings.image} is missing.",
        "findings": [
            {
                "status": "fail",
                "message": f"Build it with '{settings.docker_bin} build -t {settings.image} .'",
                "details": {"image": settings.image},
            }
        ],
    }


def _check_task_cli(settings: Settings) -> CheckReport:
    path = shutil.which(settings.bd_bin)
    if path is None:
        return {
            "name": "task_store",
            "status": "warning",
            "summary": f"{settings.bd_bin} not found on PATH; task store commands will fail.",
            "findings": [],
        }
    return {
        "name": "task_store",
        "status": "pass",
        "summary": f"{settings.bd_bin} found at {path}.",
        "findings": [],
    }


def _check_redis_stream(settings: Settings) -> CheckReport:
    stream = settings.events_stream
    try:
        redis = get_redis(settings.redis_url)
        redis.ping()
        if not redis.exists(stream):
            return {
                "name": "redis_stream",
                "status": "pass",
                "summary": f"Redis reachable; stream '{stream}' not created yet.",
                "findings": [],
            }
        stream_length = int(cast(int, redis.xlen(stream)))
        latest_entries = cast(list[tuple[object, object]], redis.xrevrange(stream, count=1))
    except Exception as exc:
        return {
            "name": "redis_stream",
            "status": "warning",
            "summary": "Redis is unavailable; worker events will not be published.",
            "findings": [
                {
                    "status": "warning",
                    "message": f"Failed to read Redis stream state: {exc}",
                    "details": {"redis_url": settings.redis_url},
                }
            ],
        }

    if not latest_entries:
        return {
            "name": "redis_stream",
            "status": "pass",
            "summary": f"Redis stream '{stream}' is empty.",
            "findings": [],
        }

    latest_entry_id = latest_entries[0][0]
    if isinstance(latest_entry_id, bytes):
        latest_entry_id = latest_entry_id.decode()
    latest_ms = int(str(latest_entry_id).split("-", 1)[0])
    age_seconds = int((time.time() * 1000 - latest_ms) // 1000)
    details: dict[str, object] = {
        "stream": stream,
        "stream_length": stream_length,
        "latest_entry_id": str(latest_entry_id),
        "age_seconds": age_seconds,
    }
    if age_seconds > _REDIS_STREAM_STALE_SECONDS:
        return {
            "name": "redis_stream",
            "status": "warning",
            "summary": f"Latest event on '{stream}' is {age_seconds}s old.",
            "findings": [
                {"status": "warning", "message": "No recent worker events.", "details": details}
            ],
        }
    return {
        "name": "redis_stream",
        "status": "pass",
        "summary": f"Redis stream '{stream}' is healthy; latest entry is {age_seconds}s old.",
        "findings": [{"status": "pass", "message": "Recent worker events.", "details": details}],
    }
