"""Runtime settings for convoy.

Settings are read from ``~/.config/convoy/config.toml`` and then
overridden by ``CONVOY_*`` environment variables::

    [sandbox]
    image = "convoy-agent:latest"
    docker_bin = "docker"
    stop_grace_seconds = 2.0
    proxy_url = "http://host.docker.internal:9847"
    forward_ssh_agent = true

    [events]
    redis_url = "redis://localhost:6379/0"
    stream = "convoy:events:stream"
    stream_maxlen = 1000

    [tasks]
    bd_bin = "bd"

A missing file yields the defaults. A file that exists but cannot be
parsed, or a value of the wrong type, raises :class:`ConfigError`.
"""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from convoy.paths import CONFIG_FILE

log = logging.getLogger(__name__)

DEFAULT_IMAGE = "convoy-agent:latest"
DEFAULT_PROXY_URL = "http://host.docker.internal:9847"
DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_EVENTS_STREAM = "convoy:events:stream"


class ConfigError(ValueError):
    """Raised when the configuration file or environment is invalid."""


@dataclass(frozen=True)
class Settings:
    docker_bin: str = "docker"
    image: str = DEFAULT_IMAGE
    stop_grace_seconds: float = 2.0
    proxy_url: str | None = None
    forward_ssh_agent: bool = True
    oauth_token: str | None = None
    redis_url: str = DEFAULT_REDIS_URL
    events_stream: str = DEFAULT_EVENTS_STREAM
    events_stream_maxlen: int = 1000
    bd_bin: str = "bd"

    @property
    def effective_proxy_url(self) -> str:
        return self.proxy_url or DEFAULT_PROXY_URL


# (toml table, toml key) -> Settings field
_TOML_KEYS: dict[tuple[str, str], str] = {
    ("sandbox", "docker_bin"): "docker_bin",
    ("sandbox", "image"): "image",
    ("sandbox", "stop_grace_seconds"): "stop_grace_seconds",
    ("sandbox", "proxy_url"): "proxy_url",
    ("sandbox", "forward_ssh_agent"): "forward_ssh_agent",
    ("sandbox", "oauth_token"): "oauth_token",
    ("events", "redis_url"): "redis_url",
    ("events", "stream"): "events_stream",
    ("events", "stream_maxlen"): "events_stream_maxlen",
    ("tasks", "bd_bin"): "bd_bin",
}

# Later entries win, so CONVOY_OAUTH_TOKEN beats CLAUDE_CODE_OAUTH_TOKEN.
_ENV_KEYS: tuple[tuple[str, str], ...] = (
    ("CONVOY_DOCKER_BIN", "docker_bin"),
    ("CONVOY_IMAGE", "image"),
    ("CONVOY_STOP_GRACE_SECONDS", "stop_grace_seconds"),
    ("CONVOY_PROXY_URL", "proxy_url"),
    ("CONVOY_FORWARD_SSH_AGENT", "forward_ssh_agent"),
    ("CLAUDE_CODE_OAUTH_TOKEN", "oauth_token"),
    ("CONVOY_OAUTH_TOKEN", "oauth_token"),
    ("CONVOY_REDIS_URL", "redis_url"),
    ("CONVOY_EVENTS_STREAM", "events_stream"),
    ("CONVOY_EVENTS_STREAM_MAXLEN", "events_stream_maxlen"),
    ("CONVOY_BD_BIN", "bd_bin"),
)

_FIELD_TYPES: dict[str, str] = {f.name: str(f.type) for f in fields(Settings)}

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off"})


def _coerce(name: str, value: Any, *, source: str) -> Any:
    """Coerce *value* to the declared type of Settings field *name*."""
    declared = _FIELD_TYPES[name]
    try:
        if declared == "bool":
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS | _FALSE_STRINGS:
                return value.strip().lower() in _TRUE_STRINGS
            raise TypeError
        if declared == "int":
            if isinstance(value, bool):
                raise TypeError
            return int(value)
        if declared == "float":
            if isinstance(value, bool):
                raise TypeError
            result = float(value)
            if result < 0:
                raise ConfigError(f"{source}: {name} must be >= 0")
            return result
        if not isinstance(value, str):
            raise TypeError
        return value
    except (TypeError, ValueError) as exc:
        if isinstance(exc, ConfigError):
            raise
        raise ConfigError(f"{source}: invalid value for {name}: {value!r}") from None


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}") from exc


def _values_from_toml(document: Mapping[str, Any], *, source: str) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for (table, key), field_name in _TOML_KEYS.items():
        section = document.get(table)
        if not isinstance(section, dict) or key not in section:
            continue
        values[field_name] = _coerce(field_name, section[key], source=source)
    for table, section in document.items():
        if not isinstance(section, dict):
            continue
        for key in section:
            if (table, key) not in _TOML_KEYS:
                log.warning("%s: ignoring unknown setting [%s].%s", source, table, key)
    return values


def _values_from_env(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for env_key, field_name in _ENV_KEYS:
        raw = env.get(env_key)
        if raw is None or raw == "":
            continue
        values[field_name] = _coerce(field_name, raw, source=env_key)
    return values


def load_settings(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """Build :class:`Settings` from defaults, the TOML file and the environment."""
    config_path = path if path is not None else CONFIG_FILE
    environ = os.environ if env is None else env

    settings = Settings()
    file_values = _values_from_toml(_read_toml(config_path), source=str(config_path))
    if file_values:
        settings = replace(settings, **file_values)
    env_values = _values_from_env(environ)
    if env_values:
        settings = replace(settings, **env_values)
    return settings
