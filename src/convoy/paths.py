"""Canonical filesystem paths for convoy configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

_env_config_dir = os.environ.get("CONVOY_CONFIG_DIR")
CONVOY_CONFIG_DIR = (
    Path(_env_config_dir).expanduser() if _env_config_dir else Path.home() / ".config" / "convoy"
)

CONFIG_FILE = CONVOY_CONFIG_DIR / "config.toml"

PLANS_DIR = CONVOY_CONFIG_DIR / "plans"
