"""Shared test fixtures."""

import os

import pytest

import convoy.events


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    """Keep the developer's CONVOY_* variables and cached settings out of tests."""
    for key in list(os.environ):
        if key.startswith("CONVOY_") or key == "CLAUDE_CODE_OAUTH_TOKEN":
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(convoy.events, "_settings", None)
    monkeypatch.setattr(convoy.events, "_pools", {})
    monkeypatch.setattr("convoy.config.CONFIG_FILE", tmp_path / "no-config.toml")
