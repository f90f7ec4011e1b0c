"""Tests for configuration loading."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from edgefleet.config import AgentSettings, ConfigLoader, Settings


def test_settings_direct_construction() -> None:
    """Direct Settings() construction works without YAML (for tests)."""
    s = Settings(admin_token_secret="test", database_url="sqlite+aiosqlite://")
    assert s.admin_token_secret == "test"
    assert s.task_poll_batch_size == 5


def test_load_settings_missing_env_uses_defaults() -> None:
    """load_settings for a nonexistent env falls back to field defaults."""
    with patch.dict("os.environ", {"EDGEFLEET_ENV": "nonexistent"}, clear=False):
        s = ConfigLoader.load_settings()
    assert s.database_url == "sqlite+aiosqlite:///edgefleet.db"
    assert s.trust_client_cert_header is False
    assert s.admin_role == "edge-admin"


def test_load_settings_dev_loads_yaml() -> None:
    """EDGEFLEET_ENV=dev loads the server section of config/dev/settings.yaml."""
    with patch.dict("os.environ", {"EDGEFLEET_ENV": "dev"}, clear=False):
        s = ConfigLoader.load_settings()
    assert s.database_url == "sqlite+aiosqlite:///edgefleet-dev.db"
    assert s.trust_client_cert_header is True


def test_load_settings_explicit_overrides_yaml() -> None:
    """Explicit kwargs to load_settings override YAML values."""
    with patch.dict("os.environ", {"EDGEFLEET_ENV": "dev"}, clear=False):
        s = ConfigLoader.load_settings(task_poll_batch_size=2)
    assert s.task_poll_batch_size == 2


def test_load_settings_env_var_overrides_yaml() -> None:
    """Environment variables override YAML values."""
    env = {"EDGEFLEET_ENV": "dev", "EDGEFLEET_TASK_POLL_BATCH_SIZE": "9"}
    with patch.dict("os.environ", env, clear=False):
        s = ConfigLoader.load_settings()
    assert s.task_poll_batch_size == 9


def test_load_agent_settings_dev_loads_yaml() -> None:
    """The agent section is loaded separately with its own env prefix."""
    env = {"EDGEFLEET_ENV": "dev", "EDGEFLEET_AGENT_POLL_INTERVAL_SECONDS": "2.5"}
    with patch.dict("os.environ", env, clear=False):
        s = ConfigLoader.load_agent_settings()
    assert isinstance(s, AgentSettings)
    assert s.state_dir == "var/agent"
    assert s.poll_interval_seconds == 2.5


def test_unset_env_loads_production_without_dev_secrets() -> None:
    """Without EDGEFLEET_ENV no known admin secret or header trust applies."""
    with patch.dict("os.environ", {}, clear=False):
        os.environ.pop("EDGEFLEET_ENV", None)
        s = ConfigLoader.load_settings()
        agent = ConfigLoader.load_agent_settings()
    assert s.admin_token_secret == ""
    assert s.trust_client_cert_header is False
    assert s.ca_auto_generate is False
    assert agent.state_dir == "/var/lib/edgefleet-agent"


def test_dev_secret_only_in_dev() -> None:
    """The dev admin secret is only loaded when dev is chosen explicitly."""
    with patch.dict("os.environ", {"EDGEFLEET_ENV": "dev"}, clear=False):
        s = ConfigLoader.load_settings()
    assert s.admin_token_secret == "dev-admin-secret"


@pytest.mark.parametrize("env", ["dev", "production"])
def test_shipped_yaml_only_names_real_settings(env: str) -> None:
    """Every key in a shipped settings.yaml maps to a Settings or AgentSettings field."""
    data = ConfigLoader._load_yaml(env)
    assert set(data["server"]) <= set(Settings.model_fields)
    assert set(data.get("agent") or {}) <= set(AgentSettings.model_fields)
