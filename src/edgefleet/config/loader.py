"""ConfigLoader — YAML file per environment, env vars override."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from edgefleet.config.settings import (
    AGENT_ENV_PREFIX,
    ENV_PREFIX,
    AgentSettings,
    Settings,
)

_CONFIG_ROOT = Path(__file__).resolve().parent
DEFAULT_ENV = "production"


class ConfigLoader:
    """Load settings from YAML files with environment variable overrides.

    Each ``<env>/settings.yaml`` holds a ``server:`` and an ``agent:`` section.
    ``EDGEFLEET_ENV`` picks the file; unset means ``production``, which
    carries no admin secret and never trusts the client-certificate header.
    """

    @staticmethod
    def _load_yaml(env: str) -> dict[str, Any]:
        """Load the settings.yaml for the given environment."""
        path = _CONFIG_ROOT / env / "settings.yaml"
        if not path.exists():
            return {}
        with path.open() as config_file:
            data = yaml.safe_load(config_file)
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _layered(section: str, prefix: str, overrides: dict[str, Any]) -> dict[str, Any]:
        """Merge one YAML section under env vars and explicit overrides."""
        env = os.environ.get("EDGEFLEET_ENV", DEFAULT_ENV)
        section_values = ConfigLoader._load_yaml(env).get(section) or {}
        # Drop YAML keys that have a corresponding env var; env vars must win
        # and pydantic-settings treats __init__ kwargs as highest priority.
        filtered: dict[str, Any] = {}
        for key, value in section_values.items():
            env_key = f"{prefix}{key.upper()}"
            if env_key not in os.environ:
                filtered[key] = value
        return {**filtered, **overrides}

    @staticmethod
    def load_settings(**overrides: Any) -> Settings:
        """Build server Settings: overrides > env vars > YAML > defaults."""
        return Settings(**ConfigLoader._layered("server", ENV_PREFIX, overrides))

    @staticmethod
    def load_agent_settings(**overrides: Any) -> AgentSettings:
        """Build AgentSettings: overrides > env vars > YAML > defaults."""
        return AgentSettings(
            **ConfigLoader._layered("agent", AGENT_ENV_PREFIX, overrides),
        )
