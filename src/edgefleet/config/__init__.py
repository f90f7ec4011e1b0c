"""Configuration package — re-exports for convenience."""

from edgefleet.config.loader import ConfigLoader
from edgefleet.config.settings import AgentSettings, Settings

__all__ = ["AgentSettings", "ConfigLoader", "Settings"]
