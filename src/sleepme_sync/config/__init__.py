"""Configuration package."""

from sleepme_sync.config.environment import Settings, settings

__all__ = ["Settings", "settings"]
