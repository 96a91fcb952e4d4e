"""Application services shared by the chat core."""

from .settings import CompactionSettings, GenerationDefaults, Settings, SettingsStore

__all__ = ["CompactionSettings", "GenerationDefaults", "Settings", "SettingsStore"]
