"""Settings dataclasses and their JSON persistence."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from ..chat.models import GenerationParams

__all__ = [
    "CompactionSettings",
    "GenerationDefaults",
    "Settings",
    "SettingsStore",
    "default_settings_path",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".pocketllm"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "POCKETLLM_MODELS_DIR": "models_dir",
    "POCKETLLM_LOG_LEVEL": "log_level",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "POCKETLLM_DEBUG_LOGGING": "debug_logging",
    "POCKETLLM_INCLUDE_USAGE": "include_usage",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "POCKETLLM_REQUEST_TIMEOUT": "request_timeout",
    "POCKETLLM_TOOL_TIMEOUT": "tool_timeout",
    "POCKETLLM_FETCH_TIMEOUT": "fetch_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "POCKETLLM_MAX_RETRIES": "max_retries",
    "POCKETLLM_MAX_TOOL_ROUNDS": "max_tool_rounds",
    "POCKETLLM_GPU_OFFLOAD_PERCENT": "gpu_offload_percent",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


def default_settings_path() -> Path:
    return _SETTINGS_DIR / "settings.json"


@dataclass(slots=True)
class GenerationDefaults:
    """Sampling defaults applied before per-conversation overrides."""

    system_prompt: str | None = None
    temperature: float = 0.7
    max_tokens: int = 2048
    top_p: float = 0.95
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    top_k: int = 40
    min_p: float = 0.05
    repeat_penalty: float = 1.1


@dataclass(slots=True)
class CompactionSettings:
    """When and how much history gets summarized."""

    enabled: bool = True
    threshold: float = 0.75
    retained_tail: int = 4
    manual_tail: int = 2
    summary_max_tokens: int = 2048
    summary_temperature: float = 0.3


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    request_timeout: float = 60.0
    max_retries: int = 3
    retry_min_seconds: float = 1.0
    retry_max_seconds: float = 30.0
    include_usage: bool = False
    max_tool_rounds: int = 8
    tool_timeout: float = 30.0
    fetch_timeout: float = 15.0
    gpu_offload_percent: int = 80
    models_dir: str | None = None
    log_level: str = "INFO"
    debug_logging: bool = False
    generation: GenerationDefaults = field(default_factory=GenerationDefaults)
    compaction: CompactionSettings = field(default_factory=CompactionSettings)

    def generation_defaults(self) -> GenerationParams:
        """Return the generation defaults as turn parameters."""

        return GenerationParams(**asdict(self.generation))

    def resolved_models_dir(self) -> Path:
        if self.models_dir:
            return Path(self.models_dir).expanduser()
        return _SETTINGS_DIR / "models"


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or default_settings_path()

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, then apply explicit and environment overrides."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            generation = data.get("generation")
            if isinstance(generation, Mapping):
                data["generation"] = _build_nested(GenerationDefaults, generation)
            compaction = data.get("compaction")
            if isinstance(compaction, Mapping):
                data["compaction"] = _build_nested(CompactionSettings, compaction)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if payload.get("version") != _SETTINGS_VERSION:
                try:
                    self.save(settings)
                except OSError as exc:
                    LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="runtime")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        data = asdict(settings)
        data["version"] = _SETTINGS_VERSION
        body = json.dumps(data, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _apply_overrides(self, settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}


def _build_nested(cls: type, payload: Mapping[str, Any]) -> Any:
    allowed = {item.name for item in fields(cls)}
    try:
        return cls(**{key: value for key, value in payload.items() if key in allowed})
    except TypeError:
        return cls()
