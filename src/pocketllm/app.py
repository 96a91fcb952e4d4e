"""Bootstrap helpers that wire settings into a ready chat core."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from .backends.factory import BackendFactory, ClientFactory
from .backends.local import LlmEngine, NativeRuntime
from .chat.manager import ChatManager
from .chat.tool_loop import ApprovalCallback
from .models.local_models import LocalModelStore
from .services.settings import Settings, SettingsStore
from .storage.database import ChatDatabase
from .storage.servers import ServerProfileStore
from .tools.registry import ToolRegistry, register_builtin_tools
from .utils import logging as logging_utils

__all__ = ["ChatCore", "build_core", "configure_logging", "load_settings"]

_LOGGER = logging.getLogger(__name__)


def configure_logging(
    settings: Settings,
    *,
    force: bool = False,
    log_dir: Path | str | None = None,
    console: bool = True,
) -> Path:
    """Configure logging for the host; ``debug_logging`` wins over ``log_level``."""

    level: int | str = logging.DEBUG if settings.debug_logging else settings.log_level
    log_path = logging_utils.setup_logging(level, log_dir=log_dir, console=console, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(logging.getLogger().level))
    return log_path


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except Exception as exc:  # pragma: no cover - corrupt settings file
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


@dataclass(slots=True)
class ChatCore:
    """Everything a host needs to drive conversations."""

    settings: Settings
    database: ChatDatabase
    servers: ServerProfileStore
    manager: ChatManager
    backends: BackendFactory
    local_models: LocalModelStore
    engine: LlmEngine | None = None

    async def aclose(self) -> None:
        self.manager.stop_generation()
        await self.backends.aclose()
        if self.engine is not None:
            self.engine.unload()


def build_core(
    settings: Settings | None = None,
    *,
    database: ChatDatabase | None = None,
    runtime: NativeRuntime | None = None,
    client_factory: ClientFactory | None = None,
    approval: ApprovalCallback | None = None,
) -> ChatCore:
    """Assemble the stores, backends and manager from ``settings``.

    Local inference is only available when a native ``runtime`` is given.
    """
    active = settings or Settings()
    db = database or ChatDatabase()
    servers = ServerProfileStore(db)
    tools = ToolRegistry(db)
    register_builtin_tools(tools, fetch_timeout=active.fetch_timeout)
    local_models = LocalModelStore(active.resolved_models_dir(), gpu_offload_percent=active.gpu_offload_percent)
    engine = LlmEngine(runtime) if runtime is not None else None
    backends = BackendFactory(
        servers,
        settings=active,
        engine=engine,
        local_models=local_models,
        client_factory=client_factory,
    )
    manager = ChatManager(db, backends, tools=tools, settings=active, approval=approval)
    _LOGGER.debug(
        "Chat core ready (models: %s, local inference: %s)",
        local_models.models_dir,
        "on" if engine is not None else "off",
    )
    return ChatCore(
        settings=active,
        database=db,
        servers=servers,
        manager=manager,
        backends=backends,
        local_models=local_models,
        engine=engine,
    )
