"""Resolve a :class:`BackendSelection` into a ready backend."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Tuple

from openai import AsyncOpenAI

from ..chat.models import BackendSelection
from ..errors import BackendUnavailable
from ..models.local_models import LocalModelStore
from ..services.settings import Settings
from ..storage.servers import ServerProfileStore
from .base import BackendAdapter
from .local import LlmEngine, LocalBackend
from .remote import RemoteBackend, RemoteSettings

__all__ = ["BackendFactory"]

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[RemoteSettings], AsyncOpenAI]


class BackendFactory:
    """Builds backends on demand.

    Remote backends are cached per server profile and model; a profile edit
    changes its ``updated_at`` and therefore yields a fresh client. Local
    backends are cheap wrappers around the single shared engine.
    """

    def __init__(
        self,
        servers: ServerProfileStore,
        *,
        settings: Settings | None = None,
        engine: LlmEngine | None = None,
        local_models: LocalModelStore | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._servers = servers
        self._settings = settings or Settings()
        self._engine = engine
        self._local_models = local_models
        self._client_factory = client_factory
        self._remote: Dict[Tuple[str, str], Tuple[datetime, RemoteBackend]] = {}
        self._stale: List[RemoteBackend] = []

    def __call__(self, selection: BackendSelection) -> BackendAdapter:
        if selection.is_local:
            return self._local(selection.model_id)
        return self._remote_for(selection)

    async def aclose(self) -> None:
        backends = [backend for _, backend in self._remote.values()] + self._stale
        self._remote.clear()
        self._stale.clear()
        for backend in backends:
            await backend.aclose()

    def _local(self, model_id: str) -> LocalBackend:
        if self._engine is None or self._local_models is None:
            raise BackendUnavailable("Local inference is not configured", model_id=model_id)
        return LocalBackend(self._engine, self._local_models, model_id)

    def _remote_for(self, selection: BackendSelection) -> RemoteBackend:
        profile = self._servers.require(selection.server_id)
        key = (profile.id, selection.model_id)
        cached = self._remote.get(key)
        if cached is not None and cached[0] == profile.updated_at:
            return cached[1]
        overrides: Dict[str, Any] = {
            "max_retries": self._settings.max_retries,
            "retry_min_seconds": self._settings.retry_min_seconds,
            "retry_max_seconds": self._settings.retry_max_seconds,
            "include_usage": self._settings.include_usage,
            "debug_logging": self._settings.debug_logging,
        }
        remote_settings = RemoteSettings.from_profile(
            profile, selection.model_id, default_timeout=self._settings.request_timeout, **overrides
        )
        client = self._client_factory(remote_settings) if self._client_factory is not None else None
        backend = RemoteBackend(remote_settings, client=client)
        if cached is not None:
            LOGGER.debug("Server profile %s changed; rebuilding backend", profile.id)
            self._stale.append(cached[1])
        self._remote[key] = (profile.updated_at, backend)
        return backend
