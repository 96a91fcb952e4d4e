"""Server profiles for OpenAI-compatible endpoints."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, List

from ..chat.models import ServerProfile, new_id
from ..errors import NotFoundError
from .database import ChatDatabase

__all__ = ["ServerProfileStore"]

LOGGER = logging.getLogger(__name__)


class ServerProfileStore:
    def __init__(self, database: ChatDatabase) -> None:
        self._db = database

    def add(
        self, name: str, base_url: str, *, api_key: str | None = None, request_timeout_seconds: int | None = None
    ) -> ServerProfile:
        profile = ServerProfile(
            id=new_id(),
            name=name,
            base_url=base_url.rstrip("/"),
            api_key=api_key or None,
            request_timeout_seconds=request_timeout_seconds,
        )
        with self._db.transaction() as db:
            db.servers[profile.id] = profile
        LOGGER.debug("Added server profile %s (%s)", profile.name, profile.base_url)
        return profile

    def get(self, server_id: str) -> ServerProfile | None:
        with self._db.transaction() as db:
            return db.servers.get(server_id)

    def require(self, server_id: str) -> ServerProfile:
        profile = self.get(server_id)
        if profile is None:
            raise NotFoundError("server profile", server_id)
        return profile

    def list_all(self) -> List[ServerProfile]:
        with self._db.transaction() as db:
            return sorted(db.servers.values(), key=lambda item: item.name.lower())

    def update(self, server_id: str, **changes: Any) -> ServerProfile:
        with self._db.transaction() as db:
            current = db.servers.get(server_id)
            if current is None:
                raise NotFoundError("server profile", server_id)
            updated = replace(current, updated_at=datetime.now(timezone.utc), **changes)
            db.servers[server_id] = updated
            return updated

    def delete(self, server_id: str) -> None:
        with self._db.transaction() as db:
            if db.servers.pop(server_id, None) is None:
                raise NotFoundError("server profile", server_id)
            for conversation in db.conversations.values():
                if conversation.last_server_id == server_id:
                    conversation.last_server_id = None
