"""Tool registry with per-conversation enablement.

Tool definitions are stored in the shared :class:`ChatDatabase` so they
can be listed alongside conversations, while the callable handlers stay
in the registry. A conversation override always beats a tool's default.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from ..chat.models import ToolDefinition
from ..errors import ToolNotFoundError
from ..storage.database import ChatDatabase
from .types import ToolHandler, ToolSpec, parse_parameters

__all__ = ["ToolRegistry", "register_builtin_tools"]

LOGGER = logging.getLogger(__name__)


class ToolRegistry:
    """Registry for model-callable tools.

    Example:
        registry = ToolRegistry(database)
        registry.register(ToolSpec(name="echo", description="Echo", handler=echo))
        registry.enabled_for(conversation_id)
    """

    def __init__(self, database: ChatDatabase) -> None:
        self._db = database
        self._specs: dict[str, ToolSpec] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, spec: ToolSpec) -> ToolDefinition:
        """Register ``spec`` and persist its definition (id == name)."""

        definition = spec.to_definition(spec.name)
        with self._db.transaction() as db:
            db.tools[definition.id] = definition
        self._specs[spec.name] = spec
        LOGGER.debug("Registered tool: %s (built_in=%s)", spec.name, spec.built_in)
        return definition

    def register_function(
        self,
        handler: ToolHandler,
        *,
        name: str | None = None,
        description: str | None = None,
        parameters: Mapping[str, Any] | None = None,
        enabled_by_default: bool = True,
    ) -> ToolDefinition:
        """Register a plain callable with a JSON-schema parameter mapping."""

        tool_name = name or getattr(handler, "name", None) or getattr(handler, "__name__", "")
        if not tool_name:
            raise ValueError("A tool name is required")
        spec = ToolSpec(
            name=tool_name,
            description=description or (getattr(handler, "__doc__", None) or "").strip(),
            handler=handler,
            parameters=parse_parameters(parameters or {}),
            enabled_by_default=enabled_by_default,
        )
        return self.register(spec)

    def unregister(self, name: str) -> bool:
        spec = self._specs.pop(name, None)
        if spec is None:
            return False
        with self._db.transaction() as db:
            db.tools.pop(name, None)
            for key in [key for key in db.tool_overrides if key[1] == name]:
                del db.tool_overrides[key]
        LOGGER.debug("Unregistered tool: %s", name)
        return True

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def definitions(self) -> list[ToolDefinition]:
        with self._db.transaction() as db:
            return sorted(db.tools.values(), key=lambda item: item.name)

    def get_spec(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def has_tool(self, name: str) -> bool:
        return name in self._specs

    # ------------------------------------------------------------------
    # Per-conversation enablement
    # ------------------------------------------------------------------

    def set_enabled(self, conversation_id: str, tool_id: str, enabled: bool) -> None:
        with self._db.transaction() as db:
            if tool_id not in db.tools:
                raise ToolNotFoundError(tool_id)
            db.tool_overrides[(conversation_id, tool_id)] = bool(enabled)

    def clear_override(self, conversation_id: str, tool_id: str) -> None:
        with self._db.transaction() as db:
            db.tool_overrides.pop((conversation_id, tool_id), None)

    def is_enabled(self, conversation_id: str, tool_id: str) -> bool:
        with self._db.transaction() as db:
            definition = db.tools.get(tool_id)
            if definition is None:
                return False
            override = db.tool_overrides.get((conversation_id, tool_id))
            return definition.is_enabled_by_default if override is None else override

    def enabled_for(self, conversation_id: str) -> list[ToolDefinition]:
        """Definitions enabled for ``conversation_id``, sorted by name."""

        return [item for item in self.definitions() if self.is_enabled(conversation_id, item.id)]

    def to_openai_tools(self, conversation_id: str) -> list[dict[str, Any]]:
        return [item.to_openai_tool() for item in self.enabled_for(conversation_id)]

    def resolve(self, conversation_id: str, name: str) -> ToolSpec:
        """Return the handler spec for ``name`` if enabled in the conversation.

        Raises:
            ToolNotFoundError: Unknown tool or tool disabled for the conversation.
        """
        spec = self._specs.get(name)
        if spec is None or not self.is_enabled(conversation_id, name):
            raise ToolNotFoundError(name)
        return spec


def register_builtin_tools(registry: ToolRegistry, *, fetch_timeout: float = 15.0) -> None:
    """Seed ``calculator`` (enabled) and ``web_fetch`` (disabled by default)."""

    from .calculator import CALCULATOR_SPEC
    from .web_fetch import build_web_fetch_spec

    registry.register(CALCULATOR_SPEC)
    registry.register(build_web_fetch_spec(timeout=fetch_timeout))
