"""Tool execution: name plus raw JSON arguments in, result text out."""

from __future__ import annotations

import ast
import asyncio
import inspect
import json
import logging
from typing import Any, Mapping

from ..chat.models import ToolCall
from ..errors import ToolArgumentError, ToolNotFoundError
from .registry import ToolRegistry
from .types import ToolSpec

__all__ = ["ERROR_PREFIX", "ToolExecutor"]

LOGGER = logging.getLogger(__name__)

ERROR_PREFIX = "Error:"


class ToolExecutor:
    """Executes tool calls against a :class:`ToolRegistry`.

    Every failure mode (unknown or disabled tool, malformed arguments,
    timeout, handler exception) is folded into a result string starting
    with ``"Error:"`` so the model can read it and recover. Cancellation
    is never swallowed.
    """

    def __init__(self, registry: ToolRegistry, *, timeout: float = 30.0) -> None:
        """Initialize the executor.

        Args:
            registry: Registry used to resolve tools per conversation.
            timeout: Seconds a single tool may run before it is abandoned.
        """
        self._registry = registry
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        return self._timeout

    async def execute(self, conversation_id: str, call: ToolCall) -> str:
        """Run one tool call and return the text handed back to the model.

        Args:
            conversation_id: Conversation whose enabled set applies.
            call: Fully assembled tool call from the backend.

        Returns:
            Serialized tool output, or an ``Error:`` message.
        """
        try:
            spec = self._registry.resolve(conversation_id, call.name)
            arguments = self.coerce_arguments(call.name, call.arguments)
            self._validate(spec, arguments)
            result = await asyncio.wait_for(self.invoke(spec, arguments), timeout=self._timeout)
        except ToolNotFoundError as exc:
            LOGGER.warning("Model requested unavailable tool %s", call.name)
            return f"{ERROR_PREFIX} {exc.message}"
        except ToolArgumentError as exc:
            LOGGER.warning("Rejected arguments for tool %s: %s", call.name, exc.reason)
            return f"{ERROR_PREFIX} {exc.message}"
        except asyncio.TimeoutError:
            LOGGER.error("Tool %s timed out after %ss", call.name, self._timeout)
            return f"{ERROR_PREFIX} tool '{call.name}' timed out"
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("Tool %s failed", call.name)
            return f"{ERROR_PREFIX} tool '{call.name}' failed: {exc}"
        return self.serialize_result(result)

    async def invoke(self, spec: ToolSpec, arguments: Mapping[str, Any]) -> Any:
        """Call the handler; sync handlers run in a worker thread."""

        handler = spec.handler
        if inspect.iscoroutinefunction(handler):
            return await handler(**arguments)
        result = await asyncio.to_thread(handler, **arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    def coerce_arguments(self, name: str, raw_arguments: str | None) -> dict[str, Any]:
        """Decode the raw argument string into a mapping.

        Falls back to a Python literal parse for models that emit single
        quoted dicts.

        Raises:
            ToolArgumentError: The text is not an object in either syntax.
        """
        text = (raw_arguments or "").strip()
        if not text:
            return {}
        try:
            parsed = json.loads(text, strict=False)
        except (ValueError, TypeError):
            parsed = self._literal_arguments(text)
            if parsed is None:
                raise ToolArgumentError(name, "arguments are not valid JSON")
        if not isinstance(parsed, Mapping):
            raise ToolArgumentError(name, "arguments must be a JSON object")
        return dict(parsed)

    def serialize_result(self, result: Any) -> str:
        if result is None:
            return ""
        if isinstance(result, str):
            return result
        try:
            return json.dumps(result, ensure_ascii=False)
        except (TypeError, ValueError):
            return str(result)

    @staticmethod
    def _validate(spec: ToolSpec, arguments: Mapping[str, Any]) -> None:
        missing = [name for name in spec.required_names() if name not in arguments]
        if missing:
            raise ToolArgumentError(spec.name, f"missing required argument(s): {', '.join(missing)}")
        known = {param.name for param in spec.parameters}
        unexpected = sorted(set(arguments) - known) if known else []
        if unexpected:
            raise ToolArgumentError(spec.name, f"unexpected argument(s): {', '.join(unexpected)}")

    @staticmethod
    def _literal_arguments(text: str) -> Any | None:
        if not text or text[0] != "{":
            return None
        try:
            return ast.literal_eval(text)
        except (ValueError, SyntaxError):
            return None
