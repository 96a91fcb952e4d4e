"""Schema and handler types shared by the tool registry and executor."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from ..chat.models import ToolDefinition

__all__ = ["ParameterSchema", "ToolHandler", "ToolSpec", "parse_parameters"]


@dataclass(slots=True, frozen=True)
class ParameterSchema:
    """Schema for a single tool parameter.

    Attributes:
        name: Parameter name.
        type: JSON Schema type (string, number, integer, boolean).
        description: Human-readable description shown to the model.
        required: Whether the model must supply the parameter.
        enum: Optional list of allowed values.
    """

    name: str
    type: str
    description: str
    required: bool = False
    enum: Sequence[Any] | None = None

    def to_json_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type, "description": self.description}
        if self.enum:
            schema["enum"] = list(self.enum)
        return schema


@runtime_checkable
class ToolHandler(Protocol):
    """Callable implementing a tool; may be sync or async."""

    def __call__(self, **kwargs: Any) -> Any:
        ...


@dataclass(slots=True)
class ToolSpec:
    """Declarative description of a tool plus its implementation.

    Attributes:
        name: Identifier the model uses to call the tool.
        description: Description shown to the model.
        handler: Implementation invoked with the decoded arguments.
        parameters: Parameter schemas.
        built_in: Whether the tool ships with the application.
        enabled_by_default: Whether conversations get it without an override.
    """

    name: str
    description: str
    handler: ToolHandler
    parameters: Sequence[ParameterSchema] = field(default_factory=list)
    built_in: bool = False
    enabled_by_default: bool = True

    def to_json_schema(self) -> dict[str, Any]:
        properties = {param.name: param.to_json_schema() for param in self.parameters}
        schema: dict[str, Any] = {"type": "object", "properties": properties}
        required = [param.name for param in self.parameters if param.required]
        if required:
            schema["required"] = required
        return schema

    def required_names(self) -> list[str]:
        return [param.name for param in self.parameters if param.required]

    def to_definition(self, tool_id: str) -> ToolDefinition:
        return ToolDefinition(
            id=tool_id,
            name=self.name,
            description=self.description,
            parameters_schema=self.to_json_schema(),
            is_built_in=self.built_in,
            is_enabled_by_default=self.enabled_by_default,
        )


def parse_parameters(params: Mapping[str, Any]) -> list[ParameterSchema]:
    """Turn a JSON-schema object description into parameter schemas."""

    required = set(params.get("required", []))
    return [
        ParameterSchema(
            name=name,
            type=spec.get("type", "string"),
            description=spec.get("description", ""),
            required=name in required,
            enum=spec.get("enum"),
        )
        for name, spec in params.get("properties", {}).items()
    ]
