"""Model-callable tools: registry, executor and the built-ins."""

from .calculator import CALCULATOR_SPEC, evaluate_expression
from .executor import ERROR_PREFIX, ToolExecutor
from .registry import ToolRegistry, register_builtin_tools
from .types import ParameterSchema, ToolHandler, ToolSpec
from .web_fetch import build_web_fetch_spec

__all__ = [
    "CALCULATOR_SPEC",
    "ERROR_PREFIX",
    "ParameterSchema",
    "ToolExecutor",
    "ToolHandler",
    "ToolRegistry",
    "ToolSpec",
    "build_web_fetch_spec",
    "evaluate_expression",
    "register_builtin_tools",
]
