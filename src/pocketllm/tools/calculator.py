"""Built-in ``calculator`` tool: safe arithmetic without ``eval``."""

from __future__ import annotations

from .types import ParameterSchema, ToolSpec

__all__ = ["CALCULATOR_SPEC", "calculate", "evaluate_expression"]

_ALLOWED = set("0123456789+-*/(). \t")


class _Parser:
    """Recursive descent over ``+ - * /``, unary signs and parentheses."""

    def __init__(self, text: str) -> None:
        self._text = text
        self._pos = 0

    def parse(self) -> float:
        value = self._add_sub()
        self._skip_ws()
        if self._pos < len(self._text):
            raise ValueError(f"Unexpected character: {self._text[self._pos]}")
        return value

    def _add_sub(self) -> float:
        left = self._mul_div()
        while True:
            op = self._peek()
            if op not in ("+", "-"):
                return left
            self._pos += 1
            right = self._mul_div()
            left = left + right if op == "+" else left - right

    def _mul_div(self) -> float:
        left = self._unary()
        while True:
            op = self._peek()
            if op not in ("*", "/"):
                return left
            self._pos += 1
            right = self._unary()
            if op == "*":
                left = left * right
            else:
                if right == 0:
                    raise ValueError("division by zero")
                left = left / right

    def _unary(self) -> float:
        op = self._peek()
        if op == "-":
            self._pos += 1
            return -self._unary()
        if op == "+":
            self._pos += 1
            return self._unary()
        return self._atom()

    def _atom(self) -> float:
        if self._peek() == "(":
            self._pos += 1
            value = self._add_sub()
            if self._peek() != ")":
                raise ValueError("Missing closing parenthesis")
            self._pos += 1
            return value
        return self._number()

    def _number(self) -> float:
        self._skip_ws()
        start = self._pos
        while self._pos < len(self._text) and (self._text[self._pos].isdigit() or self._text[self._pos] == "."):
            self._pos += 1
        if start == self._pos:
            raise ValueError(f"Expected number at position {self._pos}")
        return float(self._text[start:self._pos])

    def _peek(self) -> str:
        self._skip_ws()
        return self._text[self._pos] if self._pos < len(self._text) else ""

    def _skip_ws(self) -> None:
        while self._pos < len(self._text) and self._text[self._pos].isspace():
            self._pos += 1


def evaluate_expression(expression: str) -> float:
    """Evaluate an arithmetic expression.

    Raises:
        ValueError: Empty input, characters outside the arithmetic set,
            malformed syntax or division by zero.
    """
    if not expression or not expression.strip():
        raise ValueError("Invalid expression")
    invalid = sorted(set(expression) - _ALLOWED)
    if invalid:
        raise ValueError(f"Unsupported character(s): {''.join(invalid)}")
    return _Parser(expression).parse()


def calculate(expression: str) -> str:
    return str(evaluate_expression(expression))


CALCULATOR_SPEC = ToolSpec(
    name="calculator",
    description="Evaluate an arithmetic expression using + - * / and parentheses.",
    handler=calculate,
    parameters=[
        ParameterSchema(
            name="expression",
            type="string",
            description="The arithmetic expression to evaluate, e.g. '(2 + 3) * 4'.",
            required=True,
        )
    ],
    built_in=True,
    enabled_by_default=True,
)
