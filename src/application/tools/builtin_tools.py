"""Built-in static tools.

- calculate: Safe math expression evaluation
- get_current_datetime: Current date/time in several formats
- generate_uuid: Generate UUIDs
"""

import ast
import asyncio
import logging
import math
import re
import zoneinfo
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from domain.exceptions import ToolError, ToolErrorKind

if TYPE_CHECKING:
    from .tool_registry import ToolRegistry

logger = logging.getLogger(__name__)

_SAFE_MATH = {
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sum": sum,
    "pow": pow,
    "sqrt": math.sqrt,
    "floor": math.floor,
    "ceil": math.ceil,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "log": math.log,
    "log10": math.log10,
    "log2": math.log2,
    "exp": math.exp,
    "pi": math.pi,
    "e": math.e,
}

_EXPRESSION_PATTERN = re.compile(r"^[\d\s\+\-\*/%\.\(\)\,\w]+$")

# Largest literal exponent accepted by ** and pow()
MAX_EXPONENT = 1000


async def execute_calculate(arguments: dict[str, Any]) -> Any:
    """Evaluate a math expression with a restricted namespace."""
    expression = str(arguments.get("expression", "")).strip()
    precision = int(arguments.get("precision", 10))

    if not expression:
        raise ToolError("Expression is required", kind=ToolErrorKind.EXECUTION, tool_name="calculate")
    if not _EXPRESSION_PATTERN.match(expression) or "__" in expression:
        raise ToolError("Expression contains invalid characters", kind=ToolErrorKind.EXECUTION, tool_name="calculate")

    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise ToolError(f"Calculation error: {e.msg}", kind=ToolErrorKind.EXECUTION, tool_name="calculate") from e
    _check_exponents(tree)

    # Evaluated off the event loop so the invocation timeout can fire
    try:
        result = await asyncio.to_thread(_evaluate, tree)
    except ZeroDivisionError as e:
        raise ToolError("Division by zero", kind=ToolErrorKind.EXECUTION, tool_name="calculate") from e
    except Exception as e:
        raise ToolError(f"Calculation error: {e}", kind=ToolErrorKind.EXECUTION, tool_name="calculate") from e

    if isinstance(result, float):
        result = round(result, precision)
    return {"expression": expression, "result": result}


def _evaluate(tree: ast.Expression) -> Any:
    return eval(compile(tree, "<expression>", "eval"), {"__builtins__": {}}, _SAFE_MATH)  # noqa: S307  # nosec B307


def _check_exponents(tree: ast.Expression) -> None:
    """Reject powers whose result size is unbounded.

    Exponents must be numeric literals no larger than MAX_EXPONENT, and a
    power may not contain another power.
    """
    for node in ast.walk(tree):
        if isinstance(node, ast.BinOp) and isinstance(node.op, ast.Pow):
            operands = [node.left, node.right]
        elif isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id == "pow" and len(node.args) >= 2:
            operands = node.args[:2]
        else:
            continue

        exponent = operands[1]
        if isinstance(exponent, ast.UnaryOp) and isinstance(exponent.op, (ast.USub, ast.UAdd)):
            exponent = exponent.operand
        if not isinstance(exponent, ast.Constant) or not isinstance(exponent.value, (int, float)) or abs(exponent.value) > MAX_EXPONENT:
            raise ToolError(f"Exponents must be numeric literals of at most {MAX_EXPONENT}", kind=ToolErrorKind.EXECUTION, tool_name="calculate")
        if any(_is_power(inner) for operand in operands for inner in ast.walk(operand)):
            raise ToolError("Nested powers are not supported", kind=ToolErrorKind.EXECUTION, tool_name="calculate")


def _is_power(node: ast.AST) -> bool:
    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.Pow):
        return True
    return isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id == "pow"


async def execute_get_current_datetime(arguments: dict[str, Any]) -> Any:
    timezone_name = arguments.get("timezone", "UTC")
    output_format = arguments.get("format", "all")

    now = datetime.now(UTC)
    try:
        now = now.astimezone(zoneinfo.ZoneInfo(timezone_name))
    except (zoneinfo.ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone: {timezone_name}, using UTC")
        timezone_name = "UTC"

    if output_format == "iso":
        return now.isoformat()
    if output_format == "unix":
        return int(now.timestamp())
    if output_format == "human":
        return now.strftime("%A, %B %d, %Y at %I:%M:%S %p %Z")
    return {
        "iso": now.isoformat(),
        "unix": int(now.timestamp()),
        "human": now.strftime("%A, %B %d, %Y at %I:%M:%S %p %Z"),
        "date": now.strftime("%Y-%m-%d"),
        "time": now.strftime("%H:%M:%S"),
        "timezone": timezone_name,
    }


async def execute_generate_uuid(arguments: dict[str, Any]) -> Any:
    count = min(max(int(arguments.get("count", 1)), 1), 100)
    output_format = arguments.get("format", "standard")

    uuids = []
    for _ in range(count):
        new_uuid = uuid4()
        if output_format == "hex":
            uuids.append(new_uuid.hex)
        elif output_format == "urn":
            uuids.append(new_uuid.urn)
        else:
            uuids.append(str(new_uuid))
    return uuids[0] if count == 1 else uuids


def register_builtin_tools(registry: "ToolRegistry") -> None:
    """Register the built-in tools as static descriptors."""
    registry.register_function(
        name="calculate",
        description="Evaluate a math expression. Supports + - * / % **, parentheses and functions like sqrt, pow, log, sin, cos, floor, ceil.",
        schema={
            "type": "object",
            "properties": {
                "expression": {"type": "string", "description": "Expression to evaluate, e.g. '2 + 2' or 'sqrt(16) * pi'"},
                "precision": {"type": "integer", "minimum": 0, "maximum": 15, "description": "Decimal places for float results"},
            },
            "required": ["expression"],
            "additionalProperties": False,
        },
        handler=execute_calculate,
    )
    registry.register_function(
        name="get_current_datetime",
        description="Get the current date and time, optionally in a given IANA timezone.",
        schema={
            "type": "object",
            "properties": {
                "timezone": {"type": "string", "description": "IANA timezone name, e.g. 'Europe/Paris'"},
                "format": {"type": "string", "enum": ["all", "iso", "unix", "human"]},
            },
            "additionalProperties": False,
        },
        handler=execute_get_current_datetime,
    )
    registry.register_function(
        name="generate_uuid",
        description="Generate one or more random UUIDs.",
        schema={
            "type": "object",
            "properties": {
                "count": {"type": "integer", "minimum": 1, "maximum": 100},
                "format": {"type": "string", "enum": ["standard", "hex", "urn"]},
            },
            "additionalProperties": False,
        },
        handler=execute_generate_uuid,
    )
