"""
Built-in tools: calculator, datetime, time.now, http.get and web_search.

Each tool accepts either plain text or a JSON object as its argument string,
since the structured protocol sends JSON and the sentinel protocol sends
whatever followed `TOOL:<name>:`.
"""

from __future__ import annotations

import ast
import json
import math
import operator
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from .tools import ToolContext, ToolDeclaration, ToolExecutionError, tool

HTTP_GET_TIMEOUT_SECONDS = 5.0
HTTP_GET_MAX_BYTES = 8 * 1024


def _argument(arguments_text: str, key: str) -> str:
    """Return `key` from a JSON object argument, or the raw text when it is not JSON."""
    text = (arguments_text or "").strip()
    if text.startswith("{"):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            value = payload.get(key)
            return "" if value is None else str(value)
    return text


### calculator #################################################################

_BINARY_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "sqrt": math.sqrt,
    "abs": abs,
    "round": round,
    "floor": math.floor,
    "ceil": math.ceil,
}

_CONSTANTS: Dict[str, float] = {"pi": math.pi, "e": math.e}

_MAX_EXPONENT = 1000
# Kept under CPython's 4300-digit int-to-str limit.
_MAX_RESULT_DIGITS = 4000
_MAX_RESULT_BITS = int(_MAX_RESULT_DIGITS * math.log2(10))


def _check_power(base: Any, exponent: Any) -> None:
    if abs(exponent) > _MAX_EXPONENT:
        raise ToolExecutionError("Exponent too large")
    magnitude = abs(base)
    if magnitude > 1 and exponent > 0 and exponent * math.log10(magnitude) > _MAX_RESULT_DIGITS:
        raise ToolExecutionError("Result too large")


def _check_size(value: Any) -> Any:
    if isinstance(value, int) and value.bit_length() > _MAX_RESULT_BITS:
        raise ToolExecutionError("Result too large")
    return value


def _eval_node(node: ast.AST) -> Any:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Pow):
            _check_power(left, right)
        return _check_size(_BINARY_OPS[type(node.op)](left, right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    if isinstance(node, ast.Name) and node.id in _CONSTANTS:
        return _CONSTANTS[node.id]
    if isinstance(node, ast.Call):
        func = node.func
        # Math.sqrt(...) and math.sqrt(...) are accepted as sqrt(...)
        if isinstance(func, ast.Attribute) and isinstance(func.value, ast.Name) and func.value.id.lower() == "math":
            name = func.attr
        elif isinstance(func, ast.Name):
            name = func.id
        else:
            name = ""
        if name in _FUNCTIONS and not node.keywords:
            return _FUNCTIONS[name](*[_eval_node(arg) for arg in node.args])
        raise ToolExecutionError(f"Unsupported function: {name or ast.dump(func)}")
    raise ToolExecutionError(f"Unsupported expression element: {type(node).__name__}")


def evaluate_expression(expression: str) -> float:
    """Evaluate an arithmetic expression without `eval`."""
    expression = expression.strip()
    if not expression:
        raise ToolExecutionError("Empty expression")
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as exc:
        raise ToolExecutionError(f"Invalid expression: {expression}") from exc
    try:
        return _eval_node(tree)
    except ZeroDivisionError as exc:
        raise ToolExecutionError("Division by zero") from exc
    except (ValueError, OverflowError, TypeError) as exc:
        raise ToolExecutionError(str(exc)) from exc


def _format_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


@tool(
    name="calculator",
    description="Evaluates mathematical expressions (e.g., '2 + 2', '10 * 5', 'sqrt(16)')",
    schema={
        "type": "object",
        "properties": {"expression": {"type": "string", "description": "The expression to evaluate"}},
        "required": ["expression"],
        "additionalProperties": False,
    },
)
def calculator(arguments_text: str, context: ToolContext) -> str:
    result = evaluate_expression(_argument(arguments_text, "expression"))
    return f"Result: {_format_number(result)}"


### clock ######################################################################

_LOCAL_KEYWORDS = {"", "now", "date", "time", "local"}


@tool(
    name="datetime",
    description=(
        "Gets current date and time information (input can be 'now', 'date', 'time', "
        "or a timezone like 'UTC', 'America/New_York')"
    ),
    schema={
        "type": "object",
        "properties": {"timezone": {"type": "string", "description": "IANA timezone name or 'now'"}},
        "additionalProperties": False,
    },
)
def datetime_tool(arguments_text: str, context: ToolContext) -> str:
    zone_name = _argument(arguments_text, "timezone").strip()
    if zone_name.lower() in _LOCAL_KEYWORDS:
        now = datetime.now().astimezone()
        label = now.tzname() or "local"
    elif zone_name.upper() in {"UTC", "Z"}:
        now = datetime.now(timezone.utc)
        label = "UTC"
    else:
        try:
            zone = ZoneInfo(zone_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ToolExecutionError(
                "Invalid timezone or input. Use 'now' or a valid timezone ID (e.g., 'UTC', 'America/New_York')"
            ) from exc
        now = datetime.now(zone)
        label = zone_name
    return f"Current date/time in {label}: {now.strftime('%Y-%m-%d %H:%M:%S')}"


@tool(
    name="time.now",
    description="Return the current ISO-8601 time.",
    schema={"type": "object", "properties": {}, "additionalProperties": False},
)
def time_now(arguments_text: str, context: ToolContext) -> str:
    return datetime.now(timezone.utc).astimezone().isoformat()


### network ####################################################################


def _fetch(url: str, client: Optional[httpx.Client] = None) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ToolExecutionError("Only HTTP and HTTPS URLs are allowed")

    owns_client = client is None
    http = client or httpx.Client(timeout=HTTP_GET_TIMEOUT_SECONDS, follow_redirects=True)
    received = bytearray()
    try:
        with http.stream("GET", url) as resp:
            if not resp.is_success:
                return f"HTTP {resp.status_code}: {resp.reason_phrase}"
            # Stop reading at the cap; the rest of the body is never downloaded.
            for chunk in resp.iter_bytes():
                received.extend(chunk)
                if len(received) >= HTTP_GET_MAX_BYTES:
                    break
            encoding = resp.charset_encoding or "utf-8"
    except httpx.HTTPError as exc:
        raise ToolExecutionError(f"Request failed: {exc}") from exc
    finally:
        if owns_client:
            http.close()

    return bytes(received[:HTTP_GET_MAX_BYTES]).decode(encoding, errors="replace")


@tool(
    name="http.get",
    description="Make a safe GET request to a URL. Only allows http/https URLs and returns text content.",
    schema={
        "type": "object",
        "properties": {"url": {"type": "string", "description": "The URL to fetch"}},
        "required": ["url"],
        "additionalProperties": False,
    },
)
def http_get(arguments_text: str, context: ToolContext) -> str:
    url = _argument(arguments_text, "url").strip()
    if not url:
        raise ToolExecutionError("URL is required")
    return _fetch(url)


@tool(
    name="web_search",
    description="Searches the web for information",
    schema={
        "type": "object",
        "properties": {"query": {"type": "string"}},
        "required": ["query"],
        "additionalProperties": False,
    },
)
def web_search(arguments_text: str, context: ToolContext) -> str:
    query = _argument(arguments_text, "query")
    # TODO: back this with a real search API once a provider key is configurable.
    return f"Search results for '{query}': no search backend is configured."


BUILTIN_TOOLS: Dict[str, ToolDeclaration] = {
    declaration.name: declaration
    for declaration in (calculator, datetime_tool, time_now, http_get, web_search)
}


def get_builtin_tools(names: Iterable[str]) -> List[ToolDeclaration]:
    """Look up built-in tools by exact name; unknown names raise KeyError."""
    selected: List[ToolDeclaration] = []
    for name in names:
        if name not in BUILTIN_TOOLS:
            raise KeyError(f"Unknown built-in tool: {name}")
        selected.append(BUILTIN_TOOLS[name])
    return selected
