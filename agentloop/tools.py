"""
Tool declarations, per-invocation context and the tool registry.

Tool failures are conversational data: `ToolRegistry.execute` turns a missing
tool or an exception raised by a tool body into a result string and never
raises.
"""

from __future__ import annotations

import logging
import weakref
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Generic, Iterable, List, Mapping, Optional, Type, TypeVar

from jsonschema import Draft7Validator, SchemaError

if TYPE_CHECKING:
    from .agent import Agent

logger = logging.getLogger("agent-loop")

T = TypeVar("T")

EMPTY_OBJECT_SCHEMA: Dict[str, Any] = {"type": "object", "properties": {}, "additionalProperties": False}


class ToolExecutionError(RuntimeError):
    """Raised by tool bodies to report a failure back to the model."""


class ToolRegistrationError(ValueError):
    """Raised when a tool cannot be added to a registry."""


@dataclass(frozen=True)
class ScratchKey(Generic[T]):
    """Typed key into a ScratchPad."""

    name: str
    type: Type[T]


class ScratchPad:
    """
    Typed key-value store scoped to a single tool invocation.

    A new pad is created for every call and discarded afterwards; nothing in
    it reaches memory or later invocations.
    """

    def __init__(self) -> None:
        self._values: Dict[str, Any] = {}

    def set(self, key: ScratchKey[T], value: T) -> None:
        if not isinstance(value, key.type):
            raise TypeError(
                f"Scratch key '{key.name}' expects {key.type.__name__}, got {type(value).__name__}"
            )
        self._values[key.name] = value

    def get(self, key: ScratchKey[T], default: Optional[T] = None) -> Optional[T]:
        return self._values.get(key.name, default)

    def __contains__(self, key: ScratchKey[Any]) -> bool:
        return key.name in self._values

    def __len__(self) -> int:
        return len(self._values)


class ToolContext:
    """Handed to every tool invocation: a weak handle on the agent plus a fresh scratch pad."""

    def __init__(self, agent: Optional["Agent"] = None) -> None:
        self._agent_ref = weakref.ref(agent) if agent is not None else None
        self.scratch = ScratchPad()

    @property
    def agent(self) -> Optional["Agent"]:
        if self._agent_ref is None:
            return None
        return self._agent_ref()


ToolHandler = Callable[[str, ToolContext], str]


@dataclass(frozen=True)
class ToolDeclaration:
    """A named capability the model may invoke with a single text argument."""

    name: str
    description: str
    handler: ToolHandler = field(repr=False, compare=False)
    input_schema: Mapping[str, Any] = field(default_factory=lambda: dict(EMPTY_OBJECT_SCHEMA))

    def invoke(self, arguments_text: str, context: ToolContext) -> str:
        result = self.handler(arguments_text, context)
        return result if isinstance(result, str) else str(result)


def tool(
    name: str,
    description: str,
    schema: Optional[Mapping[str, Any]] = None,
) -> Callable[[ToolHandler], ToolDeclaration]:
    """Decorator turning `fn(arguments_text, context) -> str` into a ToolDeclaration."""

    def decorate(fn: ToolHandler) -> ToolDeclaration:
        return ToolDeclaration(
            name=name,
            description=description,
            handler=fn,
            input_schema=dict(schema) if schema is not None else dict(EMPTY_OBJECT_SCHEMA),
        )

    return decorate


def tool_not_found_message(name: str) -> str:
    return f"Tool '{name}' not found"


def tool_error_message(name: str, exc: BaseException) -> str:
    return f"Error executing tool '{name}': {exc}"


class ToolRegistry:
    """
    Ordered collection of tools with case-insensitive name resolution.

    `resolve` is the single place names are matched; every execution path
    goes through it.
    """

    def __init__(self, tools: Iterable[ToolDeclaration] = ()) -> None:
        self._tools: Dict[str, ToolDeclaration] = {}
        for declaration in tools:
            self.register(declaration)

    @staticmethod
    def _key(name: str) -> str:
        return name.strip().casefold()

    def register(self, declaration: ToolDeclaration) -> None:
        """Add a tool; names must be unique ignoring case and schemas valid Draft-07."""
        if not declaration.name or not declaration.name.strip():
            raise ToolRegistrationError("Tool name must be a non-empty string")
        key = self._key(declaration.name)
        if key in self._tools:
            raise ToolRegistrationError(f"Duplicate tool name: {declaration.name}")
        try:
            Draft7Validator.check_schema(dict(declaration.input_schema))
        except SchemaError as exc:
            raise ToolRegistrationError(
                f"Invalid input schema for tool '{declaration.name}': {exc.message}"
            ) from exc
        self._tools[key] = declaration
        logger.debug("Registered tool: %s", declaration.name)

    def resolve(self, name: str) -> Optional[ToolDeclaration]:
        return self._tools.get(self._key(name))

    def all(self) -> List[ToolDeclaration]:
        return list(self._tools.values())

    def names(self) -> List[str]:
        return [declaration.name for declaration in self._tools.values()]

    def execute(self, name: str, arguments_text: str, context: ToolContext) -> str:
        """Run a tool by name, converting lookup misses and failures into result text."""
        declaration = self.resolve(name)
        if declaration is None:
            logger.warning("tool not found name=%s", name)
            return tool_not_found_message(name)
        try:
            return declaration.invoke(arguments_text, context)
        except Exception as exc:
            logger.warning("tool failed name=%s error=%s", declaration.name, exc)
            return tool_error_message(declaration.name, exc)

    def __contains__(self, name: str) -> bool:
        return self.resolve(name) is not None

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self):
        return iter(self._tools.values())
