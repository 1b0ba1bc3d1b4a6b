from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from .agent import DEFAULT_SYSTEM_PROMPT, Agent
from .engine import DEFAULT_MAX_TOOL_CALLS, PROTOCOLS
from .memory import DEFAULT_MAX_MESSAGES, BaseMemory
from .providers import BaseProvider
from .tools import ToolDeclaration, ToolRegistrationError, ToolRegistry


class AgentConfigError(ValueError):
    """Raised when an agent configuration is incomplete or inconsistent."""


@dataclass(frozen=True)
class AgentConfig:
    """Fully validated, immutable description of an agent."""

    client: BaseProvider
    name: str = "agent"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    tools: Tuple[ToolDeclaration, ...] = ()
    protocol: str = "structured"
    max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS
    max_messages: int = DEFAULT_MAX_MESSAGES
    memory: Optional[BaseMemory] = None


def build_agent_config(
    client: Optional[BaseProvider] = None,
    *,
    name: str = "agent",
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    tools: Iterable[ToolDeclaration] = (),
    protocol: str = "structured",
    max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS,
    max_messages: int = DEFAULT_MAX_MESSAGES,
    memory: Optional[BaseMemory] = None,
) -> AgentConfig:
    """Validate the inputs and return an AgentConfig; nothing is mutated."""
    if client is None:
        raise AgentConfigError("An LLM client is required")
    if not name or not name.strip():
        raise AgentConfigError("Agent name must be a non-empty string")

    protocol_key = (protocol or "").strip().lower()
    if protocol_key not in PROTOCOLS:
        raise AgentConfigError(f"Unknown tool protocol: {protocol} (expected one of {sorted(PROTOCOLS)})")
    if max_tool_calls < 0:
        raise AgentConfigError("max_tool_calls must be >= 0")
    if max_messages < 1:
        raise AgentConfigError("max_messages must be >= 1")

    declared = tuple(tools)
    try:
        # Registering into a throwaway registry checks names and schemas.
        ToolRegistry(declared)
    except ToolRegistrationError as exc:
        raise AgentConfigError(str(exc)) from exc

    return AgentConfig(
        client=client,
        name=name.strip(),
        system_prompt=system_prompt,
        tools=declared,
        protocol=protocol_key,
        max_tool_calls=max_tool_calls,
        max_messages=max_messages,
        memory=memory,
    )


def create_agent(client: Optional[BaseProvider] = None, **kwargs) -> Agent:
    """Shortcut for `Agent.from_config(build_agent_config(client, **kwargs))`."""
    return Agent.from_config(build_agent_config(client, **kwargs))
