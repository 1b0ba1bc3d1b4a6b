from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence

from .memory import BaseMemory
from .models import CompletionResult, GenerationParams, ToolCallRequest, Turn
from .providers import BaseProvider, ProviderError
from .tools import ToolDeclaration, ToolRegistry, tool_not_found_message

if TYPE_CHECKING:
    from .agent import Agent

logger = logging.getLogger("agent-loop")

SUMMARY_PREFIX = "Previous conversation summary: "
SENTINEL_PREFIX = "TOOL:"
DEFAULT_MAX_TOOL_CALLS = 3


def build_context(system_prompt: str, memory: BaseMemory) -> List[Turn]:
    """
    Prompt sent to the model: system turn, optional summary turn, recent history.

    The synthesized system turns are never written to memory.
    """
    turns = [Turn.system(system_prompt)]
    if memory.summary:
        turns.append(Turn.system(SUMMARY_PREFIX + memory.summary))
    turns.extend(memory.recent())
    return turns


def invoke_model(
    client: BaseProvider,
    turns: Sequence[Turn],
    tools: Sequence[ToolDeclaration],
    params: Optional[GenerationParams],
) -> CompletionResult:
    """Call the client, normalising any failure into ProviderError."""
    try:
        return client.chat(list(turns), list(tools), params)
    except ProviderError:
        raise
    except Exception as exc:
        raise ProviderError(f"Model invocation failed: {exc}") from exc


@dataclass
class LoopOutcome:
    result: CompletionResult
    rounds: int = 0
    tool_calls: int = 0


class ToolProtocol:
    """
    Strategy for how the model asks for tools within one user turn.

    `run` is called after the user turn has been appended and must append the
    final assistant turn before returning.
    """

    name = "base"

    def system_content(self, system_prompt: str, registry: ToolRegistry) -> str:
        return system_prompt

    def advertised_tools(self, registry: ToolRegistry) -> List[ToolDeclaration]:
        return []

    def context(self, agent: "Agent") -> List[Turn]:
        return build_context(self.system_content(agent.system_prompt, agent.tools), agent.memory)

    def run(self, agent: "Agent", params: Optional[GenerationParams]) -> LoopOutcome:  # pragma: no cover - interface only
        raise NotImplementedError


class StructuredToolProtocol(ToolProtocol):
    """Multi-round loop driven by structured tool calls found in the raw payload."""

    name = "structured"

    def __init__(self, max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS) -> None:
        if max_tool_calls < 0:
            raise ValueError("max_tool_calls must be >= 0")
        self.max_tool_calls = max_tool_calls

    def advertised_tools(self, registry: ToolRegistry) -> List[ToolDeclaration]:
        return registry.all()

    def _requested_calls(self, client: BaseProvider, result: CompletionResult) -> List[ToolCallRequest]:
        if result.raw_payload is None:
            return []
        try:
            return list(client.extract_tool_calls(result))
        except Exception as exc:
            logger.debug("tool-call extraction failed, treating as none: %s", exc)
            return []

    def run(self, agent: "Agent", params: Optional[GenerationParams]) -> LoopOutcome:
        tools = self.advertised_tools(agent.tools)
        result = invoke_model(agent.client, self.context(agent), tools, params)
        outcome = LoopOutcome(result=result)

        while outcome.rounds < self.max_tool_calls:
            calls = self._requested_calls(agent.client, result)
            if not calls:
                break

            agent.memory.add(Turn.assistant(result.text))
            for call in calls:
                agent.memory.add(Turn.tool(agent.run_tool(call.tool_name, call.arguments_text)))
                outcome.tool_calls += 1

            result = invoke_model(agent.client, self.context(agent), tools, params)
            outcome.result = result
            outcome.rounds += 1

        agent.memory.add(Turn.assistant(result.text))
        return outcome


def parse_sentinel_call(text: str) -> Optional[ToolCallRequest]:
    """Parse `TOOL:<name>:<input>`; anything else is not a tool call."""
    if not text.startswith(SENTINEL_PREFIX):
        return None
    parts = text[len(SENTINEL_PREFIX):].split(":", 1)
    if len(parts) != 2:
        return None
    name, arguments = parts[0].strip(), parts[1].strip()
    if not name:
        return None
    return ToolCallRequest(tool_name=name, arguments_text=arguments)


class SentinelToolProtocol(ToolProtocol):
    """
    Single-shot protocol: the model answers `TOOL:<name>:<input>` in plain text.

    At most one tool runs per user turn and its output replaces the reply.
    """

    name = "sentinel"

    def system_content(self, system_prompt: str, registry: ToolRegistry) -> str:
        parts = [system_prompt] if system_prompt else []
        if len(registry):
            lines = ["Available tools:"]
            lines.extend(f"- {t.name}: {t.description}" for t in registry)
            lines.append("")
            lines.append(f"To use a tool, respond with: {SENTINEL_PREFIX}toolname:input")
            lines.append(f"Example: {SENTINEL_PREFIX}calculator:2+2")
            parts.append("\n".join(lines))
        return "\n\n".join(parts)

    def run(self, agent: "Agent", params: Optional[GenerationParams]) -> LoopOutcome:
        result = invoke_model(agent.client, self.context(agent), [], params)
        outcome = LoopOutcome(result=result)

        call = parse_sentinel_call(result.text)
        if call is not None:
            if call.tool_name in agent.tools:
                text = agent.run_tool(call.tool_name, call.arguments_text)
            else:
                available = ", ".join(agent.tools.names())
                text = f"{tool_not_found_message(call.tool_name)}. Available tools: {available}"
            outcome.tool_calls = 1
            outcome.result = result.model_copy(update={"text": text})

        agent.memory.add(Turn.assistant(outcome.result.text))
        return outcome


PROTOCOLS = {
    StructuredToolProtocol.name: StructuredToolProtocol,
    SentinelToolProtocol.name: SentinelToolProtocol,
}


def get_protocol(name: str, max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS) -> ToolProtocol:
    """Resolve a protocol by name (`structured` or `sentinel`)."""
    key = (name or "").strip().lower()
    if key == StructuredToolProtocol.name:
        return StructuredToolProtocol(max_tool_calls=max_tool_calls)
    if key == SentinelToolProtocol.name:
        return SentinelToolProtocol()
    raise ValueError(f"Unknown tool protocol: {name}")
