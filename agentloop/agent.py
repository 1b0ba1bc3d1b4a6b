"""
The agent: system prompt, bounded memory, tools and the chat loop.

Example:

    agent = Agent(OpenRouterProvider(api_key), tools=[calculator])
    print(agent.reply("What is 12 * 7?"))
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Iterable, List, Optional, Tuple, Union

from .engine import DEFAULT_MAX_TOOL_CALLS, ToolProtocol, get_protocol
from .memory import DEFAULT_MAX_MESSAGES, BaseMemory, InMemoryMemory
from .models import CompletionResult, GenerationParams, Turn
from .providers import BaseProvider
from .tools import ToolContext, ToolDeclaration, ToolRegistry

if TYPE_CHECKING:
    from .builder import AgentConfig

logger = logging.getLogger("agent-loop")

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


def format_history(turns: Iterable[Turn]) -> str:
    """`ROLE: content` blocks separated by blank lines."""
    return "\n\n".join(f"{t.role.value.upper()}: {t.content}" for t in turns)


class Agent:
    """
    Conversation orchestrator.

    One in-flight `chat` per agent is the expected usage; the per-agent lock
    serialises concurrent callers so memory never interleaves two turns.
    """

    def __init__(
        self,
        client: BaseProvider,
        *,
        name: str = "agent",
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        tools: Iterable[ToolDeclaration] = (),
        memory: Optional[BaseMemory] = None,
        protocol: Union[str, ToolProtocol] = "structured",
        max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS,
        freeze_tools: bool = False,
    ) -> None:
        if client is None:
            raise ValueError("An LLM client is required")
        self.client = client
        self.name = name
        self._system_prompt = system_prompt
        self.tools = ToolRegistry(tools)
        self.memory: BaseMemory = memory if memory is not None else InMemoryMemory(DEFAULT_MAX_MESSAGES)
        self.protocol = protocol if isinstance(protocol, ToolProtocol) else get_protocol(protocol, max_tool_calls)
        self._freeze_tools = freeze_tools
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: "AgentConfig") -> "Agent":
        """Build an agent whose tool set is fixed for its lifetime."""
        return cls(
            config.client,
            name=config.name,
            system_prompt=config.system_prompt,
            tools=config.tools,
            memory=config.memory if config.memory is not None else InMemoryMemory(config.max_messages),
            protocol=config.protocol,
            max_tool_calls=config.max_tool_calls,
            freeze_tools=True,
        )

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    @system_prompt.setter
    def system_prompt(self, value: str) -> None:
        # Affects future prompts only; stored turns are never rewritten.
        with self._lock:
            self._system_prompt = value

    @property
    def summary(self) -> Optional[str]:
        with self._lock:
            return self.memory.summary

    @summary.setter
    def summary(self, value: Optional[str]) -> None:
        with self._lock:
            self.memory.summary = value or None

    def get_turns(self) -> Tuple[Turn, ...]:
        """Snapshot of stored turns, taken under the agent lock."""
        with self._lock:
            return self.memory.turns

    def chat(self, message: str, params: Optional[GenerationParams] = None) -> CompletionResult:
        """
        Run one user turn through the model, executing requested tools in between.

        Raises ProviderError when the model call fails. The user turn stays in
        memory in that case and no assistant turn is recorded.
        """
        with self._lock:
            start = time.monotonic()
            self.memory.add(Turn.user(message))
            outcome = self.protocol.run(self, params)
            logger.info(
                "chat agent=%s protocol=%s rounds=%d tool_calls=%d latency_ms=%.2f",
                self.name,
                self.protocol.name,
                outcome.rounds,
                outcome.tool_calls,
                (time.monotonic() - start) * 1000.0,
            )
            return outcome.result

    def reply(self, message: str) -> str:
        return self.chat(message).text

    def remember(self, note: str) -> None:
        """Store a free-form system note in memory."""
        with self._lock:
            self.memory.add(Turn.system(note))

    def clear_memory(self) -> None:
        with self._lock:
            self.memory.clear()

    def get_history(self) -> str:
        return format_history(self.get_turns())

    def run_tool(self, name: str, arguments_text: str) -> str:
        """Execute a tool with a fresh per-invocation context; never raises."""
        return self.tools.execute(name, arguments_text, ToolContext(self))

    def execute_tool(self, name: str, input_text: str) -> str:
        """Run a tool directly, bypassing the model and leaving memory untouched."""
        return self.run_tool(name, input_text)

    def get_tool_names(self) -> List[str]:
        return self.tools.names()

    def use(self, *tools: ToolDeclaration) -> "Agent":
        """Add tools after construction; agents built from a frozen config refuse."""
        if self._freeze_tools:
            from .builder import AgentConfigError

            raise AgentConfigError(f"Agent '{self.name}' was built with a fixed tool set")
        with self._lock:
            for declaration in tools:
                self.tools.register(declaration)
        return self
