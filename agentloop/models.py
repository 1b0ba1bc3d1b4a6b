"""
Data models for the agent loop.

Defines Role, Turn, GenerationParams, Usage, CompletionResult and
ToolCallRequest, plus the request bodies accepted by the HTTP surface.
Do not duplicate these definitions elsewhere.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Turn(BaseModel):
    """A single role-tagged message in the conversation history."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str

    @classmethod
    def system(cls, content: str) -> "Turn":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Turn":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Turn":
        return cls(role=Role.ASSISTANT, content=content)

    @classmethod
    def tool(cls, content: str) -> "Turn":
        return cls(role=Role.TOOL, content=content)


class GenerationParams(BaseModel):
    """Optional sampling knobs; fields left as None use the provider default."""

    model_config = ConfigDict(frozen=True)

    temperature: Optional[float] = Field(default=None, ge=0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    top_p: Optional[float] = Field(default=None, gt=0, le=1)
    stop: Optional[List[str]] = None


class Usage(BaseModel):
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


class CompletionResult(BaseModel):
    """
    The model's answer to one invocation.

    `raw_payload` is the provider's decoded response body. It is opaque to the
    orchestrator and only handed back to the client adapter for tool-call
    extraction; when it is None no tool calls are possible for that round.
    """

    text: str
    usage: Optional[Usage] = None
    raw_payload: Optional[Any] = None


class ToolCallRequest(BaseModel):
    """A request from the model to run one tool."""

    model_config = ConfigDict(frozen=True)

    tool_name: str
    arguments_text: str = ""


# HTTP request bodies ###########################################################


class ChatRequest(BaseModel):
    message: str
    temperature: Optional[float] = Field(default=None, ge=0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    top_p: Optional[float] = Field(default=None, gt=0, le=1)
    stop: Optional[List[str]] = None

    def to_params(self) -> GenerationParams:
        return GenerationParams(
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
            stop=self.stop,
        )


class RememberRequest(BaseModel):
    note: str


class SummaryRequest(BaseModel):
    summary: Optional[str] = None


class SystemPromptRequest(BaseModel):
    system_prompt: str


class ToolInvokeRequest(BaseModel):
    input: str = ""


def turn_to_dict(turn: Turn) -> Dict[str, Any]:
    return {"role": turn.role.value, "content": turn.content}
