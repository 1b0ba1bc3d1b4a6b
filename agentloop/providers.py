from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import httpx

from .config import Settings, get_settings
from .models import CompletionResult, GenerationParams, Role, ToolCallRequest, Turn, Usage
from .tools import ToolDeclaration

logger = logging.getLogger("agent-loop")

DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAY_SECONDS = 1.0
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class ProviderError(RuntimeError):
    """
    Transport or provider failure while invoking the model.

    Raised out of `Agent.chat` as a recoverable error: memory already holds the
    user's turn, so the caller can simply retry the whole chat call.
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class BaseProvider:
    """
    Model invocation contract.

    `chat` is synchronous for simplicity and testability; the HTTP surface runs
    it in a thread pool. `extract_tool_calls` is owned by the adapter so the
    orchestrator never looks inside provider-specific payloads.
    """

    name = "base"

    def chat(
        self,
        turns: Sequence[Turn],
        tools: Sequence[ToolDeclaration] = (),
        params: Optional[GenerationParams] = None,
    ) -> CompletionResult:  # pragma: no cover - interface only
        raise NotImplementedError

    def extract_tool_calls(self, result: CompletionResult) -> List[ToolCallRequest]:
        return []


class StubProvider(BaseProvider):
    """
    Deterministic provider that echoes the last user turn.

    Never requests tools and needs no network; used when no API key is set.
    """

    name = "stub"

    def chat(
        self,
        turns: Sequence[Turn],
        tools: Sequence[ToolDeclaration] = (),
        params: Optional[GenerationParams] = None,
    ) -> CompletionResult:
        last_user = next((t.content for t in reversed(turns) if t.role == Role.USER), "")
        return CompletionResult(text=f"stub reply: {last_user}")


def extract_openai_tool_calls(payload: Any) -> List[ToolCallRequest]:
    """
    Pull `choices[0].message.tool_calls` out of an OpenAI-style response body.

    Anything that does not have the expected shape yields no calls.
    """
    try:
        message = payload["choices"][0]["message"]
        raw_calls = message.get("tool_calls") or []
        calls: List[ToolCallRequest] = []
        for raw in raw_calls:
            function = raw["function"]
            arguments = function.get("arguments")
            if arguments is None:
                arguments = ""
            elif not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            calls.append(ToolCallRequest(tool_name=str(function["name"]), arguments_text=arguments))
        return calls
    except (KeyError, IndexError, TypeError, AttributeError) as exc:
        logger.debug("malformed tool-call payload ignored: %s", exc)
        return []


class OpenAICompatibleProvider(BaseProvider):
    """
    Chat-completions client for any OpenAI-compatible endpoint.

    Transient failures (transport errors, 408/429/5xx) are retried inside the
    call with a linearly increasing delay; memory is never touched here.
    """

    name = "openai-compatible"
    # Tool-role turns carry no tool_call_id, so they are sent as user messages.
    tool_result_role = "user"
    tool_result_prefix = "Tool result: "

    def __init__(
        self,
        base_url: str,
        *,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        extra_headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.retry_delay = retry_delay
        self._client = client
        self._sleep = sleep
        self._extra_headers = dict(extra_headers or {})

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", **self._extra_headers}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _message(self, turn: Turn) -> Dict[str, Any]:
        if turn.role == Role.TOOL:
            return {"role": self.tool_result_role, "content": self.tool_result_prefix + turn.content}
        return {"role": turn.role.value, "content": turn.content}

    def build_request_body(
        self,
        turns: Sequence[Turn],
        tools: Sequence[ToolDeclaration],
        params: Optional[GenerationParams],
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"messages": [self._message(t) for t in turns]}
        if self.model:
            body["model"] = self.model
        if params is not None:
            if params.temperature is not None:
                body["temperature"] = params.temperature
            if params.max_tokens is not None:
                body["max_tokens"] = params.max_tokens
            if params.top_p is not None:
                body["top_p"] = params.top_p
            if params.stop:
                body["stop"] = list(params.stop)
        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": dict(t.input_schema),
                    },
                }
                for t in tools
            ]
        return body

    def _post(self, url: str, body: Dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, headers=self._headers(), json=body, timeout=self.timeout)
        return httpx.post(url, headers=self._headers(), json=body, timeout=self.timeout)

    def _send_once(self, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        try:
            resp = self._post(url, body)
        except httpx.TransportError as exc:
            raise _RetryableError(f"{self.name} transport error: {exc}") from exc

        if resp.status_code in RETRYABLE_STATUS_CODES:
            raise _RetryableError(
                f"{self.name} API error: {resp.status_code} - {resp.text[:500]}",
                status_code=resp.status_code,
            )
        if not resp.is_success:
            raise ProviderError(
                f"{self.name} API error: {resp.status_code} - {resp.text[:500]}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(f"{self.name} returned a non-JSON body", status_code=resp.status_code) from exc
        if not isinstance(data, dict):
            raise ProviderError(f"{self.name} returned an unexpected body", status_code=resp.status_code)
        return data

    def chat(
        self,
        turns: Sequence[Turn],
        tools: Sequence[ToolDeclaration] = (),
        params: Optional[GenerationParams] = None,
    ) -> CompletionResult:
        body = self.build_request_body(turns, tools, params)
        attempt = 0
        while True:
            try:
                data = self._send_once(body)
                break
            except _RetryableError as exc:
                if attempt >= self.max_retries:
                    raise ProviderError(str(exc), status_code=exc.status_code) from exc
                attempt += 1
                delay = self.retry_delay * attempt
                logger.warning(
                    "provider retry provider=%s attempt=%d delay_s=%.1f error=%s",
                    self.name,
                    attempt,
                    delay,
                    exc,
                )
                self._sleep(delay)
        return self.parse_response(data)

    def parse_response(self, data: Dict[str, Any]) -> CompletionResult:
        try:
            message = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"Invalid response format from {self.name}") from exc
        content = message.get("content") if isinstance(message, dict) else None

        usage = None
        raw_usage = data.get("usage")
        if isinstance(raw_usage, dict):
            usage = Usage(
                prompt_tokens=_as_int(raw_usage.get("prompt_tokens")),
                completion_tokens=_as_int(raw_usage.get("completion_tokens")),
                total_tokens=_as_int(raw_usage.get("total_tokens")),
            )
        return CompletionResult(text=content or "", usage=usage, raw_payload=data)

    def extract_tool_calls(self, result: CompletionResult) -> List[ToolCallRequest]:
        if result.raw_payload is None:
            return []
        return extract_openai_tool_calls(result.raw_payload)


class _RetryableError(ProviderError):
    pass


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


OPENAI_API_URL = "https://api.openai.com/v1"
OPENROUTER_API_URL = "https://openrouter.ai/api/v1"
LMSTUDIO_API_URL = "http://localhost:1234/v1"


class OpenAIProvider(OpenAICompatibleProvider):
    name = "openai"

    def __init__(self, api_key: str, model: Optional[str] = None, **kwargs: Any) -> None:
        kwargs.setdefault("timeout", 120.0)
        super().__init__(OPENAI_API_URL, model=model or "gpt-4o-mini", api_key=api_key, **kwargs)


class OpenRouterProvider(OpenAICompatibleProvider):
    """
    OpenRouter provider: one API key, many models (OpenAI, Claude, Gemini, etc.).
    """

    name = "openrouter"

    def __init__(self, api_key: str, model: Optional[str] = None, **kwargs: Any) -> None:
        kwargs.setdefault("timeout", 60.0)
        super().__init__(OPENROUTER_API_URL, model=model or "openai/gpt-4o-mini", api_key=api_key, **kwargs)


class LmStudioProvider(OpenAICompatibleProvider):
    """Local LM Studio server; the model is optional since LM Studio serves whatever is loaded."""

    name = "lmstudio"

    def __init__(self, base_url: str = LMSTUDIO_API_URL, model: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(base_url, model=model, **kwargs)

    def list_models(self) -> List[str]:
        url = f"{self.base_url}/models"
        try:
            if self._client is not None:
                resp = self._client.get(url, headers=self._headers(), timeout=self.timeout)
            else:
                resp = httpx.get(url, headers=self._headers(), timeout=self.timeout)
            if not resp.is_success:
                return []
            data = resp.json()
            return [str(item["id"]) for item in data.get("data", []) if isinstance(item, dict) and "id" in item]
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.debug("lmstudio list_models failed: %s", exc)
            return []


def build_provider(settings: Optional[Settings] = None) -> BaseProvider:
    """Factory that chooses the concrete provider implementation."""
    settings = settings or get_settings()
    if settings.provider_name == "openrouter":
        if not settings.openrouter_api_key:
            return StubProvider()
        return OpenRouterProvider(api_key=settings.openrouter_api_key, model=settings.openrouter_model or settings.model)
    if settings.provider_name == "openai":
        if not settings.openai_api_key:
            return StubProvider()
        return OpenAIProvider(api_key=settings.openai_api_key, model=settings.model)
    if settings.provider_name == "lmstudio":
        return LmStudioProvider(base_url=settings.lmstudio_url, model=settings.model)

    return StubProvider()
