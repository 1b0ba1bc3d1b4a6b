import asyncio
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, List

import httpx
import pytest
from fastapi.testclient import TestClient

from agentloop.models import CompletionResult, ToolCallRequest, Usage
from agentloop.providers import BaseProvider, ProviderError


@pytest.fixture
def app():
    """
    Import the FastAPI app from the runtime.

    The implementation is expected to expose `app` at `agentloop.main`.
    """
    from agentloop.dependencies import reset_agents
    from agentloop.main import app as fastapi_app

    reset_agents()
    fastapi_app.state.chat_limiter = None
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()
    reset_agents()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture(autouse=True)
def default_env():
    with env_vars({"AGENT_PRESET": "assistant", "AUTH_TOKEN": "", "MAX_MESSAGES": "", "MAX_TOOL_CALLS": ""}):
        yield


@contextmanager
def env_vars(env: Dict[str, str]):
    """
    Temporarily set environment variables for a test.

    Restores previous values afterwards, even if the test fails.
    """
    old_values: Dict[str, Any] = {}
    for key, value in env.items():
        old_values[key] = os.environ.get(key)
        os.environ[key] = value
    try:
        yield
    finally:
        for key, old in old_values.items():
            if old is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = old


def _assert_error_envelope(resp_json: Dict[str, Any], expected_code: str):
    assert "error" in resp_json, "Error responses must include 'error' envelope"
    assert "meta" in resp_json, "Error responses must include 'meta' envelope"

    error = resp_json["error"]
    meta = resp_json["meta"]

    assert error.get("code") == expected_code
    assert isinstance(error.get("message"), str)
    assert isinstance(meta.get("request_id"), str)
    assert isinstance(meta.get("agent"), str)


class RecordingProvider(BaseProvider):
    """
    Replays scripted results. A result whose raw_payload holds {"calls": [...]}
    asks for those tools.
    """

    def __init__(self, results: List[CompletionResult]):
        self.results = list(results)
        self.prompts: List[list] = []

    def chat(self, turns, tools=(), params=None):
        self.prompts.append(list(turns))
        return self.results.pop(0)

    def extract_tool_calls(self, result):
        return [ToolCallRequest(tool_name=name, arguments_text=args) for name, args in result.raw_payload["calls"]]


class RaisingProvider(BaseProvider):
    def chat(self, turns, tools=(), params=None):
        raise ProviderError("upstream unavailable", status_code=503)


def _use_provider(app, provider: BaseProvider) -> None:
    from agentloop.dependencies import get_provider_factory

    app.dependency_overrides[get_provider_factory] = lambda: (lambda: provider)


def test_root_and_health(client):
    root = client.get("/")
    assert root.status_code == 200
    assert root.json()["preset"] == "assistant"
    assert root.json()["protocol"] == "structured"

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json() == {"status": "ok", "preset": "assistant"}


def test_chat_returns_reply_usage_and_meta(app, client):
    _use_provider(app, RecordingProvider([CompletionResult(text="hi!", usage=Usage(prompt_tokens=4, completion_tokens=1, total_tokens=5))]))

    resp = client.post("/chat", json={"message": "hello", "temperature": 0.1})

    assert resp.status_code == 200
    data = resp.json()
    assert data["response"] == "hi!"
    assert data["usage"]["total_tokens"] == 5
    assert data["conversation_length"] == 2
    assert data["meta"]["agent"] == "Assistant"
    assert isinstance(data["meta"]["request_id"], str)


def test_chat_runs_tools_and_memory_persists_between_requests(app, client):
    provider = RecordingProvider(
        [
            CompletionResult(text="calculating", raw_payload={"calls": [["calculator", '{"expression": "6*7"}']]}),
            CompletionResult(text="It is 42."),
            CompletionResult(text="You asked about 6*7."),
        ]
    )
    _use_provider(app, provider)

    first = client.post("/chat", json={"message": "what is 6*7?"})
    assert first.json()["response"] == "It is 42."
    assert first.json()["conversation_length"] == 4

    second = client.post("/chat", json={"message": "what did I ask?"})
    assert second.json()["conversation_length"] == 6

    turns = client.get("/history").json()["turns"]
    assert {"role": "tool", "content": "Result: 42"} in turns
    assert turns[-1] == {"role": "assistant", "content": "You asked about 6*7."}


def test_provider_failure_maps_to_502_and_keeps_user_turn(app, client):
    _use_provider(app, RaisingProvider())

    resp = client.post("/chat", json={"message": "hello"})

    assert resp.status_code == 502
    body = resp.json()
    _assert_error_envelope(body, "PROVIDER_ERROR")
    assert body["error"]["details"]["status_code"] == 503

    history = client.get("/history").json()
    assert history["turns"] == [{"role": "user", "content": "hello"}]


def test_chat_rejects_malformed_json(client):
    resp = client.post("/chat", content="{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    _assert_error_envelope(resp.json(), "MALFORMED_REQUEST")


def test_chat_rejects_missing_message(client):
    resp = client.post("/chat", json={"temperature": 0.3})
    assert resp.status_code == 422
    _assert_error_envelope(resp.json(), "INPUT_VALIDATION_ERROR")


def test_auth_token_required_when_configured(app, client):
    _use_provider(app, RecordingProvider([CompletionResult(text="authorised")]))

    with env_vars({"AUTH_TOKEN": "s3cret"}):
        missing = client.post("/chat", json={"message": "hi"})
        wrong = client.post("/chat", json={"message": "hi"}, headers={"Authorization": "Bearer nope"})
        ok = client.post("/chat", json={"message": "hi"}, headers={"Authorization": "Bearer s3cret"})

    assert missing.status_code == 401
    _assert_error_envelope(missing.json(), "UNAUTHORIZED")
    assert wrong.status_code == 401
    assert ok.status_code == 200
    assert ok.json()["response"] == "authorised"


def test_chat_rate_limit(app, client):
    _use_provider(app, RecordingProvider([CompletionResult(text="one"), CompletionResult(text="two")]))

    with env_vars({"CHAT_RATE_LIMIT": "2"}):
        assert client.post("/chat", json={"message": "a"}).status_code == 200
        assert client.post("/chat", json={"message": "b"}).status_code == 200
        limited = client.post("/chat", json={"message": "c"})

    assert limited.status_code == 429
    _assert_error_envelope(limited.json(), "RATE_LIMITED")


def test_memory_management_endpoints(app, client):
    provider = RecordingProvider([CompletionResult(text="noted")])
    _use_provider(app, provider)

    assert client.post("/remember", json={"note": "User prefers metric units"}).json()["conversation_length"] == 1
    assert client.put("/summary", json={"summary": "we discussed units"}).json()["summary"] == "we discussed units"
    assert client.put("/system-prompt", json={"system_prompt": "Answer tersely."}).status_code == 200

    client.post("/chat", json={"message": "hello"})
    prompt = provider.prompts[0]
    assert prompt[0].content == "Answer tersely."
    assert prompt[1].content == "Previous conversation summary: we discussed units"
    assert prompt[2].content == "User prefers metric units"

    history = client.get("/history").json()
    assert history["summary"] == "we discussed units"
    assert history["history"].startswith("SYSTEM: User prefers metric units")

    assert client.delete("/memory").status_code == 200
    cleared = client.get("/history").json()
    assert cleared == {"history": "", "turns": [], "summary": None}


def test_list_and_execute_tools(app, client):
    _use_provider(app, RecordingProvider([]))

    tools = client.get("/tools").json()["tools"]
    assert [t["name"] for t in tools] == ["calculator", "time.now", "http.get"]
    assert tools[0]["input_schema"]["required"] == ["expression"]

    resp = client.post("/tools/Calculator", json={"input": "2 + 2"})
    assert resp.status_code == 200
    assert resp.json() == {"tool": "Calculator", "result": "Result: 4"}

    missing = client.post("/tools/teleport", json={"input": "mars"})
    assert missing.json()["result"] == "Tool 'teleport' not found"

    # Direct tool runs never touch the conversation.
    assert client.get("/history").json()["turns"] == []


def test_classic_preset_serves_sentinel_agent(app, client):
    _use_provider(app, RecordingProvider([CompletionResult(text="TOOL:calculator:3*3")]))

    with env_vars({"AGENT_PRESET": "classic"}):
        resp = client.post("/chat", json={"message": "3*3?"})

    assert resp.json()["response"] == "Result: 9"


class BlockingProvider(BaseProvider):
    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def chat(self, turns, tools=(), params=None):
        self.entered.set()
        self.release.wait(timeout=5)
        return CompletionResult(text="finally")


def test_event_loop_stays_responsive_while_chat_is_in_flight(app):
    provider = BlockingProvider()
    _use_provider(app, provider)

    async def scenario():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            chat = asyncio.create_task(http.post("/chat", json={"message": "slow one"}))
            while not provider.entered.is_set():
                await asyncio.sleep(0.01)
            # Waits on the agent lock held by /chat; must not block the loop meanwhile.
            remember = asyncio.create_task(http.post("/remember", json={"note": "later"}))
            await asyncio.sleep(0.1)

            start = time.monotonic()
            health = await http.get("/health")
            health_seconds = time.monotonic() - start
            chat_done_early = chat.done()

            provider.release.set()
            chat_resp, remember_resp = await asyncio.gather(chat, remember)
            history = (await http.get("/history")).json()
        return health, health_seconds, chat_done_early, chat_resp, remember_resp, history

    health, health_seconds, chat_done_early, chat_resp, remember_resp, history = asyncio.run(scenario())

    assert health.status_code == 200
    assert health_seconds < 0.5
    assert not chat_done_early
    assert chat_resp.status_code == 200
    assert chat_resp.json()["response"] == "finally"
    assert remember_resp.status_code == 200
    assert [t["content"] for t in history["turns"]] == ["slow one", "finally", "later"]


def test_provider_is_built_only_when_agent_is_first_created(app, client):
    from agentloop.dependencies import get_provider_factory

    built: List[BaseProvider] = []

    def factory() -> BaseProvider:
        provider = RecordingProvider([CompletionResult(text="one"), CompletionResult(text="two")])
        built.append(provider)
        return provider

    app.dependency_overrides[get_provider_factory] = lambda: factory

    assert client.post("/chat", json={"message": "a"}).json()["response"] == "one"
    assert client.get("/history").status_code == 200
    assert client.post("/chat", json={"message": "b"}).json()["response"] == "two"
    assert len(built) == 1
