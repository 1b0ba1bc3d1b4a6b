from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Tuple

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .agent import Agent, format_history
from .config import get_settings
from .dependencies import AuthError, enforce_auth, get_agent, reset_agents
from .models import (
    ChatRequest,
    RememberRequest,
    SummaryRequest,
    SystemPromptRequest,
    ToolInvokeRequest,
    turn_to_dict,
)
from .preset_loader import PresetLoadError, get_active_preset
from .providers import ProviderError
from .rate_limit import ChatRateLimiter

logger = logging.getLogger("agent-loop")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Drop cached agents on shutdown."""
    yield
    reset_agents()


app = FastAPI(title="Agent Loop", version="0.1.0", lifespan=lifespan)


# CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
_cors_origins_list = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_error_envelope(
    *,
    request_id: str,
    agent_name: Optional[str],
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> Tuple[int, Dict[str, Any]]:
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": {
            "request_id": request_id,
            "agent": agent_name or "unknown",
        },
    }
    return status_code, body


def _error(status_code: int, code: str, message: str, *, agent: Optional[Agent] = None, details: Any = None) -> JSONResponse:
    _, body = build_error_envelope(
        request_id=new_request_id(),
        agent_name=agent.name if agent is not None else None,
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


def _check_auth(request: Request, agent: Optional[Agent] = None) -> Optional[JSONResponse]:
    try:
        enforce_auth(request)
    except AuthError as exc:
        return _error(401, "UNAUTHORIZED", str(exc), agent=agent)
    return None


def _chat_limiter() -> ChatRateLimiter:
    """Limiter for /chat, rebuilt when CHAT_RATE_LIMIT changes."""
    limit = get_settings().chat_rate_limit
    limiter = getattr(app.state, "chat_limiter", None)
    if limiter is None or limiter.limit != limit:
        limiter = ChatRateLimiter(limit)
        app.state.chat_limiter = limiter
    return limiter


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    details = [{"path": [str(p) for p in err.get("loc", ())], "message": err.get("msg", "")} for err in errors]
    if any(err.get("type") == "json_invalid" for err in errors):
        return _error(400, "MALFORMED_REQUEST", "Request body must be valid JSON", details=details)
    return _error(422, "INPUT_VALIDATION_ERROR", "Request body failed validation", details=details)


@app.exception_handler(PresetLoadError)
async def preset_error_handler(request: Request, exc: PresetLoadError) -> JSONResponse:
    return _error(500, "INTERNAL_ERROR", str(exc))


@app.get("/")
async def root() -> Dict[str, Any]:
    """
    Service metadata endpoint.
    """
    settings = get_settings()
    preset = get_active_preset(settings)
    return {
        "service": settings.service_name,
        "agent": preset.name,
        "preset": preset.id,
        "protocol": preset.protocol,
        "provider": settings.provider_name,
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health")
async def health() -> JSONResponse:
    """
    Simple health check. Returns 200 when the active preset loads.
    """
    preset = get_active_preset()
    return JSONResponse(status_code=200, content={"status": "ok", "preset": preset.id})


@app.post("/chat")
async def chat(body: ChatRequest, request: Request, agent: Agent = Depends(get_agent)) -> JSONResponse:
    """
    Send one user message through the agent loop.
    """
    denied = _check_auth(request, agent)
    if denied is not None:
        return denied

    client_id = request.client.host if request.client else "anonymous"
    if not await _chat_limiter().allow(client_id):
        return _error(429, "RATE_LIMITED", "Too many chat requests; slow down", agent=agent)

    request_id = new_request_id()
    start = time.monotonic()
    try:
        result = await run_in_threadpool(agent.chat, body.message, body.to_params())
    except ProviderError as exc:
        logger.warning("chat request_id=%s provider error: %s", request_id, exc)
        return _error(
            502,
            "PROVIDER_ERROR",
            "Model provider failure",
            agent=agent,
            details={"message": str(exc), "status_code": exc.status_code},
        )

    latency_ms = (time.monotonic() - start) * 1000.0
    return JSONResponse(
        status_code=200,
        content={
            "response": result.text,
            "usage": result.usage.model_dump() if result.usage else None,
            "conversation_length": len(agent.memory),
            "meta": {"request_id": request_id, "agent": agent.name, "latency_ms": latency_ms},
        },
    )


def _history_payload(agent: Agent) -> Dict[str, Any]:
    turns = agent.get_turns()
    return {
        "history": format_history(turns),
        "turns": [turn_to_dict(t) for t in turns],
        "summary": agent.summary,
    }


# Agent methods take the agent's thread lock, which /chat holds for the whole
# model call; every call below therefore runs in the threadpool.


@app.get("/history")
async def history(agent: Agent = Depends(get_agent)) -> Dict[str, Any]:
    return await run_in_threadpool(_history_payload, agent)


@app.post("/remember")
async def remember(body: RememberRequest, request: Request, agent: Agent = Depends(get_agent)) -> JSONResponse:
    denied = _check_auth(request, agent)
    if denied is not None:
        return denied
    def _apply() -> int:
        agent.remember(body.note)
        return len(agent.get_turns())

    length = await run_in_threadpool(_apply)
    return JSONResponse(status_code=200, content={"ok": True, "conversation_length": length})


@app.put("/summary")
async def set_summary(body: SummaryRequest, request: Request, agent: Agent = Depends(get_agent)) -> JSONResponse:
    denied = _check_auth(request, agent)
    if denied is not None:
        return denied

    def _apply() -> Optional[str]:
        agent.summary = body.summary
        return agent.summary

    summary = await run_in_threadpool(_apply)
    return JSONResponse(status_code=200, content={"ok": True, "summary": summary})


@app.put("/system-prompt")
async def set_system_prompt(
    body: SystemPromptRequest, request: Request, agent: Agent = Depends(get_agent)
) -> JSONResponse:
    denied = _check_auth(request, agent)
    if denied is not None:
        return denied
    await run_in_threadpool(setattr, agent, "system_prompt", body.system_prompt)
    return JSONResponse(status_code=200, content={"ok": True, "system_prompt": body.system_prompt})


@app.delete("/memory")
async def clear_memory(request: Request, agent: Agent = Depends(get_agent)) -> JSONResponse:
    denied = _check_auth(request, agent)
    if denied is not None:
        return denied
    await run_in_threadpool(agent.clear_memory)
    return JSONResponse(status_code=200, content={"ok": True})


@app.get("/tools")
async def list_tools(agent: Agent = Depends(get_agent)) -> Dict[str, Any]:
    return {
        "tools": [
            {"name": t.name, "description": t.description, "input_schema": dict(t.input_schema)}
            for t in agent.tools.all()
        ]
    }


@app.post("/tools/{tool_name}")
async def execute_tool(
    tool_name: str, body: ToolInvokeRequest, request: Request, agent: Agent = Depends(get_agent)
) -> JSONResponse:
    """
    Run a tool directly, bypassing the model. Unknown tools yield the
    not-found text with a 200, like inside a conversation.
    """
    denied = _check_auth(request, agent)
    if denied is not None:
        return denied
    result = await run_in_threadpool(agent.execute_tool, tool_name, body.input)
    return JSONResponse(status_code=200, content={"tool": tool_name, "result": result})


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app
