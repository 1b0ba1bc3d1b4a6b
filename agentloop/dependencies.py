from __future__ import annotations

import threading
from typing import Callable, Dict, Optional, Tuple

from fastapi import Depends, Request

from .agent import Agent
from .config import get_settings
from .preset_loader import build_agent_from_preset, get_active_preset
from .providers import BaseProvider, build_provider

ProviderFactory = Callable[[], BaseProvider]


class AuthError(RuntimeError):
    """Raised when authentication fails."""


def get_provider_factory() -> ProviderFactory:
    """
    Dependency returning how to build the active provider.

    The factory is only called when an agent is first built. Tests override
    this dependency through FastAPI's dependency_overrides to inject a
    recording or raising double.
    """

    return build_provider


_agents: Dict[Tuple[str, int], Agent] = {}
_agents_lock = threading.Lock()


def get_agent(request: Request, provider_factory: ProviderFactory = Depends(get_provider_factory)) -> Agent:
    """
    Dependency returning the app's agent, built once from the active preset.

    Agents are cached per (preset, app) so memory survives across requests.
    """
    preset = get_active_preset()
    key = (preset.id, id(request.app))
    with _agents_lock:
        agent = _agents.get(key)
        if agent is None:
            agent = build_agent_from_preset(preset, provider_factory())
            _agents[key] = agent
    return agent


def reset_agents() -> None:
    """Forget cached agents (used on shutdown and by tests)."""
    with _agents_lock:
        _agents.clear()


def _get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        return token or None
    return None


def enforce_auth(request: Request) -> None:
    """
    Auth guard used by mutating endpoints.

    If AUTH_TOKEN is set, accept only that bearer token; otherwise
    authentication is disabled (dev/tests).
    """
    settings = get_settings()
    if not settings.auth_token:
        return
    supplied = _get_bearer_token(request)
    if supplied is None:
        raise AuthError("Missing or invalid Authorization header")
    if supplied != settings.auth_token:
        raise AuthError("Invalid bearer token")
