import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load .env from current directory so PROVIDER and API keys are set automatically.
load_dotenv()


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    agent_preset: str
    provider_name: str
    model: Optional[str] = None
    openai_api_key: Optional[str] = None
    openrouter_api_key: Optional[str] = None
    openrouter_model: Optional[str] = None
    lmstudio_url: str = "http://localhost:1234/v1"
    max_messages: Optional[int] = Field(default=None, ge=1)
    max_tool_calls: Optional[int] = Field(default=None, ge=0)
    auth_token: Optional[str] = None
    cors_origins: str = "*"
    chat_rate_limit: int = Field(default=60, ge=0)
    log_level: str = "INFO"

    service_name: str = "agent-loop"
    http_port: int = 4280


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Defaults only.

    `get_settings` below re-creates Settings from the current environment on
    every call; this helper just stores the fallbacks.
    """
    return Settings(agent_preset="assistant", provider_name="stub")


def _int_env(name: str) -> Optional[int]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.

    Tests mutate os.environ at runtime via the `env_vars` helper, so we must
    read directly from the environment on each call instead of caching.
    """
    base = _base_settings()
    rate_limit = _int_env("CHAT_RATE_LIMIT")

    return Settings(
        agent_preset=os.getenv("AGENT_PRESET") or base.agent_preset,
        provider_name=(os.getenv("PROVIDER") or base.provider_name).lower(),
        model=os.getenv("MODEL") or None,
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
        openrouter_model=os.getenv("OPENROUTER_MODEL") or None,
        lmstudio_url=os.getenv("LMSTUDIO_URL") or base.lmstudio_url,
        max_messages=_int_env("MAX_MESSAGES"),
        max_tool_calls=_int_env("MAX_TOOL_CALLS"),
        auth_token=os.getenv("AUTH_TOKEN") or None,
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        chat_rate_limit=rate_limit if rate_limit is not None else base.chat_rate_limit,
        log_level=(os.getenv("LOG_LEVEL") or base.log_level).upper(),
        service_name=base.service_name,
        http_port=base.http_port,
    )
