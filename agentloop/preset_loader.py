from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from jsonschema import Draft7Validator

from .agent import Agent
from .builder import AgentConfigError, build_agent_config
from .builtin_tools import BUILTIN_TOOLS, get_builtin_tools
from .config import Settings, get_settings
from .engine import DEFAULT_MAX_TOOL_CALLS, PROTOCOLS
from .memory import DEFAULT_MAX_MESSAGES
from .providers import BaseProvider

logger = logging.getLogger("agent-loop")

# Preset YAML files live in the agentloop.presets package data (agentloop/presets/*.yaml).
PRESETS_DIR = Path(__file__).parent / "presets"

PRESET_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["id", "system_prompt"],
    "properties": {
        "id": {"type": "string", "pattern": "^[a-z0-9_-]+$"},
        "name": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "system_prompt": {"type": "string"},
        "protocol": {"type": "string", "enum": sorted(PROTOCOLS)},
        "tools": {"type": "array", "items": {"type": "string", "enum": sorted(BUILTIN_TOOLS)}, "uniqueItems": True},
        "max_messages": {"type": "integer", "minimum": 1},
        "max_tool_calls": {"type": "integer", "minimum": 0},
    },
    "additionalProperties": False,
}


@dataclass
class Preset:
    id: str
    name: str
    description: str
    system_prompt: str
    protocol: str = "structured"
    tools: List[str] = field(default_factory=list)
    max_messages: int = DEFAULT_MAX_MESSAGES
    max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS


class PresetLoadError(RuntimeError):
    """Raised when a preset cannot be loaded or validated."""


def _read_preset_yaml(preset_id: str) -> Dict[str, Any]:
    preset_path = PRESETS_DIR / f"{preset_id}.yaml"
    if not preset_path.exists():
        raise PresetLoadError(f"Preset file not found: {preset_path}")

    with preset_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise PresetLoadError("Preset YAML must deserialize to a mapping")

    return data


def parse_preset(raw: Dict[str, Any]) -> Preset:
    """Validate a preset mapping against PRESET_SCHEMA and build a Preset."""
    errors = sorted(Draft7Validator(PRESET_SCHEMA).iter_errors(raw), key=lambda e: list(e.path))
    if errors:
        details = "; ".join(
            f"{'/'.join(str(p) for p in err.path) or '<root>'}: {err.message}" for err in errors
        )
        raise PresetLoadError(f"Invalid preset '{raw.get('id', '?')}': {details}")

    return Preset(
        id=raw["id"],
        name=raw.get("name", raw["id"]),
        description=raw.get("description", ""),
        system_prompt=raw["system_prompt"],
        protocol=raw.get("protocol", "structured"),
        tools=list(raw.get("tools", [])),
        max_messages=int(raw.get("max_messages", DEFAULT_MAX_MESSAGES)),
        max_tool_calls=int(raw.get("max_tool_calls", DEFAULT_MAX_TOOL_CALLS)),
    )


def load_preset(preset_id: str) -> Preset:
    """Load and validate a preset by id."""
    preset = parse_preset(_read_preset_yaml(preset_id))
    if preset.id != preset_id:
        raise PresetLoadError(f"Preset id '{preset.id}' does not match file name '{preset_id}'")
    return preset


def get_active_preset(settings: Optional[Settings] = None) -> Preset:
    """Resolve the currently active preset based on the environment."""
    settings = settings or get_settings()
    return load_preset(settings.agent_preset)


def list_preset_ids() -> List[str]:
    """Discover preset ids from agentloop/presets/*.yaml (filename stem = id). Returns sorted list."""
    if not PRESETS_DIR.exists():
        return []
    return sorted(p.stem for p in PRESETS_DIR.glob("*.yaml") if p.is_file())


def build_agent_from_preset(
    preset: Preset,
    client: BaseProvider,
    settings: Optional[Settings] = None,
) -> Agent:
    """
    Build a fixed-tool agent from a preset.

    MAX_MESSAGES / MAX_TOOL_CALLS from the environment override the preset.
    """
    settings = settings or get_settings()
    max_messages = settings.max_messages or preset.max_messages
    max_tool_calls = settings.max_tool_calls if settings.max_tool_calls is not None else preset.max_tool_calls
    try:
        config = build_agent_config(
            client,
            name=preset.name,
            system_prompt=preset.system_prompt,
            tools=get_builtin_tools(preset.tools),
            protocol=preset.protocol,
            max_tool_calls=max_tool_calls,
            max_messages=max_messages,
        )
    except (AgentConfigError, KeyError) as exc:
        raise PresetLoadError(f"Cannot build agent from preset '{preset.id}': {exc}") from exc
    logger.info(
        "agent built preset=%s protocol=%s tools=%s max_messages=%d max_tool_calls=%d",
        preset.id,
        preset.protocol,
        ",".join(preset.tools) or "-",
        max_messages,
        max_tool_calls,
    )
    return Agent.from_config(config)
