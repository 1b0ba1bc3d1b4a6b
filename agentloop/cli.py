"""CLI entry point for the agent-loop package."""

from __future__ import annotations

import logging
import os
import platform
import shutil
import subprocess
import sys
from typing import Callable, Optional

# OpenRouter: one API key for many models (OpenAI, Claude, Gemini, etc.)
OPENROUTER_KEYS_URL = "https://openrouter.ai/keys"
MIN_PYTHON = (3, 10)

REPL_COMMANDS = {
    "/history": "show the conversation so far",
    "/tools": "list available tools",
    "/clear": "forget the conversation",
    "/quit": "leave the chat",
}


def _print_setup_banner(
    preset: str,
    provider: str,
    port: int,
    *,
    for_startup: bool = True,
) -> None:
    """Print setup/LLM instructions. If for_startup, show 'server started' line; else show 'Setup' header."""
    provider_note = "no API key required" if provider in {"stub", "lmstudio"} else "API key from .env"
    base = f"http://localhost:{port}"
    print()
    if for_startup:
        print("✅ Agent loop started, preset: {}".format(preset))
        print("Provider: {} ({})".format(provider, provider_note))
    else:
        print("Agent Loop Setup")
        print("Preset: {}  |  Provider: {} ({})".format(preset, provider, provider_note))
    print()
    print("Docs:     {}/docs".format(base))
    print("Chat:     POST {}/chat".format(base))
    print("History:  {}/history".format(base))
    print()
    print("────────────────────────────────────────────")
    print("Get an API key from OpenRouter (one key for many models):")
    print("   {}".format(OPENROUTER_KEYS_URL))
    print()
    print("Create a .env file in this folder (or edit it if you already have one)")
    print("and copy the block below, replacing YOUR_KEY_HERE with your key:")
    print()
    print("   PROVIDER=openrouter")
    print("   OPENROUTER_API_KEY=YOUR_KEY_HERE")
    print("   OPENROUTER_MODEL=openai/gpt-4o-mini")
    print()
    print("For a local LM Studio server instead:")
    print()
    print("   PROVIDER=lmstudio")
    print("   LMSTUDIO_URL=http://localhost:1234/v1")
    print()
    print("Pick an agent with AGENT_PRESET (assistant or classic).")
    print()


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _ensure_supported_python() -> None:
    if sys.version_info < MIN_PYTHON:
        print(
            "Error: Python {} detected. agent-loop requires Python {}.{}+.".format(
                _python_version_str(),
                MIN_PYTHON[0],
                MIN_PYTHON[1],
            ),
            file=sys.stderr,
        )
        sys.exit(2)


def _print_help() -> None:
    print("Agent Loop CLI")
    print()
    print("Usage:")
    print("  agent-loop               Start the HTTP server")
    print("  agent-loop chat          Chat with the active preset in the terminal")
    print("  agent-loop setup         Print setup/env guidance")
    print("  agent-loop doctor        Print install/environment diagnostics")
    print()


def _print_doctor() -> None:
    from .config import get_settings
    from .preset_loader import list_preset_ids

    settings = get_settings()
    print("Agent Loop Doctor")
    print()
    print(f"Platform: {platform.platform()}")
    print(f"Python:   {_python_version_str()}")
    print(f"Exe:      {sys.executable}")
    print(f"In venv:  {'yes' if sys.prefix != sys.base_prefix else 'no'}")
    print(f"PATH bin: {shutil.which('agent-loop') or 'not found'}")

    try:
        pip_version = subprocess.check_output(
            [sys.executable, "-m", "pip", "--version"],
            text=True,
            stderr=subprocess.STDOUT,
        ).strip()
    except Exception as exc:  # pragma: no cover - diagnostics fallback
        pip_version = f"unavailable ({exc})"
    print(f"Pip:      {pip_version}")
    print(f"Provider: {settings.provider_name}")
    print(f"Preset:   {settings.agent_preset} (available: {', '.join(list_preset_ids()) or 'none'})")
    if sys.version_info < MIN_PYTHON:
        print(
            f"Issue: Python is below required minimum {MIN_PYTHON[0]}.{MIN_PYTHON[1]}."
        )
    if settings.provider_name == "openrouter" and not settings.openrouter_api_key:
        print("Issue: PROVIDER=openrouter but OPENROUTER_API_KEY is unset; the stub provider will be used.")
    if settings.provider_name == "openai" and not settings.openai_api_key:
        print("Issue: PROVIDER=openai but OPENAI_API_KEY is unset; the stub provider will be used.")


def _run_chat(input_fn: Callable[[str], str] = input) -> None:
    """Interactive REPL against the active preset."""
    from .preset_loader import build_agent_from_preset, get_active_preset
    from .providers import ProviderError, build_provider

    preset = get_active_preset()
    agent = build_agent_from_preset(preset, build_provider())
    print(f"{agent.name} ready ({preset.protocol} tools: {', '.join(agent.get_tool_names()) or 'none'}).")
    print("Commands: " + ", ".join(REPL_COMMANDS))

    while True:
        try:
            line = input_fn("you> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            return
        if not line:
            continue
        if line == "/quit":
            return
        if line == "/history":
            print(agent.get_history() or "(empty)")
            continue
        if line == "/tools":
            for declaration in agent.tools:
                print(f"- {declaration.name}: {declaration.description}")
            continue
        if line == "/clear":
            agent.clear_memory()
            print("(memory cleared)")
            continue
        try:
            print(f"{agent.name}> {agent.reply(line)}")
        except ProviderError as exc:
            print(f"Error: {exc} (your message is kept; try again)", file=sys.stderr)


def _configure_logging(level: Optional[str]) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def main() -> None:
    """Run the HTTP server or handle chat/setup/doctor commands."""
    from .config import get_settings

    port = int(os.environ.get("PORT", "4280"))
    host = os.environ.get("HOST", "0.0.0.0")
    settings = get_settings()
    _configure_logging(settings.log_level)

    if len(sys.argv) > 1:
        subcommand = sys.argv[1].strip().lower()
        if subcommand in {"-h", "--help", "help"}:
            _print_help()
            sys.exit(0)
        if subcommand == "setup":
            _print_setup_banner(
                preset=settings.agent_preset,
                provider=settings.provider_name,
                port=port,
                for_startup=False,
            )
            sys.exit(0)
        if subcommand == "doctor":
            _print_doctor()
            sys.exit(0)
        if subcommand == "chat":
            _ensure_supported_python()
            _run_chat()
            sys.exit(0)
        print(f"Unknown command: {subcommand}", file=sys.stderr)
        _print_help()
        sys.exit(2)

    import uvicorn

    _print_setup_banner(
        preset=settings.agent_preset,
        provider=settings.provider_name,
        port=port,
        for_startup=True,
    )

    uvicorn.run(
        "agentloop.main:app",
        host=host,
        port=port,
        factory=False,
    )


if __name__ == "__main__":
    main()
    sys.exit(0)
