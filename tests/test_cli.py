from __future__ import annotations

from types import SimpleNamespace
from typing import Iterator, List

import pytest

from agentloop import cli
from agentloop.models import CompletionResult
from agentloop.providers import BaseProvider, ProviderError


def test_print_help_lists_subcommands(capsys: pytest.CaptureFixture[str]) -> None:
    cli._print_help()
    output = capsys.readouterr().out
    assert "agent-loop chat" in output
    assert "agent-loop doctor" in output
    assert "agent-loop setup" in output


def test_main_setup_subcommand_prints_setup_and_exits(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls = {}

    def fake_get_settings() -> SimpleNamespace:
        return SimpleNamespace(agent_preset="classic", provider_name="stub", log_level="INFO")

    def fake_setup_banner(preset: str, provider: str, port: int, *, for_startup: bool) -> None:
        calls["preset"] = preset
        calls["provider"] = provider
        calls["port"] = port
        calls["for_startup"] = for_startup

    monkeypatch.delenv("PORT", raising=False)
    monkeypatch.setattr("agentloop.config.get_settings", fake_get_settings)
    monkeypatch.setattr(cli, "_print_setup_banner", fake_setup_banner)
    monkeypatch.setattr(cli.sys, "argv", ["agent-loop", "setup"])

    with pytest.raises(SystemExit) as exc:
        cli.main()

    assert exc.value.code == 0
    assert calls == {
        "preset": "classic",
        "provider": "stub",
        "port": 4280,
        "for_startup": False,
    }


def test_main_unknown_subcommand_exits_with_usage_error(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr(cli.sys, "argv", ["agent-loop", "teleport"])

    with pytest.raises(SystemExit) as exc:
        cli.main()

    assert exc.value.code == 2
    assert "Unknown command: teleport" in capsys.readouterr().err


def test_print_doctor_reports_runtime_info(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("PROVIDER", "openrouter")
    monkeypatch.setenv("OPENROUTER_API_KEY", "")
    monkeypatch.setenv("AGENT_PRESET", "assistant")
    monkeypatch.setattr(cli.shutil, "which", lambda _name: "/tmp/agent-loop")
    monkeypatch.setattr(cli.subprocess, "check_output", lambda *_args, **_kwargs: "pip X.Y.Z")

    cli._print_doctor()
    output = capsys.readouterr().out
    assert "Agent Loop Doctor" in output
    assert "PATH bin: /tmp/agent-loop" in output
    assert "pip X.Y.Z" in output
    assert "Preset:   assistant (available: assistant, classic)" in output
    assert "OPENROUTER_API_KEY is unset" in output


class _FlakyProvider(BaseProvider):
    def __init__(self) -> None:
        self.calls = 0

    def chat(self, turns, tools=(), params=None):
        self.calls += 1
        if self.calls == 1:
            raise ProviderError("upstream timeout")
        return CompletionResult(text="second time lucky")


def _inputs(lines: List[str]):
    feed: Iterator[str] = iter(lines)

    def fake_input(prompt: str) -> str:
        try:
            return next(feed)
        except StopIteration:
            raise EOFError

    return fake_input


def test_run_chat_repl_handles_commands_and_provider_errors(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("AGENT_PRESET", "assistant")
    monkeypatch.setenv("MAX_MESSAGES", "")
    monkeypatch.setenv("MAX_TOOL_CALLS", "")
    monkeypatch.setattr("agentloop.providers.build_provider", lambda settings=None: _FlakyProvider())

    cli._run_chat(_inputs(["", "hello", "hello again", "/tools", "/history", "/clear", "/history", "/quit", "never read"]))

    captured = capsys.readouterr()
    assert "Assistant ready" in captured.out
    assert "Error: upstream timeout" in captured.err
    assert "Assistant> second time lucky" in captured.out
    assert "- calculator: " in captured.out
    assert "USER: hello\n\nUSER: hello again\n\nASSISTANT: second time lucky" in captured.out
    assert "(memory cleared)" in captured.out
    assert "(empty)" in captured.out


def test_run_chat_exits_on_eof(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("AGENT_PRESET", "classic")
    monkeypatch.setenv("PROVIDER", "stub")

    cli._run_chat(_inputs(["ping"]))

    assert "stub reply: ping" in capsys.readouterr().out
