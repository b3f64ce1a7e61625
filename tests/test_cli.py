import io
import importlib
from pathlib import Path

import pytest
from rich.console import Console
from typer.testing import CliRunner

from baton.cli.render import Renderer
from baton.events import TextDelta, ToolCallAnnounced, ToolResultRecorded, TurnFinished
from baton.orchestrator import StopReason, TurnError, TurnOutcome


cli_app_module = importlib.import_module("baton.cli.app")


@pytest.fixture(autouse=True)
def quiet_cli(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(cli_app_module, "configure_logging", lambda **_kwargs: None)
    monkeypatch.setenv("BATON_CONFIG_FILE", str(tmp_path / "missing.toml"))
    monkeypatch.delenv("BATON_BACKEND", raising=False)
    monkeypatch.delenv("BATON_MAX_ITERATIONS", raising=False)
    monkeypatch.chdir(tmp_path)


def test_run_command_streams_echo_reply(tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli_app_module.app, ["run", "hello cli", "--workspace", str(tmp_path), "--backend", "echo"])

    assert result.exit_code == 0
    assert "hello cli" in result.output


def test_unknown_backend_is_configuration_error(tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli_app_module.app, ["run", "hi", "--workspace", str(tmp_path), "--backend", "nope"])

    assert result.exit_code == 2
    assert "configuration error" in result.output
    assert "unknown backend 'nope'" in result.output


def test_invalid_settings_exit_with_code_2(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BATON_MAX_ITERATIONS", "0")
    runner = CliRunner()

    result = runner.invoke(cli_app_module.app, ["tools", "--workspace", str(tmp_path)])

    assert result.exit_code == 2
    assert "max_iterations" in result.output


def test_tools_command_lists_builtins(tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli_app_module.app, ["tools", "--workspace", str(tmp_path)])

    assert result.exit_code == 0
    for name in ("bash", "edit", "glob", "grep", "read", "write"):
        assert name in result.output


def test_hooks_command_without_plugins(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(cli_app_module.BatonFramework, "load_hooks", lambda self: 0)
    runner = CliRunner()

    result = runner.invoke(cli_app_module.app, ["hooks", "--workspace", str(tmp_path)])

    assert result.exit_code == 0
    assert "(no hook implementations)" in result.output


def test_chat_command_runs_loop(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    called: dict[str, object] = {}

    async def _fake_chat_loop(framework, renderer) -> None:
        called["workspace"] = framework.workspace
        called["backend"] = framework.backend.name

    monkeypatch.setattr(cli_app_module, "_chat_loop", _fake_chat_loop)
    runner = CliRunner()

    result = runner.invoke(cli_app_module.app, ["chat", "--workspace", str(tmp_path)])

    assert result.exit_code == 0
    assert called == {"workspace": tmp_path.resolve(), "backend": "echo"}


def test_renderer_prints_feed_events() -> None:
    console = Console(file=io.StringIO(), width=120, color_system=None)
    renderer = Renderer(console)
    outcome = TurnOutcome(
        final_text="partial",
        messages_appended=[],
        stop_reason=StopReason.FAILED,
        error=TurnError("rate_limit", "slow down"),
        warnings=["baton_pre_tool_use:audit: disk full"],
    )

    renderer.handle(TextDelta("partial"))
    renderer.handle(ToolCallAnnounced("call_1", "read", {"path": "a.txt"}))
    renderer.handle(ToolResultRecorded("call_1", "read", "[contents]", False))
    renderer.handle(TurnFinished(outcome))

    lines = console.file.getvalue().splitlines()
    assert lines[0] == "partial"
    assert lines[1] == '> read({"path": "a.txt"})'
    assert lines[2] == "< read ok [contents]"
    assert lines[3] == "warning: baton_pre_tool_use:audit: disk full"
    assert lines[4] == "Error: rate_limit: slow down"
