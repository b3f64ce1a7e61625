"""Typer commands for running turns from a terminal."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import Generator
from pathlib import Path

import typer
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.table import Table

from baton.cancellation import CancellationToken
from baton.cli.render import Renderer
from baton.config import load_settings
from baton.errors import ConfigurationError
from baton.framework import BatonFramework
from baton.logging_utils import LogProfile, configure_logging
from baton.orchestrator import TurnOutcome
from baton.tools.server import PluginServer

QUIT_COMMANDS = {"/quit", "/exit"}

app = typer.Typer(name="baton", help="Streaming, tool-calling turn engine.", add_completion=False)


def _load_framework(
    workspace: Path | None,
    backend: str | None = None,
    *,
    profile: LogProfile = "default",
    require_backend: bool = False,
) -> BatonFramework:
    overrides = {"backend": backend} if backend else {}
    try:
        settings = load_settings(**overrides)
        configure_logging(profile=profile, level=settings.log_level)
        framework = BatonFramework(workspace or Path.cwd(), settings)
        framework.load_hooks()
        if require_backend:
            _ = framework.backend
    except ConfigurationError as exc:
        typer.echo(f"configuration error: {exc}", err=True)
        raise typer.Exit(2) from exc
    return framework


@contextlib.contextmanager
def _interrupt_cancels(token: CancellationToken) -> Generator[None, None, None]:
    """Route SIGINT to the turn's token instead of raising KeyboardInterrupt."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
    except (NotImplementedError, RuntimeError):
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


async def _run_once(framework: BatonFramework, prompt: str, renderer: Renderer) -> TurnOutcome:
    remove_listener = framework.feed.add_listener(renderer.handle)
    await framework.connect_plugins()
    session = framework.create_session()
    try:
        token = CancellationToken()
        with _interrupt_cancels(token):
            return await framework.run_prompt(session, prompt, token)
    finally:
        await framework.close_session(session)
        await framework.aclose()
        remove_listener()


@app.command()
def run(
    prompt: str = typer.Argument(..., help="User message that opens the turn"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Working directory"),  # noqa: B008
    backend: str | None = typer.Option(None, "--backend", "-b", help="Backend name override"),
) -> None:
    """Run a single turn and stream its output."""

    framework = _load_framework(workspace, backend, require_backend=True)
    outcome = asyncio.run(_run_once(framework, prompt, Renderer()))
    if not outcome.ok:
        raise typer.Exit(1)


async def _chat_loop(framework: BatonFramework, renderer: Renderer) -> None:
    remove_listener = framework.feed.add_listener(renderer.handle)
    await framework.connect_plugins()
    session = framework.create_session()
    prompt_session: PromptSession[str] = PromptSession()
    renderer.welcome(str(framework.workspace), framework.backend.name, [tool.name for tool in framework.tools.tools()])
    try:
        while True:
            try:
                with patch_stdout(raw=True):
                    text = await prompt_session.prompt_async("> ")
            except KeyboardInterrupt:
                continue
            except EOFError:
                break
            text = text.strip()
            if not text:
                continue
            if text in QUIT_COMMANDS:
                break
            token = CancellationToken()
            with _interrupt_cancels(token):
                await framework.run_prompt(session, text, token)
    finally:
        await framework.close_session(session)
        await framework.aclose()
        remove_listener()


@app.command()
def chat(
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Working directory"),  # noqa: B008
    backend: str | None = typer.Option(None, "--backend", "-b", help="Backend name override"),
) -> None:
    """Interactive multi-turn session."""

    framework = _load_framework(workspace, backend, profile="chat", require_backend=True)
    asyncio.run(_chat_loop(framework, Renderer()))


@app.command("tools")
def list_tools(
    workspace: Path | None = typer.Option(None, "--workspace", "-w"),  # noqa: B008
) -> None:
    """Show the tool catalogue, including configured plugins."""

    framework = _load_framework(workspace)

    async def _collect() -> list[tuple[str, str, str]]:
        await framework.connect_plugins()
        try:
            return [(tool.name, tool.source, tool.description) for tool in framework.tools.tools()]
        finally:
            await framework.aclose()

    table = Table("name", "source", "description")
    for row in asyncio.run(_collect()):
        table.add_row(*row)
    Console().print(table)
    for name, reason in framework.failed_plugins.items():
        typer.echo(f"plugin {name} unavailable: {reason}", err=True)


@app.command("hooks")
def list_hooks(
    workspace: Path | None = typer.Option(None, "--workspace", "-w"),  # noqa: B008
) -> None:
    """Show hook implementation mapping."""

    framework = _load_framework(workspace)
    report = framework.hook_report()
    if not report:
        typer.echo("(no hook implementations)")
        return
    for hook_name, plugin_names in report.items():
        typer.echo(f"{hook_name}: {', '.join(plugin_names)}")


@app.command("serve-tools")
def serve_tools(
    workspace: Path | None = typer.Option(None, "--workspace", "-w"),  # noqa: B008
) -> None:
    """Expose the built-in tools as a JSON-RPC plugin on stdin/stdout."""

    framework = _load_framework(workspace)
    server = PluginServer(framework.tools.tools())
    asyncio.run(server.serve_stdio())
