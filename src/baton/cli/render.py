"""Rich renderer for the live turn feed."""

from __future__ import annotations

import json
import threading
from typing import Any

from rich.console import Console
from rich.markup import escape

from baton.events import FeedEvent, TextDelta, ToolCallAnnounced, ToolResultRecorded, TurnFinished
from baton.orchestrator import StopReason

PREVIEW_CHARS = 200


def _preview(value: Any, limit: int = PREVIEW_CHARS) -> str:
    if not isinstance(value, str):
        try:
            value = json.dumps(value, ensure_ascii=False)
        except TypeError:
            value = repr(value)
    normalized = " ".join(value.split())
    if len(normalized) > limit:
        return normalized[:limit] + "..."
    return normalized


class Renderer:
    """CLI renderer using Rich for terminal output."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()
        self._print_lock = threading.Lock()
        self._mid_line = False

    def handle(self, event: FeedEvent) -> None:
        """Feed listener: render one live event."""
        if isinstance(event, TextDelta):
            with self._print_lock:
                self.console.print(escape(event.text), end="", soft_wrap=True)
                self._mid_line = not event.text.endswith("\n")
        elif isinstance(event, ToolCallAnnounced):
            self._print(f"[dim]> {escape(event.tool_name)}({escape(_preview(event.input))})[/dim]")
        elif isinstance(event, ToolResultRecorded):
            style = "red" if event.is_error else "green"
            status = "error" if event.is_error else "ok"
            preview = escape(_preview(event.output))
            self._print(f"[{style}]< {escape(event.tool_name)} {status}[/{style}] [dim]{preview}[/dim]")
        elif isinstance(event, TurnFinished):
            self.turn_finished(event)

    def turn_finished(self, event: TurnFinished) -> None:
        outcome = event.outcome
        self._end_line()
        for warning in outcome.warnings:
            self._print(f"[yellow]warning:[/yellow] {escape(warning)}")
        if outcome.stop_reason is StopReason.COMPLETED:
            return
        if outcome.error is not None:
            self.error(str(outcome.error))
        else:
            self._print(f"[yellow]turn stopped: {outcome.stop_reason.value}[/yellow]")

    def error(self, message: str) -> None:
        self._print(f"[bold red]Error:[/bold red] {escape(message)}")

    def welcome(self, workspace: str, backend: str, tools: list[str]) -> None:
        self._print("[bold blue]Baton[/bold blue] - type /quit to exit, Ctrl-C cancels a running turn")
        self._print(f"[bold]Working directory:[/bold] [cyan]{escape(workspace)}[/cyan]")
        self._print(f"[bold]Backend:[/bold] [magenta]{escape(backend)}[/magenta]")
        if tools:
            self._print(f"[bold]Available tools:[/bold] [green]{escape(', '.join(tools))}[/green]")

    def _end_line(self) -> None:
        with self._print_lock:
            if self._mid_line:
                self.console.print()
                self._mid_line = False

    def _print(self, message: str) -> None:
        self._end_line()
        with self._print_lock:
            self.console.print(message)
