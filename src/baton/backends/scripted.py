"""Deterministic in-process backends."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any

from baton.events import CompletionReason, TextDelta, TurnComplete
from baton.types import Role, TextContent, TurnRequest


@dataclass(frozen=True)
class Pause:
    """Script step that suspends the stream for ``seconds``."""

    seconds: float


@dataclass(frozen=True)
class Hang:
    """Script step that never yields; only cancellation ends it."""


@dataclass(frozen=True)
class Raise:
    """Script step that raises ``error`` from the stream."""

    error: BaseException


type ScriptStep = Any
type Script = Sequence[ScriptStep]


class ScriptedBackend:
    """Replays one fixed script per backend call.

    Script items are yielded verbatim except for the control steps
    :class:`Pause`, :class:`Hang` and :class:`Raise`. Once every script has
    been used, the last one is replayed.
    """

    name = "scripted"

    def __init__(self, scripts: Sequence[Script], *, wire_format: str = "canonical") -> None:
        if not scripts:
            raise ValueError("at least one script is required")
        self._scripts = [list(script) for script in scripts]
        self.wire_format = wire_format
        self.requests: list[TurnRequest] = []
        self.closed_streams = 0

    @property
    def calls(self) -> int:
        return len(self.requests)

    def stream(self, request: TurnRequest) -> AsyncIterator[Any]:
        index = min(len(self.requests), len(self._scripts) - 1)
        self.requests.append(request)
        return self._play(self._scripts[index])

    async def _play(self, script: list[ScriptStep]) -> AsyncIterator[Any]:
        try:
            for step in script:
                if isinstance(step, Pause):
                    await asyncio.sleep(step.seconds)
                elif isinstance(step, Hang):
                    await asyncio.Event().wait()
                elif isinstance(step, Raise):
                    raise step.error
                else:
                    yield step
        finally:
            self.closed_streams += 1


class EchoBackend:
    """Offline backend that answers with the latest user message."""

    name = "echo"
    wire_format = "canonical"

    async def stream(self, request: TurnRequest) -> AsyncIterator[Any]:
        prompt = ""
        for message in reversed(request.messages):
            if message.role is Role.USER and isinstance(message.content, TextContent):
                prompt = message.content.text
                break
        yield TextDelta(prompt)
        yield TurnComplete(CompletionReason.END_TURN)
