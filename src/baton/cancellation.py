"""Cooperative cancellation scoped to one turn."""

from __future__ import annotations

import asyncio

from loguru import logger


class CancellationToken:
    """One-shot signal shared by the turn, its backend stream and its tool tasks.

    The token may be signalled from any coroutine on the loop, or from another
    thread through :meth:`cancel_threadsafe` (e.g. a terminal interrupt handler).
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.info("turn.cancel_requested reason={}", reason)

    def cancel_threadsafe(self, reason: str = "cancelled") -> None:
        if self._loop is None:
            self.cancel(reason)
            return
        self._loop.call_soon_threadsafe(self.cancel, reason)

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled}, reason={self._reason!r})"
