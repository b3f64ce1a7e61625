"""Canonical turn events and the live feed consumed by presentation layers."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from baton.orchestrator import TurnOutcome


class CompletionReason(StrEnum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"


class StreamErrorKind(StrEnum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    INTERRUPTED = "interrupted"
    AUTHENTICATION = "authentication"
    INVALID_REQUEST = "invalid_request"
    INVALID_RESPONSE = "invalid_response"
    UNKNOWN = "unknown"

    @property
    def transient(self) -> bool:
        return self in _TRANSIENT_KINDS


_TRANSIENT_KINDS = frozenset({StreamErrorKind.NETWORK, StreamErrorKind.RATE_LIMIT, StreamErrorKind.INTERRUPTED})


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallAnnounced:
    call_id: str
    tool_name: str
    input: Any = field(default_factory=dict)


@dataclass(frozen=True)
class TurnComplete:
    reason: CompletionReason = CompletionReason.END_TURN


@dataclass(frozen=True)
class StreamError:
    kind: StreamErrorKind
    message: str = ""

    @property
    def transient(self) -> bool:
        return self.kind.transient


type TurnEvent = TextDelta | ToolCallAnnounced | TurnComplete | StreamError
TERMINAL_EVENTS = (TurnComplete, StreamError)


@dataclass(frozen=True)
class ToolResultRecorded:
    """A ToolResult message was appended to the transcript."""

    call_id: str
    tool_name: str
    output: str
    is_error: bool


@dataclass(frozen=True)
class TurnFinished:
    outcome: TurnOutcome


type FeedEvent = TextDelta | ToolCallAnnounced | ToolResultRecorded | TurnFinished
type FeedListener = Callable[[FeedEvent], None]

_CLOSED = object()


class Subscription:
    """Async iterator over feed events published after subscribing."""

    def __init__(self, feed: EventFeed) -> None:
        self._feed = feed
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    def _push(self, event: FeedEvent) -> None:
        self._queue.put_nowait(event)

    def close(self) -> None:
        self._feed._unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    async def next(self, timeout_seconds: float | None = None) -> FeedEvent | None:
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout_seconds)
        except TimeoutError:
            return None
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> AsyncIterator[FeedEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[FeedEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


class EventFeed:
    """Read-only fan-out of live turn events."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._listeners: list[FeedListener] = []

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        self._subscriptions.append(subscription)
        return subscription

    def add_listener(self, listener: FeedListener) -> Callable[[], None]:
        """Register a synchronous callback; returns a function that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def publish(self, event: FeedEvent) -> None:
        for subscription in list(self._subscriptions):
            subscription._push(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.opt(exception=True).warning("feed.listener_failed event={}", type(event).__name__)

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
