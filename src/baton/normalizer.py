"""Turn backend-native response streams into canonical turn events.

Each backend declares a wire format; the format's parser maps raw chunks to
:class:`~baton.events.TurnEvent` values and :func:`normalize` wraps it with the
guarantees the orchestrator relies on:

* events are produced lazily, so a tool call can be acted on before the
  stream ends;
* every announced call carries a ``call_id`` unique within the turn;
* the sequence ends with exactly one ``TurnComplete`` or ``StreamError``;
  a stream that stops without a terminal event is ``StreamError(interrupted)``.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from loguru import logger

from baton.errors import BackendError
from baton.events import (
    TERMINAL_EVENTS,
    CompletionReason,
    StreamError,
    StreamErrorKind,
    TextDelta,
    ToolCallAnnounced,
    TurnComplete,
    TurnEvent,
)


def field_of(chunk: Any, key: str, default: Any = None) -> Any:
    """Read a field from mapping-like or attribute-based chunks."""

    if isinstance(chunk, Mapping):
        return chunk.get(key, default)
    return getattr(chunk, key, default)


class CallIdAllocator:
    """Hands out call ids that stay unique for the whole turn."""

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self._counter = 0

    def claim(self, proposed: str | None) -> str:
        if proposed and proposed not in self._seen:
            self._seen.add(proposed)
            return proposed
        while True:
            self._counter += 1
            candidate = f"call_{self._counter}"
            if candidate not in self._seen:
                self._seen.add(candidate)
                if proposed:
                    logger.warning("stream.duplicate_call_id proposed={} assigned={}", proposed, candidate)
                return candidate


class WireFormat(Protocol):
    """Parser from one backend-native chunk vocabulary to turn events."""

    name: str

    def parse(self, raw_stream: AsyncIterator[Any]) -> AsyncIterator[TurnEvent]: ...


class WireFormatRegistry:
    def __init__(self) -> None:
        self._formats: dict[str, WireFormat] = {}

    def register(self, wire_format: WireFormat) -> None:
        self._formats[wire_format.name] = wire_format

    def get(self, name: str) -> WireFormat:
        try:
            return self._formats[name]
        except KeyError:
            raise KeyError(f"unknown wire format: {name}") from None

    def names(self) -> list[str]:
        return sorted(self._formats)


def classify_exception(error: BaseException) -> StreamError:
    """Map an exception raised by a backend stream to a stream error."""

    if isinstance(error, BackendError):
        return StreamError(error.kind, error.message or str(error))
    if isinstance(error, TimeoutError | ConnectionError):
        return StreamError(StreamErrorKind.NETWORK, str(error) or type(error).__name__)
    if isinstance(error, OSError):
        return StreamError(StreamErrorKind.NETWORK, str(error))
    return StreamError(StreamErrorKind.UNKNOWN, f"{type(error).__name__}: {error}")


def parse_arguments(raw: Any) -> Any:
    """Decode tool-call arguments; undecodable text is passed through verbatim."""

    if raw is None:
        return {}
    if not isinstance(raw, str):
        return raw
    stripped = raw.strip()
    if not stripped:
        return {}
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return raw


async def normalize(
    raw_stream: AsyncIterator[Any],
    wire_format: str | WireFormat = "canonical",
    *,
    call_ids: CallIdAllocator | None = None,
    formats: WireFormatRegistry | None = None,
) -> AsyncIterator[TurnEvent]:
    """Yield canonical events for one backend call."""

    parser = wire_format if not isinstance(wire_format, str) else (formats or WIRE_FORMATS).get(wire_format)
    allocator = call_ids or CallIdAllocator()
    events = parser.parse(raw_stream)
    try:
        try:
            async for event in events:
                if isinstance(event, ToolCallAnnounced):
                    call_id = allocator.claim(event.call_id)
                    yield ToolCallAnnounced(call_id=call_id, tool_name=event.tool_name, input=event.input)
                    continue
                if isinstance(event, TERMINAL_EVENTS):
                    yield event
                    return
                yield event
        except Exception as exc:
            logger.opt(exception=True).warning("stream.raw_error format={}", parser.name)
            yield classify_exception(exc)
            return
        yield StreamError(StreamErrorKind.INTERRUPTED, "stream ended without a completion signal")
    finally:
        await _aclose(events)
        await _aclose(raw_stream)


async def _aclose(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.opt(exception=True).debug("stream.close_failed")


class CanonicalFormat:
    """Backends that already speak turn events."""

    name = "canonical"

    async def parse(self, raw_stream: AsyncIterator[Any]) -> AsyncIterator[TurnEvent]:
        async for item in raw_stream:
            if isinstance(item, TextDelta | ToolCallAnnounced | TurnComplete | StreamError):
                yield item
                continue
            yield StreamError(StreamErrorKind.INVALID_RESPONSE, f"unexpected chunk: {type(item).__name__}")
            return


_OPENAI_FINISH_REASONS = {
    "stop": CompletionReason.END_TURN,
    "tool_calls": CompletionReason.TOOL_USE,
    "function_call": CompletionReason.TOOL_USE,
    "length": CompletionReason.MAX_TOKENS,
}


@dataclass
class _PendingCall:
    call_id: str | None = None
    name: str = ""
    arguments: list[str] = field(default_factory=list)

    def announce(self) -> ToolCallAnnounced:
        return ToolCallAnnounced(
            call_id=self.call_id or "",
            tool_name=self.name,
            input=parse_arguments("".join(self.arguments)),
        )


class OpenAIChatFormat:
    """Chat-completions chunks with fragmentary ``delta.tool_calls``.

    A call is announced once a fragment for a higher index arrives or the
    choice reports a finish reason, whichever happens first.
    """

    name = "openai-chat"

    async def parse(self, raw_stream: AsyncIterator[Any]) -> AsyncIterator[TurnEvent]:
        pending: dict[int, _PendingCall] = {}
        announced: set[int] = set()

        def _flush(below: int | None = None) -> list[ToolCallAnnounced]:
            ready = sorted(idx for idx in pending if idx not in announced and (below is None or idx < below))
            calls: list[ToolCallAnnounced] = []
            for idx in ready:
                announced.add(idx)
                calls.append(pending[idx].announce())
            return calls

        async for chunk in raw_stream:
            error = field_of(chunk, "error")
            if error:
                yield _openai_error(error)
                return
            for choice in field_of(chunk, "choices") or []:
                delta = field_of(choice, "delta") or {}
                content = field_of(delta, "content")
                if content:
                    yield TextDelta(str(content))
                for fragment in field_of(delta, "tool_calls") or []:
                    index = int(field_of(fragment, "index", 0) or 0)
                    for call in _flush(below=index):
                        yield call
                    entry = pending.setdefault(index, _PendingCall())
                    if call_id := field_of(fragment, "id"):
                        entry.call_id = str(call_id)
                    function = field_of(fragment, "function") or {}
                    if name := field_of(function, "name"):
                        entry.name = str(name)
                    if arguments := field_of(function, "arguments"):
                        entry.arguments.append(str(arguments))
                finish_reason = field_of(choice, "finish_reason")
                if finish_reason:
                    for call in _flush():
                        yield call
                    yield TurnComplete(_OPENAI_FINISH_REASONS.get(str(finish_reason), CompletionReason.END_TURN))
                    return


def _openai_error(error: Any) -> StreamError:
    code = str(field_of(error, "code", "") or field_of(error, "type", "") or "")
    message = str(field_of(error, "message", "") or error)
    if code in {"rate_limit_exceeded", "insufficient_quota"} or code == "429":
        return StreamError(StreamErrorKind.RATE_LIMIT, message)
    if code in {"invalid_api_key", "authentication_error"} or code in {"401", "403"}:
        return StreamError(StreamErrorKind.AUTHENTICATION, message)
    if code in {"invalid_request_error", "context_length_exceeded"} or code == "400":
        return StreamError(StreamErrorKind.INVALID_REQUEST, message)
    if code in {"server_error", "timeout"}:
        return StreamError(StreamErrorKind.NETWORK, message)
    return StreamError(StreamErrorKind.UNKNOWN, message)


_ANTHROPIC_ERROR_KINDS = {
    "rate_limit_error": StreamErrorKind.RATE_LIMIT,
    "overloaded_error": StreamErrorKind.RATE_LIMIT,
    "authentication_error": StreamErrorKind.AUTHENTICATION,
    "permission_error": StreamErrorKind.AUTHENTICATION,
    "invalid_request_error": StreamErrorKind.INVALID_REQUEST,
    "not_found_error": StreamErrorKind.INVALID_REQUEST,
    "api_error": StreamErrorKind.NETWORK,
}


class AnthropicMessagesFormat:
    """Messages-API server-sent events, one dict per event."""

    name = "anthropic-messages"

    async def parse(self, raw_stream: AsyncIterator[Any]) -> AsyncIterator[TurnEvent]:
        blocks: dict[int, _PendingCall] = {}
        initial_inputs: dict[int, Any] = {}
        stop_reason: str | None = None

        async for event in raw_stream:
            event_type = field_of(event, "type")
            index = int(field_of(event, "index", 0) or 0)
            if event_type == "content_block_start":
                block = field_of(event, "content_block") or {}
                if field_of(block, "type") == "tool_use":
                    blocks[index] = _PendingCall(call_id=field_of(block, "id"), name=str(field_of(block, "name", "")))
                    initial_inputs[index] = field_of(block, "input")
                elif text := field_of(block, "text"):
                    yield TextDelta(str(text))
            elif event_type == "content_block_delta":
                delta = field_of(event, "delta") or {}
                delta_type = field_of(delta, "type")
                if delta_type == "text_delta":
                    if text := field_of(delta, "text"):
                        yield TextDelta(str(text))
                elif delta_type == "input_json_delta" and index in blocks:
                    blocks[index].arguments.append(str(field_of(delta, "partial_json", "")))
            elif event_type == "content_block_stop":
                call = blocks.pop(index, None)
                if call is None:
                    continue
                initial = initial_inputs.pop(index, None)
                if not "".join(call.arguments).strip() and initial:
                    yield ToolCallAnnounced(call_id=call.call_id or "", tool_name=call.name, input=initial)
                else:
                    yield call.announce()
            elif event_type == "message_delta":
                delta = field_of(event, "delta") or {}
                stop_reason = field_of(delta, "stop_reason") or stop_reason
            elif event_type == "message_stop":
                yield TurnComplete(_anthropic_reason(stop_reason))
                return
            elif event_type == "error":
                error = field_of(event, "error") or {}
                kind = _ANTHROPIC_ERROR_KINDS.get(str(field_of(error, "type", "")), StreamErrorKind.UNKNOWN)
                yield StreamError(kind, str(field_of(error, "message", "")))
                return


def _anthropic_reason(stop_reason: str | None) -> CompletionReason:
    try:
        return CompletionReason(stop_reason or CompletionReason.END_TURN)
    except ValueError:
        return CompletionReason.END_TURN


WIRE_FORMATS = WireFormatRegistry()
WIRE_FORMATS.register(CanonicalFormat())
WIRE_FORMATS.register(OpenAIChatFormat())
WIRE_FORMATS.register(AnthropicMessagesFormat())
