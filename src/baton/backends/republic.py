"""Republic-driven backend emitting chat-completion chunks."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from loguru import logger
from republic import LLM, Tool

from baton.errors import BackendError, ConfigurationError
from baton.events import StreamErrorKind
from baton.normalizer import field_of
from baton.types import Message, Role, TextContent, ToolResultContent, ToolSpec, ToolUseContent, TurnRequest

if TYPE_CHECKING:
    from baton.config import Settings

MODEL_NOT_CONFIGURED_ERROR = "Model not configured. Set BATON_MODEL (e.g., 'openai:gpt-4o-mini')."

_STATUS_KINDS = {
    400: StreamErrorKind.INVALID_REQUEST,
    401: StreamErrorKind.AUTHENTICATION,
    403: StreamErrorKind.AUTHENTICATION,
    404: StreamErrorKind.INVALID_REQUEST,
    408: StreamErrorKind.NETWORK,
    422: StreamErrorKind.INVALID_REQUEST,
    429: StreamErrorKind.RATE_LIMIT,
}
_KIND_TOKENS = (
    ("auth", StreamErrorKind.AUTHENTICATION),
    ("permission", StreamErrorKind.AUTHENTICATION),
    ("rate", StreamErrorKind.RATE_LIMIT),
    ("invalid", StreamErrorKind.INVALID_REQUEST),
    ("timeout", StreamErrorKind.NETWORK),
    ("connection", StreamErrorKind.NETWORK),
    ("network", StreamErrorKind.NETWORK),
)


class RepublicBackend:
    """Run one non-streamed Republic chat call per request in a worker thread.

    The response is replayed as ``openai-chat`` chunks. Closing the stream
    before the call returns detaches the worker and discards its response.
    """

    name = "republic"
    wire_format = "openai-chat"

    def __init__(self, llm: LLM) -> None:
        self._llm = llm

    async def stream(self, request: TurnRequest) -> AsyncIterator[Any]:
        messages = to_chat_messages(request)
        tools = [_republic_tool(spec) for spec in request.tools]
        logger.info("backend.republic.call iteration={} messages={}", request.iteration, len(messages))
        try:
            response = await asyncio.to_thread(
                self._llm.chat.raw,
                messages=messages,
                tools=tools,
                max_tokens=request.params.max_tokens,
                temperature=request.params.temperature,
            )
        except Exception as exc:
            raise classify_republic_error(exc) from exc
        for chunk in response_to_chunks(response):
            yield chunk


def build_republic_backend(settings: Settings) -> RepublicBackend:
    if not settings.model:
        raise ConfigurationError(MODEL_NOT_CONFIGURED_ERROR)
    llm = LLM(settings.model, api_key=settings.api_key, api_base=settings.api_base)
    return RepublicBackend(llm)


def _republic_tool(spec: ToolSpec) -> Tool:
    return Tool(
        name=spec.name,
        description=spec.description,
        parameters=dict(spec.input_schema),
        handler=None,
        context=False,
    )


def to_chat_messages(request: TurnRequest) -> list[dict[str, Any]]:
    """Encode the transcript prefix as chat-completion messages."""

    rendered: list[dict[str, Any]] = []
    if request.params.system_prompt:
        rendered.append({"role": "system", "content": request.params.system_prompt})
    for message in request.messages:
        _append_message(rendered, message)
    return rendered


def _append_message(rendered: list[dict[str, Any]], message: Message) -> None:
    content = message.content
    if isinstance(content, ToolUseContent):
        call = {
            "id": content.call_id,
            "type": "function",
            "function": {"name": content.tool_name, "arguments": _encode_arguments(content.input)},
        }
        previous = rendered[-1] if rendered else None
        if previous is not None and previous["role"] == "assistant":
            previous.setdefault("tool_calls", []).append(call)
        else:
            rendered.append({"role": "assistant", "content": None, "tool_calls": [call]})
        return
    if isinstance(content, ToolResultContent):
        rendered.append({"role": "tool", "tool_call_id": content.call_id, "content": content.output})
        return
    if isinstance(content, TextContent):
        role = Role.USER.value if message.role is Role.TOOL else message.role.value
        rendered.append({"role": role, "content": content.text})


def _encode_arguments(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def response_to_chunks(response: Any) -> list[dict[str, Any]]:
    """Split one chat-completion response into stream-shaped chunks."""

    if isinstance(response, str):
        return [
            {"choices": [{"index": 0, "delta": {"content": response}}]},
            {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
        ]
    choices = field_of(response, "choices") or []
    if not choices:
        raise BackendError(StreamErrorKind.INVALID_RESPONSE, "response has no choices")
    choice = choices[0]
    message = field_of(choice, "message") or {}
    chunks: list[dict[str, Any]] = []
    if text := field_of(message, "content"):
        chunks.append({"choices": [{"index": 0, "delta": {"content": text}}]})
    tool_calls = field_of(message, "tool_calls") or []
    for idx, call in enumerate(tool_calls):
        function = field_of(call, "function") or {}
        chunks.append(
            {
                "choices": [
                    {
                        "index": 0,
                        "delta": {
                            "tool_calls": [
                                {
                                    "index": idx,
                                    "id": field_of(call, "id"),
                                    "function": {
                                        "name": field_of(function, "name", ""),
                                        "arguments": field_of(function, "arguments", ""),
                                    },
                                }
                            ]
                        },
                    }
                ]
            }
        )
    finish_reason = field_of(choice, "finish_reason") or ("tool_calls" if tool_calls else "stop")
    chunks.append({"choices": [{"index": 0, "delta": {}, "finish_reason": finish_reason}]})
    return chunks


def classify_republic_error(error: Exception) -> BackendError:
    """Map Republic/provider exceptions onto backend error kinds."""

    status = getattr(error, "status_code", None) or getattr(getattr(error, "response", None), "status_code", None)
    if isinstance(status, int):
        if status in _STATUS_KINDS:
            return BackendError(_STATUS_KINDS[status], str(error))
        if status >= 500:
            return BackendError(StreamErrorKind.NETWORK, str(error))

    if isinstance(error, TimeoutError | ConnectionError):
        return BackendError(StreamErrorKind.NETWORK, str(error))

    kind = getattr(error, "kind", None)
    label = str(getattr(kind, "value", kind) or type(error).__name__).casefold()
    for token, mapped in _KIND_TOKENS:
        if token in label:
            return BackendError(mapped, str(getattr(error, "message", None) or error))
    return BackendError(StreamErrorKind.UNKNOWN, str(error))
