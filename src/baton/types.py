"""Conversation records shared by every layer of the turn engine."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any

type JsonValue = Any


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass(frozen=True)
class TextContent:
    """Plain text payload."""

    text: str


@dataclass(frozen=True)
class ToolUseContent:
    """Tool invocation requested by the model."""

    call_id: str
    tool_name: str
    input: JsonValue = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultContent:
    """Terminal result of one tool invocation."""

    call_id: str
    output: str
    is_error: bool = False


type Content = TextContent | ToolUseContent | ToolResultContent


def _new_message_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _freeze(metadata: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(metadata or {}))


@dataclass(frozen=True)
class Message:
    """One immutable transcript entry."""

    role: Role
    content: Content
    id: str = field(default_factory=_new_message_id)
    created_at: datetime = field(default_factory=_utcnow)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    @classmethod
    def user(cls, text: str, **metadata: Any) -> Message:
        return cls(Role.USER, TextContent(text), metadata=metadata)

    @classmethod
    def assistant(cls, text: str, **metadata: Any) -> Message:
        return cls(Role.ASSISTANT, TextContent(text), metadata=metadata)

    @classmethod
    def system(cls, text: str, **metadata: Any) -> Message:
        return cls(Role.SYSTEM, TextContent(text), metadata=metadata)

    @classmethod
    def tool_use(cls, call_id: str, tool_name: str, input: JsonValue, **metadata: Any) -> Message:  # noqa: A002
        return cls(Role.ASSISTANT, ToolUseContent(call_id, tool_name, input), metadata=metadata)

    @classmethod
    def tool_result(cls, call_id: str, output: str, is_error: bool = False, **metadata: Any) -> Message:
        return cls(Role.TOOL, ToolResultContent(call_id, output, is_error), metadata=metadata)

    @property
    def text(self) -> str | None:
        if isinstance(self.content, TextContent):
            return self.content.text
        if isinstance(self.content, ToolResultContent):
            return self.content.output
        return None

    @property
    def is_tool_use(self) -> bool:
        return isinstance(self.content, ToolUseContent)

    @property
    def is_tool_result(self) -> bool:
        return isinstance(self.content, ToolResultContent)

    @property
    def is_error(self) -> bool:
        return isinstance(self.content, ToolResultContent) and self.content.is_error

    def signature(self) -> tuple[str, Content]:
        """Identity of the message without its id and timestamp."""
        return (self.role.value, self.content)


@dataclass(frozen=True)
class ToolSpec:
    """Catalogue entry advertised to the backend."""

    name: str
    description: str
    input_schema: Mapping[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    source: str = "builtin"


@dataclass(frozen=True)
class ModelParams:
    model: str = "default"
    max_tokens: int = 4096
    temperature: float = 0.7
    system_prompt: str | None = None


@dataclass(frozen=True)
class TurnRequest:
    """Immutable snapshot sent on one backend call."""

    messages: tuple[Message, ...]
    tools: tuple[ToolSpec, ...] = ()
    params: ModelParams = field(default_factory=ModelParams)
    iteration: int = 1

    def tool_names(self) -> list[str]:
        return [tool.name for tool in self.tools]
