"""Append-only conversation log."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import overload

from baton.types import Message, ToolResultContent, ToolUseContent


class Transcript:
    """Ordered message history owned by exactly one session.

    Insertion order is conversational order and is the exact prefix sent on
    the next backend call. Entries are never mutated or removed.
    """

    def __init__(self, messages: Iterable[Message] | None = None) -> None:
        self._messages: list[Message] = []
        self._ids: set[str] = set()
        for message in messages or ():
            self.append(message)

    def append(self, message: Message) -> Message:
        if message.id in self._ids:
            raise ValueError(f"message already recorded: {message.id}")
        self._messages.append(message)
        self._ids.add(message.id)
        return message

    def extend(self, messages: Iterable[Message]) -> None:
        for message in messages:
            self.append(message)

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def since(self, index: int) -> list[Message]:
        return self._messages[index:]

    def pending_tool_uses(self) -> list[str]:
        """Call ids that have a ToolUse entry but no ToolResult yet."""
        open_calls: dict[str, None] = {}
        for message in self._messages:
            content = message.content
            if isinstance(content, ToolUseContent):
                open_calls[content.call_id] = None
            elif isinstance(content, ToolResultContent):
                open_calls.pop(content.call_id, None)
        return list(open_calls)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    @overload
    def __getitem__(self, index: int) -> Message: ...

    @overload
    def __getitem__(self, index: slice) -> list[Message]: ...

    def __getitem__(self, index: int | slice) -> Message | list[Message]:
        return self._messages[index]

    def __repr__(self) -> str:
        return f"Transcript(messages={len(self._messages)})"
