"""Tool capability and the pydantic-backed function tool."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ValidationError

from baton.errors import ToolExecutionError
from baton.types import ToolSpec


@dataclass(frozen=True)
class ToolOutput:
    output: str
    is_error: bool = False

    @classmethod
    def error(cls, message: str) -> ToolOutput:
        return cls(message, is_error=True)


@runtime_checkable
class Tool(Protocol):
    """Anything the dispatcher can execute by name."""

    name: str
    description: str
    input_schema: dict[str, Any]
    source: str

    async def run(self, input: Any) -> ToolOutput: ...  # noqa: A002


def tool_spec(tool: Tool) -> ToolSpec:
    return ToolSpec(
        name=tool.name,
        description=tool.description,
        input_schema=tool.input_schema,
        source=tool.source,
    )


type ToolHandler = Callable[[Any], Any] | Callable[[Any], Awaitable[Any]]


class FunctionTool:
    """Wrap a handler whose single argument is a pydantic model.

    Synchronous handlers run in a worker thread; if the caller stops waiting
    the thread is left to finish on its own and its result is discarded.
    ``ToolExecutionError`` and ``OSError`` raised by the handler become error
    outputs, anything else propagates to the dispatcher.
    """

    def __init__(
        self,
        name: str,
        description: str,
        model: type[BaseModel],
        handler: ToolHandler,
        *,
        source: str = "builtin",
    ) -> None:
        self.name = name
        self.description = description
        self.model = model
        self.handler = handler
        self.source = source
        self.input_schema = model.model_json_schema()

    async def run(self, input: Any) -> ToolOutput:  # noqa: A002
        try:
            params = self.model.model_validate(input if input is not None else {})
        except ValidationError as exc:
            return ToolOutput.error(f"invalid input for {self.name}: {_first_errors(exc)}")

        try:
            if inspect.iscoroutinefunction(self.handler):
                value = await self.handler(params)
            else:
                value = await asyncio.to_thread(self.handler, params)
        except (ToolExecutionError, OSError) as exc:
            return ToolOutput.error(str(exc))
        if isinstance(value, ToolOutput):
            return value
        return ToolOutput(str(value))

    def __repr__(self) -> str:
        return f"FunctionTool(name={self.name!r}, source={self.source!r})"


def _first_errors(error: ValidationError, limit: int = 3) -> str:
    rows = []
    for item in error.errors()[:limit]:
        location = ".".join(str(part) for part in item.get("loc", ())) or "input"
        rows.append(f"{location}: {item.get('msg', 'invalid')}")
    return "; ".join(rows)
