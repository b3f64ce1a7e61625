from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict

from baton.tools.base import FunctionTool
from baton.tools.registry import ToolRegistry

type Handler = Callable[[dict[str, Any]], Awaitable[Any]]


class AnyInput(BaseModel):
    model_config = ConfigDict(extra="allow")


def make_tool(name: str, handler: Handler) -> FunctionTool:
    async def _run(params: AnyInput) -> Any:
        return await handler(params.model_dump())

    return FunctionTool(name, f"{name} test tool", AnyInput, _run)


def make_registry(**handlers: Handler) -> ToolRegistry:
    registry = ToolRegistry()
    for name, handler in handlers.items():
        registry.add(make_tool(name, handler))
    return registry
