"""Unified tool registry."""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterable
from types import MappingProxyType
from typing import Any

from loguru import logger
from pydantic import BaseModel

from baton.errors import ToolNotFoundError
from baton.tools.base import FunctionTool, Tool, ToolHandler, ToolOutput, tool_spec
from baton.types import ToolSpec


def _shorten_text(text: str, width: int = 30, placeholder: str = "...") -> str:
    """Shorten text to width characters, cutting in the middle of words if needed."""
    if len(text) <= width:
        return text

    available = width - len(placeholder)
    if available <= 0:
        return placeholder

    return text[:available] + placeholder


def _render_params(input: Any) -> str:  # noqa: A002
    if not isinstance(input, dict):
        return _shorten_text(repr(input))
    params: list[str] = []
    for key, value in input.items():
        try:
            rendered = json.dumps(value, ensure_ascii=False)
        except TypeError:
            rendered = repr(value)
        params.append(f"{key}={_shorten_text(rendered)}")
    return ", ".join(params)


class ToolRegistry:
    """Registry for built-in tools and tools contributed by remote plugins.

    Built-in tools shadow remote tools of the same name. Remote tools are
    grouped per plugin so a plugin can be connected or dropped as a unit.
    """

    def __init__(self) -> None:
        self._builtins: dict[str, Tool] = {}
        self._remote: dict[str, dict[str, Tool]] = {}

    def add(self, tool: Tool) -> None:
        self._builtins[tool.name] = tool

    def register(
        self,
        *,
        name: str,
        description: str,
        model: type[BaseModel],
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator registering ``handler(params)`` as a built-in tool."""

        def _decorator(handler: ToolHandler) -> ToolHandler:
            self.add(FunctionTool(name, description, model, handler))
            return handler

        return _decorator

    def add_plugin(self, plugin: str, tools: Iterable[Tool]) -> None:
        self._remote[plugin] = {tool.name: tool for tool in tools}

    def remove_plugin(self, plugin: str) -> None:
        self._remote.pop(plugin, None)

    def plugins(self) -> list[str]:
        return sorted(self._remote)

    def has(self, name: str) -> bool:
        return self.resolve(name) is not None

    def resolve(self, name: str) -> Tool | None:
        tool = self._builtins.get(name)
        if tool is not None:
            return tool
        for plugin in sorted(self._remote):
            tool = self._remote[plugin].get(name)
            if tool is not None:
                return tool
        return None

    def require(self, name: str) -> Tool:
        tool = self.resolve(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def tools(self) -> list[Tool]:
        merged: dict[str, Tool] = {}
        for plugin in sorted(self._remote, reverse=True):
            merged.update(self._remote[plugin])
        merged.update(self._builtins)
        return [merged[name] for name in sorted(merged)]

    def catalogue(self) -> tuple[ToolSpec, ...]:
        return tuple(tool_spec(tool) for tool in self.tools())

    def snapshot(self) -> ToolRegistry:
        """Frozen copy used for the duration of one turn."""
        frozen = ToolRegistry()
        frozen._builtins = dict(self._builtins)
        frozen._remote = {plugin: dict(tools) for plugin, tools in self._remote.items()}
        return frozen

    def view(self) -> MappingProxyType[str, Tool]:
        return MappingProxyType({tool.name: tool for tool in self.tools()})

    async def execute(self, tool: Tool, input: Any, *, call_id: str = "-") -> ToolOutput:  # noqa: A002
        logger.info("tool.call.start name={} call_id={} {{ {} }}", tool.name, call_id, _render_params(input))
        start = time.monotonic()
        try:
            return await tool.run(input)
        except Exception:
            logger.exception("tool.call.error name={} call_id={}", tool.name, call_id)
            raise
        finally:
            duration = time.monotonic() - start
            logger.info("tool.call.end name={} call_id={} duration={:.3f}ms", tool.name, call_id, duration * 1000)

    def __len__(self) -> int:
        return len(self.tools())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has(name)
