"""Expose tools to other processes over line-delimited JSON-RPC."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Iterable
from typing import Any, TextIO

from loguru import logger
from pydantic import ValidationError

from baton.tools.base import Tool
from baton.tools.remote import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    CallToolParams,
    CallToolResult,
    ContentItem,
    JsonRpcRequest,
    JsonRpcResponse,
    RemoteToolInfo,
)


class PluginServer:
    """Serve ``tools/list`` and ``tools/call`` for a set of tools."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    async def handle_request(self, request: JsonRpcRequest | dict[str, Any]) -> JsonRpcResponse:
        if not isinstance(request, JsonRpcRequest):
            try:
                request = JsonRpcRequest.model_validate(request)
            except ValidationError as exc:
                return JsonRpcResponse.failure(None, INVALID_PARAMS, f"Invalid request: {exc.error_count()} errors")

        if request.method == "tools/list":
            return JsonRpcResponse(id=request.id, result=self._list_tools())
        if request.method == "tools/call":
            return await self._call_tool(request)
        return JsonRpcResponse.failure(request.id, METHOD_NOT_FOUND, "Method not found")

    def _list_tools(self) -> dict[str, Any]:
        infos = [
            RemoteToolInfo(name=tool.name, description=tool.description, input_schema=tool.input_schema)
            for tool in sorted(self._tools.values(), key=lambda item: item.name)
        ]
        return {"tools": [info.model_dump(by_alias=True) for info in infos]}

    async def _call_tool(self, request: JsonRpcRequest) -> JsonRpcResponse:
        if request.params is None:
            return JsonRpcResponse.failure(request.id, INVALID_PARAMS, "Invalid params")
        try:
            params = CallToolParams.model_validate(request.params)
        except ValidationError:
            return JsonRpcResponse.failure(request.id, INVALID_PARAMS, "Invalid tool call")

        tool = self._tools.get(params.name)
        if tool is None:
            return JsonRpcResponse.failure(request.id, INVALID_PARAMS, f"Tool not found: {params.name}")

        try:
            output = await tool.run(params.arguments)
        except Exception as exc:
            logger.opt(exception=True).warning("plugin.server.tool_failed name={}", params.name)
            return JsonRpcResponse.failure(request.id, INTERNAL_ERROR, str(exc) or type(exc).__name__)

        result = CallToolResult(content=[ContentItem(type="text", text=output.output)], is_error=output.is_error)
        return JsonRpcResponse(id=request.id, result=result.model_dump(by_alias=True, exclude_none=True))

    async def handle_line(self, line: str) -> str:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            response = JsonRpcResponse.failure(None, PARSE_ERROR, "Parse error")
        else:
            response = await self.handle_request(payload)
        return response.model_dump_json(exclude_none=True)

    async def serve_stdio(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        """Answer one request per input line until end of input."""

        source = stdin or sys.stdin
        sink = stdout or sys.stdout
        while True:
            line = await asyncio.to_thread(source.readline)
            if not line:
                return
            if not line.strip():
                continue
            sink.write(await self.handle_line(line) + "\n")
            sink.flush()
