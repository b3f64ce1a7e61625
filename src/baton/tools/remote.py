"""JSON-RPC tool protocol and clients for out-of-process tool plugins."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Literal, Protocol

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from baton.errors import PluginError
from baton.tools.base import ToolOutput

if TYPE_CHECKING:
    from baton.tools.server import PluginServer

JSONRPC_VERSION = "2.0"
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
PARSE_ERROR = -32700
MAX_LINE_BYTES = 32 * 1024 * 1024


class JsonRpcError(BaseModel):
    code: int
    message: str
    data: Any | None = None


class JsonRpcRequest(BaseModel):
    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: int | str | None = None
    method: str
    params: dict[str, Any] | None = None


class JsonRpcResponse(BaseModel):
    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: int | str | None = None
    result: Any | None = None
    error: JsonRpcError | None = None

    @classmethod
    def failure(cls, request_id: int | str | None, code: int, message: str) -> JsonRpcResponse:
        return cls(id=request_id, error=JsonRpcError(code=code, message=message))


class RemoteToolInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        alias="inputSchema",
    )


class ContentItem(BaseModel):
    type: str = "text"
    text: str | None = None
    data: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")
    uri: str | None = None


class CallToolParams(BaseModel):
    name: str
    arguments: Any = Field(default_factory=dict)


class CallToolResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: list[ContentItem] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")

    def text(self) -> str:
        return "\n".join(item.text for item in self.content if item.type == "text" and item.text is not None)


class PluginClient(Protocol):
    name: str

    async def list_tools(self) -> list[RemoteToolInfo]: ...

    async def call_tool(self, name: str, arguments: Any) -> CallToolResult: ...

    async def close(self) -> None: ...


class _JsonRpcClient(ABC):
    """Shared ``tools/list`` and ``tools/call`` on top of one ``request`` primitive."""

    name: str

    @abstractmethod
    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any: ...

    async def list_tools(self) -> list[RemoteToolInfo]:
        result = await self.request("tools/list")
        try:
            return [RemoteToolInfo.model_validate(item) for item in (result or {}).get("tools", [])]
        except (ValidationError, AttributeError) as exc:
            raise PluginError(f"plugin {self.name} returned a malformed tool list: {exc}") from exc

    async def call_tool(self, name: str, arguments: Any) -> CallToolResult:
        result = await self.request("tools/call", {"name": name, "arguments": arguments})
        try:
            return CallToolResult.model_validate(result or {})
        except ValidationError as exc:
            raise PluginError(f"plugin {self.name} returned a malformed result: {exc}") from exc

    async def close(self) -> None:
        return None

    @staticmethod
    def _unwrap(response: JsonRpcResponse) -> Any:
        if response.error is not None:
            raise PluginError(response.error.message, code=response.error.code)
        return response.result


class LocalPluginClient(_JsonRpcClient):
    """Talk to a :class:`PluginServer` living in the same process."""

    def __init__(self, server: PluginServer, *, name: str = "local") -> None:
        self.name = name
        self._server = server
        self._ids = itertools.count(1)

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        request = JsonRpcRequest(id=next(self._ids), method=method, params=params)
        return self._unwrap(await self._server.handle_request(request))


class StdioPluginClient(_JsonRpcClient):
    """Line-delimited JSON-RPC over a child process's stdin/stdout.

    A request whose caller is cancelled is forgotten; a late response for it
    is dropped by the reader. Once the reader stops, pending and later
    requests fail with :class:`PluginError`.
    """

    def __init__(
        self,
        name: str,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        *,
        max_line_bytes: int = MAX_LINE_BYTES,
    ) -> None:
        self.name = name
        self._max_line_bytes = max_line_bytes
        self._command = command
        self._args = list(args)
        self._env = dict(env or {})
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[JsonRpcResponse]] = {}
        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()

    async def start(self) -> None:
        if self._process is not None:
            return
        self._process = await asyncio.create_subprocess_exec(
            self._command,
            *self._args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env={**os.environ, **self._env},
            limit=self._max_line_bytes,
        )
        self._reader = asyncio.create_task(self._read_loop(), name=f"baton.plugin.{self.name}.reader")
        logger.info("plugin.started name={} pid={}", self.name, self._process.pid)

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        await self.start()
        process = self._process
        reader_stopped = self._reader is None or self._reader.done()
        if process is None or process.stdin is None or process.returncode is not None or reader_stopped:
            raise PluginError(f"plugin {self.name} is not running")

        request_id = next(self._ids)
        future: asyncio.Future[JsonRpcResponse] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        payload = JsonRpcRequest(id=request_id, method=method, params=params).model_dump_json(exclude_none=True)
        try:
            async with self._write_lock:
                process.stdin.write(payload.encode("utf-8") + b"\n")
                await process.stdin.drain()
            response = await future
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise PluginError(f"plugin {self.name} closed its input: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)
        return self._unwrap(response)

    async def _read_loop(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            raise PluginError(f"plugin {self.name} has no stdout")
        stdout = process.stdout
        reason = "exited"
        try:
            while True:
                try:
                    line = await stdout.readline()
                except ValueError as exc:
                    reason = f"sent a message over {self._max_line_bytes} bytes"
                    logger.error("plugin.read_failed name={} error={}", self.name, exc)
                    return
                if not line:
                    return
                self._deliver(line)
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(PluginError(f"plugin {self.name} {reason}"))
            logger.info("plugin.stopped name={} reason={}", self.name, reason)

    def _deliver(self, line: bytes) -> None:
        try:
            response = JsonRpcResponse.model_validate(json.loads(line))
        except (json.JSONDecodeError, ValidationError):
            logger.warning("plugin.bad_line name={} line={!r}", self.name, line[:200])
            return
        future = self._pending.get(response.id) if isinstance(response.id, int) else None
        if future is None or future.done():
            logger.debug("plugin.orphan_response name={} id={}", self.name, response.id)
            return
        future.set_result(response)

    async def close(self) -> None:
        process, self._process = self._process, None
        if process is None:
            return
        if process.stdin is not None:
            process.stdin.close()
        try:
            await asyncio.wait_for(process.wait(), timeout=2)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None


class RemoteTool:
    """A plugin tool exposed through the local Tool capability."""

    def __init__(self, client: PluginClient, info: RemoteToolInfo) -> None:
        self.client = client
        self.name = info.name
        self.description = info.description
        self.input_schema = info.input_schema
        self.source = f"remote:{client.name}"

    async def run(self, input: Any) -> ToolOutput:  # noqa: A002
        try:
            result = await self.client.call_tool(self.name, input)
        except PluginError as exc:
            return ToolOutput.error(str(exc))
        return ToolOutput(result.text(), is_error=result.is_error)

    def __repr__(self) -> str:
        return f"RemoteTool(name={self.name!r}, source={self.source!r})"


async def connect_plugin(client: PluginClient) -> list[RemoteTool]:
    """List a plugin's tools and wrap each one."""

    infos = await client.list_tools()
    logger.info("plugin.connected name={} tools={}", client.name, [info.name for info in infos])
    return [RemoteTool(client, info) for info in infos]
