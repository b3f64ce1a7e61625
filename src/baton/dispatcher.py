"""Tool dispatch: resolution, hooks, bounded concurrency, deadlines and ordered release."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from loguru import logger

from baton.cancellation import CancellationToken
from baton.errors import HookVetoError, ToolNotFoundError, ToolTimeoutError
from baton.events import ToolCallAnnounced
from baton.tools.base import Tool, ToolOutput
from baton.types import ToolResultContent

if TYPE_CHECKING:
    from baton.hooks import HookPipeline, Veto
    from baton.session import Session
    from baton.tools.registry import ToolRegistry

TOOL_NOT_FOUND_OUTPUT = "tool not found"
TIMEOUT_OUTPUT = "timeout"
CANCELLED_OUTPUT = "cancelled"


class ToolCallState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in {ToolCallState.SUCCEEDED, ToolCallState.FAILED, ToolCallState.CANCELLED}


_TRANSITIONS: dict[ToolCallState, frozenset[ToolCallState]] = {
    # Pending may fail directly: unresolved names and pre-use vetoes never run.
    ToolCallState.PENDING: frozenset({ToolCallState.RUNNING, ToolCallState.FAILED, ToolCallState.CANCELLED}),
    ToolCallState.RUNNING: frozenset({ToolCallState.SUCCEEDED, ToolCallState.FAILED, ToolCallState.CANCELLED}),
    ToolCallState.SUCCEEDED: frozenset(),
    ToolCallState.FAILED: frozenset(),
    ToolCallState.CANCELLED: frozenset(),
}


@dataclass
class ToolCall:
    """One tool invocation within a turn."""

    sequence: int
    call_id: str
    tool_name: str
    input: Any = field(default_factory=dict)
    state: ToolCallState = ToolCallState.PENDING
    warnings: list[str] = field(default_factory=list)
    fatal_veto: str | None = None
    started_at: float | None = None
    finished_at: float | None = None

    def transition(self, new_state: ToolCallState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(f"illegal tool call transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        if new_state is ToolCallState.RUNNING:
            self.started_at = time.monotonic()
        elif new_state.terminal:
            self.finished_at = time.monotonic()

    def result(self, output: str, *, is_error: bool) -> ToolResultContent:
        return ToolResultContent(call_id=self.call_id, output=output, is_error=is_error)


class ResultBuffer:
    """Arena of finished results released strictly by sequence number."""

    def __init__(self) -> None:
        self._arena: dict[int, ToolResultContent] = {}
        self._next = 0
        self._size = 0
        self._changed = asyncio.Event()

    def reserve(self) -> int:
        sequence = self._size
        self._size += 1
        return sequence

    def has(self, sequence: int) -> bool:
        return sequence < self._next or sequence in self._arena

    def put(self, sequence: int, result: ToolResultContent) -> None:
        if sequence >= self._size:
            raise ValueError(f"sequence {sequence} was never reserved")
        if self.has(sequence):
            raise ValueError(f"result for sequence {sequence} already recorded")
        self._arena[sequence] = result
        self._changed.set()

    def drain(self) -> list[tuple[int, ToolResultContent]]:
        """Pop every result whose predecessors have all been released."""
        ready: list[tuple[int, ToolResultContent]] = []
        while self._next in self._arena:
            ready.append((self._next, self._arena.pop(self._next)))
            self._next += 1
        return ready

    @property
    def complete(self) -> bool:
        return self._next == self._size

    @property
    def released(self) -> int:
        return self._next

    def __len__(self) -> int:
        return self._size

    async def wait_for_change(self) -> None:
        await self._changed.wait()
        self._changed.clear()


class ToolDispatcher:
    """Runs tool calls under the turn's concurrency and deadline policy."""

    def __init__(
        self,
        *,
        session: Session,
        hooks: HookPipeline | None = None,
        max_parallel: int = 4,
        timeout_seconds: float | None = 120.0,
    ) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self._session = session
        self._hooks = hooks
        self._timeout_seconds = timeout_seconds
        self._semaphore = asyncio.Semaphore(max_parallel)

    async def dispatch(
        self,
        call: ToolCall,
        *,
        registry: ToolRegistry,
        cancel_token: CancellationToken | None = None,
    ) -> ToolResultContent:
        """Resolve, run and post-process one call.

        Tool failures, vetoes and deadlines become error results. Task
        cancellation marks the call cancelled and propagates.
        """

        try:
            async with self._semaphore:
                if cancel_token is not None and cancel_token.cancelled:
                    call.transition(ToolCallState.CANCELLED)
                    return call.result(CANCELLED_OUTPUT, is_error=True)
                return await self._dispatch_admitted(call, registry)
        except asyncio.CancelledError:
            if not call.state.terminal:
                call.transition(ToolCallState.CANCELLED)
            raise

    async def _dispatch_admitted(self, call: ToolCall, registry: ToolRegistry) -> ToolResultContent:
        try:
            tool_input = await self._pre_tool_use(call)
            tool = registry.require(call.tool_name)
        except HookVetoError as veto:
            call.transition(ToolCallState.FAILED)
            return call.result(veto.reason, is_error=True)
        except ToolNotFoundError:
            logger.warning("tool.not_found name={} call_id={}", call.tool_name, call.call_id)
            call.transition(ToolCallState.FAILED)
            return call.result(TOOL_NOT_FOUND_OUTPUT, is_error=True)

        call.transition(ToolCallState.RUNNING)
        try:
            output = await self._execute(call, registry, tool, tool_input)
        except ToolTimeoutError:
            logger.warning(
                "tool.call.timeout name={} call_id={} timeout={}s",
                call.tool_name,
                call.call_id,
                self._timeout_seconds,
            )
            call.transition(ToolCallState.FAILED)
            output = ToolOutput.error(TIMEOUT_OUTPUT)
        except Exception as exc:
            call.transition(ToolCallState.FAILED)
            output = ToolOutput.error(f"{type(exc).__name__}: {exc}")
        else:
            call.transition(ToolCallState.FAILED if output.is_error else ToolCallState.SUCCEEDED)

        try:
            output = await self._post_tool_use(call, tool_input, output)
        except HookVetoError as veto:
            return call.result(veto.reason, is_error=True)
        return call.result(output.output, is_error=output.is_error)

    async def _execute(self, call: ToolCall, registry: ToolRegistry, tool: Tool, tool_input: Any) -> ToolOutput:
        try:
            async with asyncio.timeout(self._timeout_seconds):
                return await registry.execute(tool, tool_input, call_id=call.call_id)
        except TimeoutError as exc:
            raise ToolTimeoutError(f"{call.tool_name} exceeded {self._timeout_seconds}s") from exc

    async def _pre_tool_use(self, call: ToolCall) -> Any:
        if self._hooks is None:
            return call.input
        pre = await self._hooks.pre_tool_use(self._session, call.tool_name, call.input, timeout=self._timeout_seconds)
        call.warnings.extend(pre.warnings)
        if pre.veto is not None:
            raise self._veto(call, pre.veto)
        return pre.payload

    async def _post_tool_use(self, call: ToolCall, tool_input: Any, output: ToolOutput) -> ToolOutput:
        if self._hooks is None:
            return output
        post = await self._hooks.post_tool_use(
            self._session,
            call.tool_name,
            tool_input,
            output,
            timeout=self._timeout_seconds,
        )
        call.warnings.extend(post.warnings)
        if post.veto is not None:
            raise self._veto(call, post.veto)
        return post.payload

    @staticmethod
    def _veto(call: ToolCall, veto: Veto) -> HookVetoError:
        logger.info(
            "tool.call.vetoed name={} call_id={} fatal={} reason={}",
            call.tool_name,
            call.call_id,
            veto.fatal,
            veto.reason,
        )
        if veto.fatal:
            call.fatal_veto = veto.reason
        return HookVetoError(veto.reason, fatal=veto.fatal)


class DispatchBatch:
    """Tool calls announced by one backend call.

    Calls start executing as soon as they are announced; results are released
    in announcement order through :meth:`ordered_results`.
    """

    def __init__(
        self,
        dispatcher: ToolDispatcher,
        registry: ToolRegistry,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._registry = registry
        self._cancel_token = cancel_token
        self._buffer = ResultBuffer()
        self._calls: list[ToolCall] = []
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._closed = False

    @property
    def calls(self) -> list[ToolCall]:
        return list(self._calls)

    def __len__(self) -> int:
        return len(self._calls)

    def announce(self, event: ToolCallAnnounced) -> ToolCall:
        sequence = self._buffer.reserve()
        call = ToolCall(sequence=sequence, call_id=event.call_id, tool_name=event.tool_name, input=event.input)
        self._calls.append(call)
        self._tasks[sequence] = asyncio.create_task(self._run(call), name=f"baton.tool.{call.call_id}")
        return call

    async def _run(self, call: ToolCall) -> None:
        try:
            result = await self._dispatcher.dispatch(call, registry=self._registry, cancel_token=self._cancel_token)
        except Exception as exc:
            logger.opt(exception=True).error("tool.dispatch_failed name={} call_id={}", call.tool_name, call.call_id)
            result = call.result(f"{type(exc).__name__}: {exc}", is_error=True)
        if self._closed or self._buffer.has(call.sequence):
            logger.debug("tool.call.discarded call_id={}", call.call_id)
            return
        self._buffer.put(call.sequence, result)

    async def ordered_results(self) -> AsyncIterator[tuple[ToolCall, ToolResultContent]]:
        while True:
            for sequence, result in self._buffer.drain():
                yield self._calls[sequence], result
            if self._buffer.complete:
                return
            await self._buffer.wait_for_change()

    async def cancel(self, grace_seconds: float) -> None:
        """Cancel unfinished calls, wait up to ``grace_seconds``, then abandon stragglers."""

        unfinished = [task for task in self._tasks.values() if not task.done()]
        for task in unfinished:
            task.cancel()
        if unfinished:
            _, pending = await asyncio.wait(unfinished, timeout=grace_seconds)
            for task in pending:
                logger.warning("tool.call.abandoned task={}", task.get_name())
        self._closed = True
        for call in self._calls:
            if self._buffer.has(call.sequence):
                continue
            if not call.state.terminal:
                call.transition(ToolCallState.CANCELLED)
            self._buffer.put(call.sequence, call.result(CANCELLED_OUTPUT, is_error=True))

    def warnings(self) -> list[str]:
        return [warning for call in self._calls for warning in call.warnings]

    def fatal_veto(self) -> str | None:
        for call in self._calls:
            if call.fatal_veto is not None:
                return call.fatal_veto
        return None
