from __future__ import annotations

import asyncio
from typing import Any

import pytest

from baton.cancellation import CancellationToken
from baton.dispatcher import (
    CANCELLED_OUTPUT,
    TIMEOUT_OUTPUT,
    TOOL_NOT_FOUND_OUTPUT,
    DispatchBatch,
    ResultBuffer,
    ToolCall,
    ToolCallState,
    ToolDispatcher,
)
from baton.events import ToolCallAnnounced
from baton.hooks import HookPipeline
from baton.hookspecs import hookimpl
from baton.session import Session
from baton.tools.base import ToolOutput
from baton.types import ToolResultContent

from support import make_registry, make_tool


def test_tool_call_transitions() -> None:
    call = ToolCall(sequence=0, call_id="c", tool_name="t")

    call.transition(ToolCallState.RUNNING)
    call.transition(ToolCallState.SUCCEEDED)
    assert call.state is ToolCallState.SUCCEEDED
    assert call.started_at is not None and call.finished_at is not None
    with pytest.raises(ValueError, match="illegal"):
        call.transition(ToolCallState.RUNNING)


def test_pending_call_cannot_succeed_without_running() -> None:
    call = ToolCall(sequence=0, call_id="c", tool_name="t")

    with pytest.raises(ValueError):
        call.transition(ToolCallState.SUCCEEDED)


def test_result_buffer_releases_in_sequence_order() -> None:
    buffer = ResultBuffer()
    sequences = [buffer.reserve() for _ in range(3)]
    assert sequences == [0, 1, 2]

    buffer.put(2, ToolResultContent("c2", "two"))
    buffer.put(1, ToolResultContent("c1", "one"))
    assert buffer.drain() == []

    buffer.put(0, ToolResultContent("c0", "zero"))
    assert [result.output for _, result in buffer.drain()] == ["zero", "one", "two"]
    assert buffer.complete


def test_result_buffer_rejects_duplicates_and_unknown_sequences() -> None:
    buffer = ResultBuffer()
    buffer.reserve()
    buffer.put(0, ToolResultContent("c0", "zero"))

    with pytest.raises(ValueError, match="already recorded"):
        buffer.put(0, ToolResultContent("c0", "again"))
    with pytest.raises(ValueError, match="never reserved"):
        buffer.put(5, ToolResultContent("c5", "five"))


async def _echo(args: dict[str, Any]) -> str:
    return f"echo:{args.get('value', '')}"


@pytest.mark.asyncio
async def test_dispatch_success(session: Session) -> None:
    registry = make_registry(echo=_echo)
    dispatcher = ToolDispatcher(session=session)
    call = ToolCall(sequence=0, call_id="c1", tool_name="echo", input={"value": "hi"})

    result = await dispatcher.dispatch(call, registry=registry)

    assert result == ToolResultContent("c1", "echo:hi", is_error=False)
    assert call.state is ToolCallState.SUCCEEDED


@pytest.mark.asyncio
async def test_unknown_tool_is_never_invoked(session: Session) -> None:
    dispatcher = ToolDispatcher(session=session)
    call = ToolCall(sequence=0, call_id="c1", tool_name="missing")

    result = await dispatcher.dispatch(call, registry=make_registry())

    assert result == ToolResultContent("c1", TOOL_NOT_FOUND_OUTPUT, is_error=True)
    assert call.state is ToolCallState.FAILED


@pytest.mark.asyncio
async def test_tool_exception_becomes_error_result(session: Session) -> None:
    async def explode(_args: dict[str, Any]) -> str:
        raise RuntimeError("kaboom")

    dispatcher = ToolDispatcher(session=session)
    call = ToolCall(sequence=0, call_id="c1", tool_name="explode")

    result = await dispatcher.dispatch(call, registry=make_registry(explode=explode))

    assert result.is_error
    assert "kaboom" in result.output
    assert call.state is ToolCallState.FAILED


@pytest.mark.asyncio
async def test_error_output_marks_call_failed(session: Session) -> None:
    async def refuse(_args: dict[str, Any]) -> ToolOutput:
        return ToolOutput.error("nope")

    dispatcher = ToolDispatcher(session=session)
    call = ToolCall(sequence=0, call_id="c1", tool_name="refuse")

    result = await dispatcher.dispatch(call, registry=make_registry(refuse=refuse))

    assert result == ToolResultContent("c1", "nope", is_error=True)
    assert call.state is ToolCallState.FAILED


@pytest.mark.asyncio
async def test_timeout_yields_timeout_result(session: Session) -> None:
    async def slow(_args: dict[str, Any]) -> str:
        await asyncio.sleep(10)
        return "late"

    dispatcher = ToolDispatcher(session=session, timeout_seconds=0.05)
    call = ToolCall(sequence=0, call_id="c1", tool_name="slow")

    result = await dispatcher.dispatch(call, registry=make_registry(slow=slow))

    assert result == ToolResultContent("c1", TIMEOUT_OUTPUT, is_error=True)
    assert call.state is ToolCallState.FAILED


class _OutputLog:
    def __init__(self) -> None:
        self.seen: list[tuple[str, ToolOutput]] = []

    @hookimpl
    def baton_post_tool_use(self, tool_name: str, output: ToolOutput) -> None:
        self.seen.append((tool_name, output))


@pytest.mark.asyncio
async def test_timed_out_call_still_runs_post_hooks(session: Session) -> None:
    async def slow(_args: dict[str, Any]) -> str:
        await asyncio.sleep(10)
        return "late"

    log = _OutputLog()
    hooks = HookPipeline()
    hooks.register(log, name="log")
    dispatcher = ToolDispatcher(session=session, hooks=hooks, timeout_seconds=0.05)
    call = ToolCall(sequence=0, call_id="c1", tool_name="slow")

    result = await dispatcher.dispatch(call, registry=make_registry(slow=slow))

    assert result == ToolResultContent("c1", TIMEOUT_OUTPUT, is_error=True)
    assert log.seen == [("slow", ToolOutput.error(TIMEOUT_OUTPUT))]


@pytest.mark.asyncio
async def test_cancelled_token_skips_execution(session: Session) -> None:
    invoked: list[str] = []

    async def record(_args: dict[str, Any]) -> str:
        invoked.append("ran")
        return "ran"

    token = CancellationToken()
    token.cancel()
    dispatcher = ToolDispatcher(session=session)
    call = ToolCall(sequence=0, call_id="c1", tool_name="record")

    result = await dispatcher.dispatch(call, registry=make_registry(record=record), cancel_token=token)

    assert result.output == CANCELLED_OUTPUT
    assert call.state is ToolCallState.CANCELLED
    assert invoked == []


@pytest.mark.asyncio
async def test_concurrency_is_bounded(session: Session) -> None:
    running = 0
    peak = 0

    async def busy(_args: dict[str, Any]) -> str:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1
        return "done"

    dispatcher = ToolDispatcher(session=session, max_parallel=2)
    batch = DispatchBatch(dispatcher, make_registry(busy=busy))
    for idx in range(5):
        batch.announce(ToolCallAnnounced(f"c{idx}", "busy", {}))

    results = [result async for _, result in batch.ordered_results()]

    assert len(results) == 5
    assert peak == 2


@pytest.mark.asyncio
async def test_batch_releases_results_in_announcement_order(session: Session) -> None:
    delays = {"a": 0.06, "b": 0.0, "c": 0.03}

    async def sleepy(args: dict[str, Any]) -> str:
        await asyncio.sleep(delays[args["name"]])
        return args["name"]

    batch = DispatchBatch(ToolDispatcher(session=session), make_registry(sleepy=sleepy))
    for name in "abc":
        batch.announce(ToolCallAnnounced(f"call_{name}", "sleepy", {"name": name}))

    released = [(call.call_id, result.output) async for call, result in batch.ordered_results()]

    assert released == [("call_a", "a"), ("call_b", "b"), ("call_c", "c")]


@pytest.mark.asyncio
async def test_timeout_does_not_cancel_siblings(session: Session) -> None:
    async def hang(_args: dict[str, Any]) -> str:
        await asyncio.sleep(10)
        return "never"

    async def quick(_args: dict[str, Any]) -> str:
        await asyncio.sleep(0.01)
        return "quick"

    dispatcher = ToolDispatcher(session=session, timeout_seconds=0.05)
    batch = DispatchBatch(dispatcher, make_registry(hang=hang, quick=quick))
    batch.announce(ToolCallAnnounced("c0", "hang", {}))
    batch.announce(ToolCallAnnounced("c1", "quick", {}))

    released = [result async for _, result in batch.ordered_results()]

    assert released[0] == ToolResultContent("c0", TIMEOUT_OUTPUT, is_error=True)
    assert released[1] == ToolResultContent("c1", "quick", is_error=False)


@pytest.mark.asyncio
async def test_batch_cancel_marks_unfinished_calls(session: Session) -> None:
    async def hang(_args: dict[str, Any]) -> str:
        await asyncio.sleep(10)
        return "never"

    async def quick(_args: dict[str, Any]) -> str:
        return "quick"

    batch = DispatchBatch(ToolDispatcher(session=session), make_registry(hang=hang, quick=quick))
    batch.announce(ToolCallAnnounced("c0", "quick", {}))
    batch.announce(ToolCallAnnounced("c1", "hang", {}))
    await asyncio.sleep(0.01)

    await batch.cancel(grace_seconds=0.5)
    released = [(call, result) async for call, result in batch.ordered_results()]

    assert [result.output for _, result in released] == ["quick", CANCELLED_OUTPUT]
    assert released[1][0].state is ToolCallState.CANCELLED
    assert released[1][1].is_error


@pytest.mark.asyncio
async def test_registry_builtins_shadow_remote_tools(session: Session) -> None:
    async def local(_args: dict[str, Any]) -> str:
        return "local"

    async def remote(_args: dict[str, Any]) -> str:
        return "remote"

    registry = make_registry(read=local)
    registry.add_plugin("plug", [make_tool("read", remote), make_tool("extra", remote)])

    result = await ToolDispatcher(session=session).dispatch(ToolCall(0, "c", "read"), registry=registry)

    assert result.output == "local"
    assert [tool.name for tool in registry.tools()] == ["extra", "read"]
