"""Turn orchestration: backend calls, tool dispatch and transcript folding.

One :meth:`TurnOrchestrator.run_turn` call drives a single user turn through

    Requesting -> Streaming -> Dispatching -> Requesting | Completed | Cancelled | Failed

and always returns a :class:`TurnOutcome`; cancellation, backend failures and
the iteration limit are reported in the outcome rather than raised.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from loguru import logger

from baton.backends.base import Backend
from baton.cancellation import CancellationToken
from baton.dispatcher import DispatchBatch, ToolCall, ToolDispatcher
from baton.errors import TurnInProgressError
from baton.events import (
    CompletionReason,
    EventFeed,
    StreamError,
    TextDelta,
    ToolCallAnnounced,
    ToolResultRecorded,
    TurnComplete,
    TurnEvent,
    TurnFinished,
)
from baton.logging_utils import bind_session
from baton.normalizer import CallIdAllocator, WireFormatRegistry, normalize
from baton.session import use_context
from baton.types import Message, ModelParams, ToolResultContent, TurnRequest

if TYPE_CHECKING:
    from baton.config import Settings
    from baton.hooks import HookPipeline
    from baton.session import Session
    from baton.tools.registry import ToolRegistry


class TurnState(StrEnum):
    REQUESTING = "requesting"
    STREAMING = "streaming"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class StopReason(StrEnum):
    COMPLETED = "completed"
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class TurnError:
    """Human-readable reason a turn failed."""

    kind: str
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}" if self.message else self.kind


@dataclass
class TurnOutcome:
    final_text: str
    messages_appended: list[Message]
    stop_reason: StopReason
    error: TurnError | None = None
    iterations: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.stop_reason in {StopReason.COMPLETED, StopReason.MAX_ITERATIONS_EXCEEDED}


@dataclass(frozen=True)
class TurnPolicy:
    max_iterations: int = 10
    max_parallel_tools: int = 4
    tool_timeout_seconds: float = 120.0
    backend_max_retries: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    cancel_grace_seconds: float = 2.0
    model_params: ModelParams = field(default_factory=ModelParams)

    @classmethod
    def from_settings(cls, settings: Settings) -> TurnPolicy:
        return cls(
            max_iterations=settings.max_iterations,
            max_parallel_tools=settings.max_parallel_tools,
            tool_timeout_seconds=settings.tool_timeout_seconds,
            backend_max_retries=settings.backend_max_retries,
            retry_base_delay=settings.retry_base_delay,
            retry_max_delay=settings.retry_max_delay,
            cancel_grace_seconds=settings.cancel_grace_seconds,
            model_params=settings.model_params(),
        )

    def retry_delay(self, attempt: int) -> float:
        return min(self.retry_base_delay * (2**attempt), self.retry_max_delay)


@dataclass
class _StreamResult:
    text_parts: list[str] = field(default_factory=list)
    calls: list[ToolCall] = field(default_factory=list)
    terminal: TurnEvent | None = None

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    @property
    def has_output(self) -> bool:
        return bool(self.text_parts or self.calls)


class _TurnStopped(Exception):
    """Internal unwind carrying the final stop reason."""

    def __init__(self, reason: StopReason, error: TurnError | None = None) -> None:
        super().__init__(reason.value)
        self.reason = reason
        self.error = error


@dataclass
class _TurnRun:
    session: Session
    token: CancellationToken
    start_index: int
    iterations: int = 0
    final_text: str = ""
    warnings: list[str] = field(default_factory=list)


type Sleep = Callable[[float], Awaitable[None]]


class TurnOrchestrator:
    """Runs turns for sessions against a backend and a tool registry."""

    def __init__(
        self,
        *,
        policy: TurnPolicy | None = None,
        hooks: HookPipeline | None = None,
        feed: EventFeed | None = None,
        formats: WireFormatRegistry | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.policy = policy or TurnPolicy()
        self.hooks = hooks
        self.feed = feed or EventFeed()
        self._formats = formats
        self._sleep = sleep
        self.state: TurnState | None = None

    async def run_turn(
        self,
        session: Session,
        backend: Backend,
        tool_catalogue: ToolRegistry,
        cancellation_token: CancellationToken | None = None,
        *,
        prompt: str | None = None,
    ) -> TurnOutcome:
        session.ensure_active()
        if session.turn_running:
            raise TurnInProgressError(f"session {session.id} already has a turn running")
        if not isinstance(backend, Backend):
            raise TypeError(f"{type(backend).__name__} does not implement the Backend protocol")

        token = cancellation_token or CancellationToken()
        token.bind_loop(asyncio.get_running_loop())
        run = _TurnRun(session=session, token=token, start_index=len(session.transcript))
        session.turn_running = True
        try:
            with bind_session(session.id), use_context(session.context):
                outcome = await self._run(run, backend, tool_catalogue, prompt)
        finally:
            session.turn_running = False
        self.feed.publish(TurnFinished(outcome))
        return outcome

    async def _run(
        self,
        run: _TurnRun,
        backend: Backend,
        tool_catalogue: ToolRegistry,
        prompt: str | None,
    ) -> TurnOutcome:
        session = run.session
        logger.info("turn.start session={} backend={} turn={}", session.id, backend.name, session.turns_started + 1)
        try:
            await self._start_session_if_needed(run)
            session.turns_started += 1
            if prompt is not None:
                self._append(run, Message.user(prompt))
            registry = tool_catalogue.snapshot()
            dispatcher = ToolDispatcher(
                session=session,
                hooks=self.hooks,
                max_parallel=self.policy.max_parallel_tools,
                timeout_seconds=self.policy.tool_timeout_seconds,
            )
            await self._loop(run, backend, registry, dispatcher)
            reason, error = StopReason.COMPLETED, None
        except _TurnStopped as stopped:
            reason, error = stopped.reason, stopped.error

        self._set_state(
            {
                StopReason.CANCELLED: TurnState.CANCELLED,
                StopReason.FAILED: TurnState.FAILED,
            }.get(reason, TurnState.COMPLETED)
        )
        outcome = TurnOutcome(
            final_text=run.final_text,
            messages_appended=session.transcript.since(run.start_index),
            stop_reason=reason,
            error=error,
            iterations=run.iterations,
            warnings=run.warnings,
        )
        logger.info(
            "turn.finished session={} stop_reason={} iterations={} messages={} error={}",
            session.id,
            reason.value,
            run.iterations,
            len(outcome.messages_appended),
            error or "-",
        )
        return outcome

    async def _start_session_if_needed(self, run: _TurnRun) -> None:
        if run.session.turns_started > 0 or self.hooks is None:
            return
        started = await self.hooks.session_start(run.session, timeout=self.policy.tool_timeout_seconds)
        run.warnings.extend(started.warnings)
        if started.veto is not None:
            raise _TurnStopped(StopReason.FAILED, TurnError("hook_veto", started.veto.reason))

    async def _loop(
        self,
        run: _TurnRun,
        backend: Backend,
        registry: ToolRegistry,
        dispatcher: ToolDispatcher,
    ) -> None:
        call_ids = CallIdAllocator()
        catalogue = registry.catalogue()
        params = self._model_params(run.session)
        while True:
            if run.token.cancelled:
                raise _TurnStopped(StopReason.CANCELLED)
            if run.iterations >= self.policy.max_iterations:
                logger.warning("turn.max_iterations session={} limit={}", run.session.id, self.policy.max_iterations)
                raise _TurnStopped(StopReason.MAX_ITERATIONS_EXCEEDED)

            run.iterations += 1
            request = TurnRequest(
                messages=run.session.transcript.snapshot(),
                tools=catalogue,
                params=params,
                iteration=run.iterations,
            )
            batch = DispatchBatch(dispatcher, registry, run.token)
            result = await self._stream_with_retries(run, backend, request, batch, call_ids)
            terminal = result.terminal
            if isinstance(terminal, StreamError):
                await self._commit_partial(run, result, batch)
                raise _TurnStopped(StopReason.FAILED, TurnError(terminal.kind.value, terminal.message))

            self._commit_stream(run, result)
            await self._fold_results(run, batch)
            run.warnings.extend(batch.warnings())
            if (reason := batch.fatal_veto()) is not None:
                raise _TurnStopped(StopReason.FAILED, TurnError("hook_veto", reason))
            if run.token.cancelled:
                raise _TurnStopped(StopReason.CANCELLED)

            if not isinstance(terminal, TurnComplete):
                raise _TurnStopped(StopReason.FAILED, TurnError("interrupted", "stream ended without a terminal event"))
            if terminal.reason is CompletionReason.TOOL_USE and result.calls:
                continue
            return

    def _model_params(self, session: Session) -> ModelParams:
        params = self.policy.model_params
        system_prompt = session.context.system_prompt(params.system_prompt)
        if system_prompt == params.system_prompt:
            return params
        return dataclasses.replace(params, system_prompt=system_prompt)

    async def _stream_with_retries(
        self,
        run: _TurnRun,
        backend: Backend,
        request: TurnRequest,
        batch: DispatchBatch,
        call_ids: CallIdAllocator,
    ) -> _StreamResult:
        attempt = 0
        while True:
            self._set_state(TurnState.REQUESTING)
            logger.info(
                "turn.backend_call session={} iteration={} attempt={} messages={}",
                run.session.id,
                request.iteration,
                attempt + 1,
                len(request.messages),
            )
            result = _StreamResult()
            finished = await self._race(self._consume(backend, request, batch, call_ids, result), run.token)
            if not finished:
                await self._commit_partial(run, result, batch)
                raise _TurnStopped(StopReason.CANCELLED)

            terminal = result.terminal
            if not (isinstance(terminal, StreamError) and terminal.transient):
                return result
            if result.has_output or attempt >= self.policy.backend_max_retries:
                logger.warning(
                    "turn.stream_failed session={} kind={} attempts={} partial={}",
                    run.session.id,
                    terminal.kind.value,
                    attempt + 1,
                    result.has_output,
                )
                return result

            delay = self.policy.retry_delay(attempt)
            attempt += 1
            logger.warning(
                "turn.retry session={} kind={} attempt={} delay={:.2f}s message={}",
                run.session.id,
                terminal.kind.value,
                attempt,
                delay,
                terminal.message,
            )
            if not await self._race(self._sleep(delay), run.token):
                raise _TurnStopped(StopReason.CANCELLED)

    async def _consume(
        self,
        backend: Backend,
        request: TurnRequest,
        batch: DispatchBatch,
        call_ids: CallIdAllocator,
        result: _StreamResult,
    ) -> None:
        self._set_state(TurnState.STREAMING)
        events = normalize(
            _open_stream(backend, request),
            backend.wire_format,
            call_ids=call_ids,
            formats=self._formats,
        )
        try:
            async for event in events:
                if isinstance(event, TextDelta):
                    result.text_parts.append(event.text)
                    self.feed.publish(event)
                elif isinstance(event, ToolCallAnnounced):
                    call = batch.announce(event)
                    result.calls.append(call)
                    logger.info("turn.tool_announced call_id={} name={}", call.call_id, call.tool_name)
                    self.feed.publish(event)
                else:
                    result.terminal = event
        finally:
            await events.aclose()

    def _commit_stream(self, run: _TurnRun, result: _StreamResult) -> None:
        text = result.text
        if text:
            self._append(run, Message.assistant(text))
            run.final_text = text
        for call in result.calls:
            self._append(run, Message.tool_use(call.call_id, call.tool_name, call.input))

    async def _commit_partial(self, run: _TurnRun, result: _StreamResult, batch: DispatchBatch) -> None:
        """Keep streamed text and pair every announced call with a result."""
        self._commit_stream(run, result)
        if len(batch):
            await batch.cancel(self.policy.cancel_grace_seconds)
            await self._drain(run, batch)
            run.warnings.extend(batch.warnings())

    async def _fold_results(self, run: _TurnRun, batch: DispatchBatch) -> None:
        if not len(batch):
            return
        self._set_state(TurnState.DISPATCHING)
        if not await self._race(self._drain(run, batch), run.token):
            await batch.cancel(self.policy.cancel_grace_seconds)
            await self._drain(run, batch)

    async def _drain(self, run: _TurnRun, batch: DispatchBatch) -> None:
        async for call, result in batch.ordered_results():
            self._append_result(run, call, result)

    def _append_result(self, run: _TurnRun, call: ToolCall, result: ToolResultContent) -> None:
        self._append(run, Message.tool_result(result.call_id, result.output, result.is_error))
        self.feed.publish(
            ToolResultRecorded(
                call_id=result.call_id,
                tool_name=call.tool_name,
                output=result.output,
                is_error=result.is_error,
            )
        )

    def _append(self, run: _TurnRun, message: Message) -> None:
        run.session.transcript.append(message)

    async def _race(self, work: Coroutine[Any, Any, Any], token: CancellationToken) -> bool:
        """Run ``work`` until it finishes (True) or the token fires (False)."""

        task = asyncio.ensure_future(work)
        waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            task.result()
            return True
        task.cancel()
        _, pending = await asyncio.wait({task}, timeout=self.policy.cancel_grace_seconds)
        if pending:
            logger.warning("turn.abandoned_task grace={}s", self.policy.cancel_grace_seconds)
        elif not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).debug("turn.cancelled_task_error")
        return False

    def _set_state(self, state: TurnState) -> None:
        if state is not self.state:
            logger.debug("turn.state {} -> {}", self.state.value if self.state else "-", state.value)
        self.state = state


async def _open_stream(backend: Backend, request: TurnRequest) -> AsyncIterator[Any]:
    """Iterate the backend stream, closing it when the consumer stops early."""

    stream = backend.stream(request)
    try:
        async for chunk in stream:
            yield chunk
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()


__all__ = [
    "StopReason",
    "TurnError",
    "TurnOrchestrator",
    "TurnOutcome",
    "TurnPolicy",
    "TurnState",
]
