"""Hook pipeline with per-plugin fault isolation."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import pluggy
from loguru import logger

from baton.hookspecs import BATON_HOOK_NAMESPACE, BatonHookSpecs
from baton.tools.base import ToolOutput

if TYPE_CHECKING:
    from baton.session import Session


@dataclass(frozen=True)
class Continue:
    """Pass the (possibly rewritten) payload to the next handler."""

    payload: Any


@dataclass(frozen=True)
class Veto:
    """Stop the chain. A fatal veto also fails the turn after the current batch."""

    reason: str
    fatal: bool = False


type HookResult = Continue | Veto | None


@dataclass
class HookOutcome:
    """Result of running one event through every handler."""

    payload: Any
    veto: Veto | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def vetoed(self) -> bool:
        return self.veto is not None


_SKIP = object()


def new_plugin_manager() -> pluggy.PluginManager:
    manager = pluggy.PluginManager(BATON_HOOK_NAMESPACE)
    manager.add_hookspecs(BatonHookSpecs)
    return manager


class HookPipeline:
    """Runs hook events through pluggy implementations in registration order.

    A handler that raises, or outlives ``timeout`` seconds, is skipped: the
    failure is logged, reported to ``baton_on_error`` observers and surfaced as
    a warning, and the chain continues with the unchanged payload.
    """

    def __init__(self, plugin_manager: pluggy.PluginManager | None = None) -> None:
        self._plugin_manager = plugin_manager or new_plugin_manager()

    @property
    def plugin_manager(self) -> pluggy.PluginManager:
        return self._plugin_manager

    def register(self, plugin: object, name: str | None = None) -> str | None:
        return self._plugin_manager.register(plugin, name=name)

    async def session_start(self, session: Session, *, timeout: float | None = None) -> HookOutcome:
        return await self._run_chain("baton_session_start", "session", timeout=timeout, session=session)

    async def pre_tool_use(
        self,
        session: Session,
        tool_name: str,
        input: Any,  # noqa: A002
        *,
        timeout: float | None = None,
    ) -> HookOutcome:
        return await self._run_chain(
            "baton_pre_tool_use",
            "input",
            timeout=timeout,
            session=session,
            tool_name=tool_name,
            input=input,
        )

    async def post_tool_use(
        self,
        session: Session,
        tool_name: str,
        input: Any,  # noqa: A002
        output: ToolOutput,
        *,
        timeout: float | None = None,
    ) -> HookOutcome:
        outcome = await self._run_chain(
            "baton_post_tool_use",
            "output",
            timeout=timeout,
            session=session,
            tool_name=tool_name,
            input=input,
            output=output,
        )
        if not isinstance(outcome.payload, ToolOutput):
            outcome.payload = ToolOutput(str(outcome.payload), is_error=output.is_error)
        return outcome

    async def session_end(self, session: Session, *, timeout: float | None = None) -> HookOutcome:
        return await self._run_chain("baton_session_end", "session", timeout=timeout, session=session)

    async def notify_error(self, *, stage: str, error: Exception, session: Session | None) -> None:
        """Call on_error hooks, swallowing observer failures."""

        for impl in self._iter_hookimpls("baton_on_error"):
            call_kwargs = self._kwargs_for_impl(impl, {"stage": stage, "error": error, "session": session})
            try:
                value = impl.function(**call_kwargs)
                if inspect.isawaitable(value):
                    await value
            except Exception:
                logger.opt(exception=True).warning(
                    "hook.on_error_failed stage={} plugin={}",
                    stage,
                    impl.plugin_name or "<unknown>",
                )

    def hook_report(self) -> dict[str, list[str]]:
        """Build a hook->plugins mapping for diagnostics."""

        report: dict[str, list[str]] = {}
        for hook_name, hook_caller in sorted(self._plugin_manager.hook.__dict__.items()):
            if hook_name.startswith("_") or not hasattr(hook_caller, "get_hookimpls"):
                continue
            plugin_names = [impl.plugin_name for impl in hook_caller.get_hookimpls()]
            if plugin_names:
                report[hook_name] = plugin_names
        return report

    async def _run_chain(
        self,
        hook_name: str,
        payload_key: str,
        *,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> HookOutcome:
        outcome = HookOutcome(payload=kwargs.get(payload_key))
        for impl in self._iter_hookimpls(hook_name):
            call_kwargs = self._kwargs_for_impl(impl, {**kwargs, payload_key: outcome.payload})
            value = await self._invoke(hook_name, impl, call_kwargs, outcome, kwargs.get("session"), timeout)
            if value is _SKIP or value is None:
                continue
            if isinstance(value, Veto):
                logger.info("hook.veto hook={} plugin={} reason={}", hook_name, impl.plugin_name, value.reason)
                outcome.veto = value
                break
            if isinstance(value, Continue):
                outcome.payload = value.payload
                continue
            outcome.warnings.append(f"{hook_name}:{impl.plugin_name}: unexpected return {type(value).__name__}")
            logger.warning("hook.bad_return hook={} plugin={} type={}", hook_name, impl.plugin_name, type(value))
        return outcome

    async def _invoke(
        self,
        hook_name: str,
        impl: Any,
        call_kwargs: dict[str, Any],
        outcome: HookOutcome,
        session: Session | None,
        timeout: float | None,
    ) -> Any:
        stage = f"{hook_name}:{impl.plugin_name or '<unknown>'}"
        deadline = asyncio.timeout(timeout)
        try:
            async with deadline:
                value = impl.function(**call_kwargs)
                if inspect.isawaitable(value):
                    value = await value
        except Exception as error:
            if deadline.expired():
                error = TimeoutError(f"timed out after {timeout}s")
            logger.opt(exception=True).warning("hook.failed stage={}", stage)
            outcome.warnings.append(f"{stage}: {error}")
            await self.notify_error(stage=stage, error=error, session=session)
            return _SKIP
        return value

    def _iter_hookimpls(self, hook_name: str) -> list[Any]:
        hook = getattr(self._plugin_manager.hook, hook_name, None)
        if hook is None or not hasattr(hook, "get_hookimpls"):
            return []
        return list(hook.get_hookimpls())

    @staticmethod
    def _kwargs_for_impl(impl: Any, kwargs: dict[str, Any]) -> dict[str, Any]:
        return {name: kwargs[name] for name in impl.argnames if name in kwargs}
