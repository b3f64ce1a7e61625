"""Pluggy hook namespace and turn hook specifications."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pluggy

if TYPE_CHECKING:
    from baton.hooks import HookResult
    from baton.session import Session
    from baton.tools.base import ToolOutput

BATON_HOOK_NAMESPACE = "baton"
hookspec = pluggy.HookspecMarker(BATON_HOOK_NAMESPACE)
hookimpl = pluggy.HookimplMarker(BATON_HOOK_NAMESPACE)


class BatonHookSpecs:
    """Hook contract for Baton extensions.

    Implementations may be plain functions or coroutines. Handlers run in
    registration order; each may return ``None``, ``Continue`` or ``Veto``.
    """

    @hookspec
    def baton_session_start(self, session: Session) -> HookResult:
        """Observe a session before its first turn. A veto refuses the turn."""

    @hookspec
    def baton_pre_tool_use(self, session: Session, tool_name: str, input: Any) -> HookResult:  # noqa: A002
        """Inspect, rewrite (``Continue(new_input)``) or veto one tool call."""

    @hookspec
    def baton_post_tool_use(
        self,
        session: Session,
        tool_name: str,
        input: Any,  # noqa: A002
        output: ToolOutput,
    ) -> HookResult:
        """Inspect, rewrite (``Continue(new_output)``) or veto one tool result."""

    @hookspec
    def baton_session_end(self, session: Session) -> HookResult:
        """Observe a session being closed."""

    @hookspec
    def baton_on_error(self, stage: str, error: Exception, session: Session | None) -> None:
        """Observe hook failures from any stage."""
