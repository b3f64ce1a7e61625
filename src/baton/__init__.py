"""Baton: a streaming, tool-calling turn engine for coding assistants."""

from baton.cancellation import CancellationToken
from baton.events import EventFeed
from baton.framework import BatonFramework
from baton.hooks import Continue, HookPipeline, Veto
from baton.hookspecs import hookimpl
from baton.orchestrator import StopReason, TurnOrchestrator, TurnOutcome, TurnPolicy
from baton.session import Session, initialize_session
from baton.transcript import Transcript
from baton.types import Message, Role

__all__ = [
    "BatonFramework",
    "CancellationToken",
    "Continue",
    "EventFeed",
    "HookPipeline",
    "Message",
    "Role",
    "Session",
    "StopReason",
    "Transcript",
    "TurnOrchestrator",
    "TurnOutcome",
    "TurnPolicy",
    "Veto",
    "hookimpl",
    "initialize_session",
]

__version__ = "0.1.0"
