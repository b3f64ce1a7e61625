"""AI backends and the registry that builds them from settings."""

from __future__ import annotations

from typing import TYPE_CHECKING

from baton.backends.base import Backend, BackendFactory, BackendRegistry
from baton.backends.scripted import EchoBackend, Hang, Pause, Raise, ScriptedBackend

if TYPE_CHECKING:
    from baton.config import Settings


def _echo(_settings: Settings) -> Backend:
    return EchoBackend()


def _republic(settings: Settings) -> Backend:
    from baton.backends.republic import build_republic_backend

    return build_republic_backend(settings)


BACKENDS = BackendRegistry()
BACKENDS.register("echo", _echo)
BACKENDS.register("republic", _republic)

__all__ = [
    "BACKENDS",
    "Backend",
    "BackendFactory",
    "BackendRegistry",
    "EchoBackend",
    "Hang",
    "Pause",
    "Raise",
    "ScriptedBackend",
]
