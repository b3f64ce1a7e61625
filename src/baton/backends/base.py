"""Backend capability consumed by the orchestrator."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from baton.errors import BackendNotFoundError
from baton.types import TurnRequest

if TYPE_CHECKING:
    from baton.config import Settings


@runtime_checkable
class Backend(Protocol):
    """Streaming-completion capability.

    ``stream`` returns backend-native chunks lazily; the orchestrator closes
    the iterator to cancel an in-flight call. ``wire_format`` names the
    normalizer parser that understands the chunks.
    """

    name: str
    wire_format: str

    def stream(self, request: TurnRequest) -> AsyncIterator[Any]: ...


type BackendFactory = Callable[[Settings], Backend]


class BackendRegistry:
    """Backend factories keyed by name."""

    def __init__(self) -> None:
        self._factories: dict[str, BackendFactory] = {}

    def register(self, name: str, factory: BackendFactory) -> None:
        self._factories[name] = factory

    def names(self) -> list[str]:
        return sorted(self._factories)

    def create(self, name: str, settings: Settings) -> Backend:
        factory = self._factories.get(name)
        if factory is None:
            available = ", ".join(self.names()) or "(none)"
            raise BackendNotFoundError(f"unknown backend '{name}', available: {available}")
        return factory(settings)
