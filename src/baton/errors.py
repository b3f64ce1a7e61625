"""Application-level exception types for Baton."""

from __future__ import annotations

from baton.events import StreamErrorKind


class BatonError(Exception):
    """Base exception for Baton."""


class ConfigurationError(BatonError):
    """Raised for invalid settings or startup validation errors."""


class BackendNotFoundError(ConfigurationError):
    """Raised when no backend is registered under the requested name."""


class BackendError(BatonError):
    """Failure reported by an AI backend while producing a stream."""

    def __init__(self, kind: StreamErrorKind, message: str = "") -> None:
        super().__init__(f"{kind.value}: {message}" if message else kind.value)
        self.kind = kind
        self.message = message

    @property
    def transient(self) -> bool:
        return self.kind.transient


class BackendTransientError(BackendError):
    """Network or rate-limit failure that may succeed on retry."""

    def __init__(self, message: str = "", kind: StreamErrorKind = StreamErrorKind.NETWORK) -> None:
        super().__init__(kind, message)


class BackendFatalError(BackendError):
    """Authentication or malformed-request failure; never retried."""

    def __init__(self, message: str = "", kind: StreamErrorKind = StreamErrorKind.INVALID_REQUEST) -> None:
        super().__init__(kind, message)


class ToolError(BatonError):
    """Base exception for tool resolution and execution failures."""


class ToolNotFoundError(ToolError):
    """Raised when a tool name does not resolve in the registry."""


class ToolTimeoutError(ToolError):
    """Raised when a tool call exceeds its deadline."""


class ToolExecutionError(ToolError):
    """Raised by tool implementations for expected execution failures."""


class HookVetoError(BatonError):
    """Raised when a hook vetoes a tool call. A fatal veto also fails the turn."""

    def __init__(self, reason: str, *, fatal: bool = False) -> None:
        super().__init__(reason)
        self.reason = reason
        self.fatal = fatal


class SessionError(BatonError):
    """Base exception for session lifecycle violations."""


class SessionNotActiveError(SessionError):
    """Raised when a turn is requested on a paused or closed session."""


class TurnInProgressError(SessionError):
    """Raised when a second turn is started while one is still running."""


class PluginError(BatonError):
    """Raised when a remote plugin violates the JSON-RPC tool protocol."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message if code is None else f"[{code}] {message}")
        self.code = code
