"""Session state and workspace context."""

from __future__ import annotations

import contextlib
import os
import shutil
import subprocess
import uuid
from collections.abc import Generator
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from loguru import logger

from baton.errors import SessionNotActiveError
from baton.transcript import Transcript

AGENTS_FILE = "AGENTS.md"
MAX_AGENTS_PROMPT_CHARS = 12_000
GIT_TIMEOUT_SECONDS = 5


class SessionState(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


@dataclass(frozen=True)
class GitInfo:
    branch: str
    commit: str
    root: Path


@dataclass
class WorkingContext:
    """Where and with what environment the session's tools operate."""

    working_dir: Path
    environment: dict[str, str] = field(default_factory=dict)
    git: GitInfo | None = None
    agents_md: str | None = None

    def resolve(self, raw_path: str) -> Path:
        path = Path(raw_path).expanduser()
        if path.is_absolute():
            return path
        return self.working_dir / path

    def system_prompt(self, base: str | None) -> str | None:
        """``base`` followed by the project's AGENTS.md notes, when present."""
        blocks = [block for block in (base, self.agents_md) if block]
        return "\n\n".join(blocks) if blocks else None


_active_context: ContextVar[WorkingContext | None] = ContextVar("baton_working_context", default=None)


def current_context() -> WorkingContext | None:
    """Working context of the turn running in this context, if any."""
    return _active_context.get()


@contextlib.contextmanager
def use_context(context: WorkingContext) -> Generator[WorkingContext, None, None]:
    reset_token = _active_context.set(context)
    try:
        yield context
    finally:
        _active_context.reset(reset_token)


class Session:
    """One conversation: transcript, working context and lifecycle state."""

    def __init__(self, context: WorkingContext, *, session_id: str | None = None) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.context = context
        self.transcript = Transcript()
        self._state = SessionState.ACTIVE
        self.turns_started = 0
        self.turn_running = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is SessionState.ACTIVE

    def ensure_active(self) -> None:
        if not self.is_active:
            raise SessionNotActiveError(f"session {self.id} is {self._state.value}")

    def pause(self) -> None:
        self.ensure_active()
        self._state = SessionState.PAUSED

    def resume(self) -> None:
        if self._state is SessionState.CLOSED:
            raise SessionNotActiveError(f"session {self.id} is closed")
        self._state = SessionState.ACTIVE

    def close(self) -> None:
        self._state = SessionState.CLOSED

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, state={self._state.value}, messages={len(self.transcript)})"


def detect_git_info(directory: Path) -> GitInfo | None:
    """Return repository metadata for ``directory`` or None outside a repository."""

    git = shutil.which("git")
    if git is None:
        return None

    def _git(*args: str) -> str | None:
        try:
            completed = subprocess.run(  # noqa: S603
                [git, "-C", str(directory), *args],
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.SubprocessError):
            return None
        if completed.returncode != 0:
            return None
        return completed.stdout.strip()

    if _git("rev-parse", "--git-dir") is None:
        return None
    branch = _git("symbolic-ref", "--short", "HEAD") or _git("rev-parse", "--short", "HEAD") or "HEAD"
    commit = _git("rev-parse", "HEAD") or ""
    root = _git("rev-parse", "--show-toplevel")
    return GitInfo(branch=branch, commit=commit, root=Path(root) if root else directory)


def read_agents_prompt(root: Path) -> str | None:
    """Read AGENTS.md under ``root``, trimming the middle of oversized files."""

    prompt_file = root / AGENTS_FILE
    if not prompt_file.is_file():
        return None
    try:
        content = prompt_file.read_text(encoding="utf-8").strip()
    except OSError:
        return None

    if len(content) <= MAX_AGENTS_PROMPT_CHARS:
        return content

    marker = "\n\n[AGENTS.md truncated: middle content removed]\n\n"
    head_len = (MAX_AGENTS_PROMPT_CHARS - len(marker)) // 2
    tail_len = MAX_AGENTS_PROMPT_CHARS - len(marker) - head_len
    return f"{content[:head_len]}{marker}{content[-tail_len:]}"


def initialize_session(working_dir: Path, *, session_id: str | None = None) -> Session:
    """Build an active session with git metadata, project notes and environment."""

    resolved = working_dir.expanduser().resolve()
    git = detect_git_info(resolved)
    agents_md = read_agents_prompt(git.root if git is not None else resolved)
    context = WorkingContext(
        working_dir=resolved,
        environment=dict(os.environ),
        git=git,
        agents_md=agents_md,
    )
    session = Session(context, session_id=session_id)
    logger.info(
        "session.initialized session={} cwd={} git_branch={}",
        session.id,
        resolved,
        git.branch if git is not None else "-",
    )
    return session
