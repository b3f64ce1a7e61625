from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from loguru import logger

from baton.orchestrator import TurnPolicy
from baton.session import Session, WorkingContext


@pytest.fixture
def session(tmp_path: Path) -> Session:
    return Session(WorkingContext(working_dir=tmp_path), session_id="test-session")


@pytest.fixture
def fast_policy() -> TurnPolicy:
    return TurnPolicy(
        max_iterations=10,
        max_parallel_tools=4,
        tool_timeout_seconds=5.0,
        backend_max_retries=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        cancel_grace_seconds=0.5,
    )


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    try:
        yield messages
    finally:
        logger.remove(handler_id)
