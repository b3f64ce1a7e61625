import asyncio

import pytest

from baton.logging_utils import bind_session, current_session


def test_bind_session_nests_and_resets() -> None:
    assert current_session() == "-"

    with bind_session("outer"):
        assert current_session() == "outer"
        with bind_session("inner"):
            assert current_session() == "inner"
        assert current_session() == "outer"

    assert current_session() == "-"


@pytest.mark.asyncio
async def test_bound_session_is_task_local() -> None:
    seen: dict[str, str] = {}

    async def _turn(session_id: str) -> None:
        with bind_session(session_id):
            await asyncio.sleep(0.01)
            seen[session_id] = current_session()

    await asyncio.gather(_turn("a"), _turn("b"))

    assert seen == {"a": "a", "b": "b"}
