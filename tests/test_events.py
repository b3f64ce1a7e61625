import asyncio

import pytest

from baton.cancellation import CancellationToken
from baton.events import EventFeed, StreamErrorKind, TextDelta, ToolCallAnnounced


@pytest.mark.asyncio
async def test_subscription_receives_events_after_subscribing() -> None:
    feed = EventFeed()
    feed.publish(TextDelta("missed"))
    subscription = feed.subscribe()

    feed.publish(TextDelta("seen"))
    feed.publish(ToolCallAnnounced("call_1", "read", {}))

    assert await subscription.next() == TextDelta("seen")
    assert await subscription.next() == ToolCallAnnounced("call_1", "read", {})
    assert await subscription.next(timeout_seconds=0.01) is None


@pytest.mark.asyncio
async def test_closed_subscription_ends_iteration() -> None:
    feed = EventFeed()
    subscription = feed.subscribe()
    feed.publish(TextDelta("a"))
    subscription.close()
    feed.publish(TextDelta("after close"))

    received = [event async for event in subscription]

    assert received == [TextDelta("a")]


def test_failing_listener_does_not_block_others() -> None:
    feed = EventFeed()
    seen: list[object] = []

    def broken(_event: object) -> None:
        raise RuntimeError("listener bug")

    feed.add_listener(broken)
    remove = feed.add_listener(seen.append)

    feed.publish(TextDelta("x"))
    remove()
    feed.publish(TextDelta("y"))

    assert seen == [TextDelta("x")]


def test_transient_error_kinds() -> None:
    assert {kind for kind in StreamErrorKind if kind.transient} == {
        StreamErrorKind.NETWORK,
        StreamErrorKind.RATE_LIMIT,
        StreamErrorKind.INTERRUPTED,
    }


@pytest.mark.asyncio
async def test_cancellation_token_is_one_shot() -> None:
    token = CancellationToken()
    waiter = asyncio.create_task(token.wait())
    await asyncio.sleep(0)
    assert not waiter.done()

    token.cancel("first")
    token.cancel("second")
    await asyncio.wait_for(waiter, timeout=1)

    assert token.cancelled
    assert token.reason == "first"


@pytest.mark.asyncio
async def test_cancellation_token_from_another_thread() -> None:
    token = CancellationToken()
    token.bind_loop(asyncio.get_running_loop())

    await asyncio.to_thread(token.cancel_threadsafe, "signal")
    await asyncio.wait_for(token.wait(), timeout=1)

    assert token.reason == "signal"
