"""
Tests for the ledger change feed.
"""

import asyncio

import pytest

from rebalance_engine.ledger import ChangeFeed, FeedGapError, LedgerEvent, LedgerEventType


def make_event(offset: int, account: str = "alice", sequence: int | None = None) -> LedgerEvent:
    return LedgerEvent(
        type=LedgerEventType.DEPOSITED,
        account=account,
        payload={"balance": str(offset), "positions": {}},
        sequence=sequence or offset,
        offset=offset,
    )


class TestReplay:
    """Tests for ChangeFeed.replay."""

    def test_replay_after_offset(self) -> None:
        feed = ChangeFeed()
        for i in range(1, 6):
            feed.publish(make_event(i))

        assert [e.offset for e in feed.replay(2)] == [3, 4, 5]
        assert feed.replay(5) == []

    def test_replay_beyond_retention_raises(self) -> None:
        feed = ChangeFeed(retention=3)
        for i in range(1, 7):
            feed.publish(make_event(i))

        assert feed.oldest_offset == 4
        assert [e.offset for e in feed.replay(3)] == [4, 5, 6]
        with pytest.raises(FeedGapError) as exc_info:
            feed.replay(1)
        assert exc_info.value.oldest_retained == 4


class TestStream:
    """Tests for ChangeFeed.stream."""

    @pytest.mark.asyncio
    async def test_resume_then_live(self) -> None:
        feed = ChangeFeed()
        for i in range(1, 4):
            feed.publish(make_event(i))

        received: list[int] = []

        async def consume() -> None:
            async for event in feed.stream(after_offset=1):
                received.append(event.offset)
                if event.offset == 5:
                    return

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        feed.publish(make_event(4))
        feed.publish(make_event(5))
        await asyncio.wait_for(task, timeout=1)

        assert received == [2, 3, 4, 5]
        assert feed.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_stream_from_discarded_offset_raises(self) -> None:
        feed = ChangeFeed(retention=2)
        for i in range(1, 5):
            feed.publish(make_event(i))

        with pytest.raises(FeedGapError):
            async for _ in feed.stream(after_offset=0):
                pass

    @pytest.mark.asyncio
    async def test_lagged_subscriber_recovers_from_retention(self) -> None:
        """Overflowing the queue re-reads the retained window without loss."""
        feed = ChangeFeed(retention=100, subscriber_queue_size=2)
        received: list[int] = []
        started = asyncio.Event()

        async def consume() -> None:
            async for event in feed.stream(after_offset=0):
                received.append(event.offset)
                started.set()
                if event.offset == 10:
                    return

        feed.publish(make_event(1))
        task = asyncio.create_task(consume())
        await started.wait()
        for i in range(2, 11):
            feed.publish(make_event(i))
        await asyncio.wait_for(task, timeout=1)

        assert received == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_lagged_subscriber_past_retention_raises(self) -> None:
        feed = ChangeFeed(retention=3, subscriber_queue_size=1)
        started = asyncio.Event()

        async def consume() -> None:
            async for _ in feed.stream(after_offset=0):
                started.set()
                await asyncio.sleep(0.05)

        feed.publish(make_event(1))
        task = asyncio.create_task(consume())
        await started.wait()
        for i in range(2, 10):
            feed.publish(make_event(i))

        with pytest.raises(FeedGapError):
            await asyncio.wait_for(task, timeout=1)
