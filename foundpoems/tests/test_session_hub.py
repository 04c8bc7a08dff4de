"""
foundpoems/tests/test_session_hub.py
Presence and capacity hub.
"""

import asyncio

import pytest

from foundpoems.core.errors import CapacityError
from foundpoems.core.metrics import presence_participants
from foundpoems.realtime.hub import SessionHub
from foundpoems.tests.mocks import FakeClock, MockWS


@pytest.fixture
def clock():
    return FakeClock(start=1000.0)


@pytest.fixture
def hub(clock):
    """Provide a clean hub instance for testing."""
    return SessionHub(clock=clock)


class TestPresence:
    @pytest.mark.asyncio
    async def test_same_token_counts_once(self, hub):
        await hub.try_join("s1", "tok-a", MockWS("tab1"))
        count = await hub.try_join("s1", "tok-a", MockWS("tab2"))
        assert count == 1
        assert await hub.participant_count("s1") == 1

    @pytest.mark.asyncio
    async def test_leave_returns_remaining(self, hub):
        a, b = MockWS("a"), MockWS("b")
        await hub.try_join("s1", "tok-a", a)
        await hub.try_join("s1", "tok-b", b)
        assert await hub.leave("s1", a) == 1
        assert await hub.leave("s1", b) == 0
        assert presence_participants.value() == 0

    @pytest.mark.asyncio
    async def test_is_present(self, hub):
        await hub.try_join("s1", "tok-a", MockWS())
        assert await hub.is_present("s1", "tok-a")
        assert not await hub.is_present("s1", "tok-b")
        assert not await hub.is_present("s1", None)
        assert not await hub.is_present("s2", "tok-a")


class TestCapacity:
    @pytest.mark.asyncio
    async def test_join_beyond_cap_is_rejected(self, hub):
        await hub.try_join("s1", "tok-a", MockWS(), max_participants=2)
        await hub.try_join("s1", "tok-b", MockWS(), max_participants=2)
        with pytest.raises(CapacityError):
            await hub.try_join("s1", "tok-c", MockWS(), max_participants=2)
        assert await hub.participant_count("s1") == 2

    @pytest.mark.asyncio
    async def test_present_token_reconnects_at_cap(self, hub):
        await hub.try_join("s1", "tok-a", MockWS(), max_participants=1)
        count = await hub.try_join("s1", "tok-a", MockWS(), max_participants=1)
        assert count == 1

    @pytest.mark.asyncio
    async def test_concurrent_joins_never_exceed_cap(self, hub):
        async def join(i):
            try:
                await hub.try_join("s1", f"tok-{i}", MockWS(str(i)), max_participants=3)
                return True
            except CapacityError:
                return False

        results = await asyncio.gather(*(join(i) for i in range(10)))
        assert sum(results) == 3
        assert await hub.participant_count("s1") == 3

    @pytest.mark.asyncio
    async def test_seat_frees_after_leave(self, hub):
        a = MockWS("a")
        await hub.try_join("s1", "tok-a", a, max_participants=1)
        await hub.leave("s1", a)
        assert await hub.try_join("s1", "tok-b", MockWS("b"), max_participants=1) == 1


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_broadcast_reaches_room_only(self, hub):
        a, b, other = MockWS("a"), MockWS("b"), MockWS("other")
        await hub.try_join("s1", "tok-a", a)
        await hub.try_join("s1", "tok-b", b)
        await hub.try_join("s2", "tok-c", other)

        delivered = await hub.broadcast("s1", {"type": "word:update", "data": {"id": "w1"}})
        assert delivered == 2
        assert a.sent == b.sent == [{"type": "word:update", "data": {"id": "w1"}}]
        assert other.sent == []

    @pytest.mark.asyncio
    async def test_dead_sockets_are_pruned(self, hub):
        good, dead = MockWS("good"), MockWS("dead", fail=True)
        await hub.try_join("s1", "tok-a", good)
        await hub.try_join("s1", "tok-b", dead)

        assert await hub.broadcast("s1", {"type": "presence"}) == 1
        assert await hub.participant_count("s1") == 1

    @pytest.mark.asyncio
    async def test_empty_room(self, hub):
        assert await hub.broadcast("nobody", {"type": "presence"}) == 0


class TestPresenceExpiry:
    @pytest.mark.asyncio
    async def test_stale_sockets_are_reclaimed(self, hub, clock):
        quiet, chatty = MockWS("quiet"), MockWS("chatty")
        await hub.try_join("s1", "tok-a", quiet, max_participants=2)
        await hub.try_join("s1", "tok-b", chatty, max_participants=2)

        clock.advance(60)
        await hub.touch("s1", chatty)
        clock.advance(60)

        assert await hub.prune_stale(90) == 1
        assert quiet.closed_with == 1001
        assert chatty.closed_with is None
        assert await hub.try_join("s1", "tok-c", MockWS(), max_participants=2) == 2
