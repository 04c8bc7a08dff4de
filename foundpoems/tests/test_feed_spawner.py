"""
foundpoems/tests/test_feed_spawner.py
Feed spawner: cursor semantics, first-poll modes, dedup and failure isolation.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from foundpoems.core.database import get_db_session, sessions
from foundpoems.core.errors import FeedError
from foundpoems.core.metrics import feed_polls_total
from foundpoems.features.sessions.service import list_sessions
from foundpoems.features.streams.feed import next_start_time, normalize_entries
from foundpoems.features.streams.service import create_stream, get_stream, join_stream
from foundpoems.models.stream import CreateStreamRequest
from foundpoems.tests.mocks import LOREM, FakeFetcher, feed_entry, invite_tokens
from foundpoems.workers.spawner import (
    FIRST_POLL_ALL,
    FIRST_POLL_LATEST,
    FIRST_POLL_NONE,
    select_new_items,
    spawn_session_for_item,
    sync_streams,
)

NOW = datetime(2030, 3, 10, 12, 0, tzinfo=timezone.utc)
T1 = NOW - timedelta(hours=3)
T2 = NOW - timedelta(hours=2)
T3 = NOW - timedelta(hours=1)
FEED = "https://example.com/feed.xml"


def _stream(feed_url: str = FEED, **overrides):
    fields = dict(
        title="Harbor Dispatch",
        rssUrl=feed_url,
        minParticipants=1,
        maxParticipants=4,
        durationMinutes=20,
        timeOfDay="18:30",
    )
    fields.update(overrides)
    return create_stream(CreateStreamRequest(**fields), now=NOW - timedelta(days=1))


def _session_count() -> int:
    with get_db_session() as db:
        return db.execute(select(func.count()).select_from(sessions)).scalar_one()


class TestCursor:
    def test_unchanged_feed_creates_nothing(self):
        stream = _stream()
        fetcher = FakeFetcher({FEED: [feed_entry("G1", T1)]})
        sync_streams(now=NOW, fetcher=fetcher)
        assert _session_count() == 1
        cursor = get_stream(stream.stream_id)
        assert cursor.last_item_guid == "G1"
        assert cursor.last_item_published_at == T1

        result = sync_streams(now=NOW, fetcher=fetcher)
        assert result["created"] == 0
        assert _session_count() == 1
        again = get_stream(stream.stream_id)
        assert again.last_item_guid == "G1"
        assert again.last_item_published_at == T1

    def test_only_newer_items_spawn(self):
        stream = _stream()
        sync_streams(now=NOW, fetcher=FakeFetcher({FEED: [feed_entry("G1", T1)]}))

        fetcher = FakeFetcher({FEED: [feed_entry("G3", T3), feed_entry("G1", T1), feed_entry("G2", T2)]})
        result = sync_streams(now=NOW, fetcher=fetcher)
        assert result["created"] == 2
        assert get_stream(stream.stream_id).last_item_guid == "G3"

    def test_cursor_never_moves_backwards(self):
        stream = _stream()
        sync_streams(now=NOW, fetcher=FakeFetcher({FEED: [feed_entry("G2", T2)]}))
        sync_streams(now=NOW, fetcher=FakeFetcher({FEED: [feed_entry("G1", T1)]}))
        assert get_stream(stream.stream_id).last_item_published_at == T2
        assert _session_count() == 1

    def test_select_new_items_is_strictly_after_cursor(self):
        items = normalize_entries([feed_entry("G1", T1), feed_entry("G2", T2)], "Fallback", [], NOW)
        assert [i.guid for i in select_new_items(items, T1)] == ["G2"]
        assert select_new_items(items, T2) == []


class TestFirstPoll:
    ENTRIES = [feed_entry("G1", T1), feed_entry("G2", T2), feed_entry("G3", T3)]

    def test_latest_mode_spawns_newest_only(self):
        _stream()
        result = sync_streams(now=NOW, fetcher=FakeFetcher({FEED: self.ENTRIES}), first_poll_mode=FIRST_POLL_LATEST)
        assert result["created"] == 1
        assert list_sessions()[0].feed_item_guid == "G3"

    def test_none_mode_only_sets_cursor(self):
        stream = _stream()
        result = sync_streams(now=NOW, fetcher=FakeFetcher({FEED: self.ENTRIES}), first_poll_mode=FIRST_POLL_NONE)
        assert result["created"] == 0
        assert get_stream(stream.stream_id).last_item_guid == "G3"

    def test_all_mode_spawns_everything(self):
        _stream()
        result = sync_streams(now=NOW, fetcher=FakeFetcher({FEED: self.ENTRIES}), first_poll_mode=FIRST_POLL_ALL)
        assert result["created"] == 3

    def test_empty_feed_leaves_cursor_unset(self):
        stream = _stream()
        sync_streams(now=NOW, fetcher=FakeFetcher({FEED: []}))
        assert get_stream(stream.stream_id).last_item_published_at is None


class TestSpawn:
    def test_spawned_session_shape(self):
        stream = _stream(timeOfDay="18:30")
        join_stream(stream.slug, "Poet@Example.com")
        sync_streams(now=NOW, fetcher=FakeFetcher({FEED: [feed_entry("G1", T1, title="Tide Report")]}))

        record = list_sessions()[0]
        assert record.title == "Tide Report"
        assert record.stream_id == stream.stream_id
        assert record.starts_at == datetime(2030, 3, 10, 18, 30, tzinfo=timezone.utc)
        assert record.ends_at - record.starts_at == timedelta(minutes=20)
        assert list(invite_tokens(record.session_id)) == ["poet@example.com"]

    def test_same_item_twice_is_deduplicated(self):
        stream = _stream()
        item = normalize_entries([feed_entry("G1", T1)], stream.title, [], NOW)[0]
        assert spawn_session_for_item(stream, item, NOW) is not None
        assert spawn_session_for_item(stream, item, NOW) is None

    def test_undated_item_spawns_once_across_polls(self):
        _stream()
        fetcher = FakeFetcher({FEED: [{"id": "G-undated", "summary": LOREM}]})
        counts = []
        for minutes in (0, 5, 10):
            sync_streams(now=NOW + timedelta(minutes=minutes), fetcher=fetcher)
            counts.append(_session_count())
        assert counts == [1, 1, 1]

    def test_undated_item_is_flagged(self):
        item = normalize_entries([{"id": "G-undated", "summary": LOREM}], "F", [], NOW)[0]
        assert item.dated is False
        assert item.published_at == NOW
        assert normalize_entries([feed_entry("G1", T1)], "F", [], NOW)[0].dated is True

    def test_items_without_content_are_skipped(self):
        _stream()
        fetcher = FakeFetcher({FEED: [feed_entry("G1", T1, summary="<p> </p>")]})
        assert sync_streams(now=NOW, fetcher=fetcher)["created"] == 0

    def test_failing_stream_does_not_stop_others(self):
        _stream(feed_url="https://broken.example.com/rss")
        healthy = _stream(feed_url=FEED, title="Second Stream")
        fetcher = FakeFetcher({
            "https://broken.example.com/rss": FeedError("Feed fetch failed: boom"),
            FEED: [feed_entry("G1", T1)],
        })
        result = sync_streams(now=NOW, fetcher=fetcher)
        assert result == {"streams": 2, "created": 1, "failed": 1}
        assert list_sessions()[0].stream_id == healthy.stream_id
        assert feed_polls_total.value({"outcome": "error"}) == 1


class TestStartTime:
    def test_later_today(self):
        anchor = datetime(2030, 3, 10, 9, 15, tzinfo=timezone.utc)
        assert next_start_time("18:30", anchor) == datetime(2030, 3, 10, 18, 30, tzinfo=timezone.utc)

    def test_rolls_to_next_day(self):
        anchor = datetime(2030, 3, 10, 19, 0, tzinfo=timezone.utc)
        assert next_start_time("18:30", anchor) == datetime(2030, 3, 11, 18, 30, tzinfo=timezone.utc)

    def test_exact_match_is_today(self):
        anchor = datetime(2030, 3, 10, 18, 30, tzinfo=timezone.utc)
        assert next_start_time("18:30", anchor) == anchor

    def test_local_timezone(self):
        anchor = datetime(2030, 7, 1, 12, 0, tzinfo=timezone.utc)
        start = next_start_time("9:00", anchor, "America/New_York")
        assert start == datetime(2030, 7, 1, 13, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ["24:00", "9:60", "nine"])
    def test_invalid_time_of_day_rejected(self, value):
        from pydantic import ValidationError

        with pytest.raises(ValidationError):
            CreateStreamRequest(
                title="Bad Time",
                rssUrl=FEED,
                minParticipants=1,
                maxParticipants=2,
                durationMinutes=10,
                timeOfDay=value,
            )
