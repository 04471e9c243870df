"""Tests for session segmentation."""

from datetime import timedelta
from pathlib import Path

import pytest

from conftest import NOW, FixedClock
from mnemos.logging import JSONLLogger
from mnemos.session import SessionConfig, SessionSegmenter, gap_minutes
from mnemos.store import GraphStore

T0 = NOW - timedelta(hours=3)


def add_messages(store: GraphStore, *minutes_after_t0: int, role: str = "user") -> None:
    for minutes in minutes_after_t0:
        store.add_message(role, f"at {minutes}", created_at=T0 + timedelta(minutes=minutes))


def at(minutes: int):
    return T0 + timedelta(minutes=minutes)


@pytest.fixture
def segmenter(store: GraphStore, clock: FixedClock) -> SessionSegmenter:
    return SessionSegmenter(store, clock=clock)


def test_gap_minutes():
    assert gap_minutes(at(0), at(45)) == 45.0


class TestDetectSession:
    @pytest.mark.asyncio
    async def test_no_messages_starts_new_session(self, segmenter: SessionSegmenter):
        info = await segmenter.detect_session()

        assert info.is_new_session is True
        assert info.current_session_start == NOW
        assert info.last_message_time is None
        assert info.gap_minutes == 0.0

    @pytest.mark.asyncio
    async def test_gap_over_threshold_is_new(
        self, store: GraphStore, segmenter: SessionSegmenter, clock: FixedClock
    ):
        add_messages(store, 0, 10)
        clock.now = at(55)

        info = await segmenter.detect_session()

        assert info.is_new_session is True
        assert info.current_session_start == at(55)
        assert info.last_message_time == at(10)
        assert info.gap_minutes == pytest.approx(45.0)

    @pytest.mark.asyncio
    async def test_gap_exactly_at_threshold_is_new(
        self, store: GraphStore, segmenter: SessionSegmenter, clock: FixedClock
    ):
        add_messages(store, 0)
        clock.now = at(30)

        info = await segmenter.detect_session()

        assert info.is_new_session is True

    @pytest.mark.asyncio
    async def test_recent_message_continues_session(
        self, store: GraphStore, segmenter: SessionSegmenter, clock: FixedClock
    ):
        add_messages(store, 0, 60, 75, 80)
        clock.now = at(90)

        info = await segmenter.detect_session()

        assert info.is_new_session is False
        assert info.current_session_start == at(60)
        assert info.last_message_time == at(80)
        assert info.gap_minutes == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_other_roles_ignored(
        self, store: GraphStore, segmenter: SessionSegmenter, clock: FixedClock
    ):
        add_messages(store, 0)
        add_messages(store, 50, role="system")
        clock.now = at(55)

        info = await segmenter.detect_session()

        assert info.is_new_session is True
        assert info.last_message_time == at(0)

    @pytest.mark.asyncio
    async def test_configurable_threshold(self, store: GraphStore, clock: FixedClock):
        add_messages(store, 0, 10)
        clock.now = at(55)
        segmenter = SessionSegmenter(
            store, SessionConfig(gap_threshold_minutes=60), clock=clock
        )

        info = await segmenter.detect_session()

        assert info.is_new_session is False
        assert info.current_session_start == at(0)

    @pytest.mark.asyncio
    async def test_store_unavailable(
        self, tmp_path: Path, clock: FixedClock, event_log: JSONLLogger
    ):
        store = GraphStore(tmp_path / "missing-tables.db", clock=clock)
        segmenter = SessionSegmenter(store, clock=clock)

        info = await segmenter.detect_session()

        assert info.is_new_session is False
        assert info.current_session_start is None
        assert info.last_message_time is None
        assert event_log.degraded_counts() == {"store_unavailable": 1}
        store.close()


class TestFindCurrentSessionStart:
    @pytest.mark.asyncio
    async def test_no_messages(self, segmenter: SessionSegmenter):
        assert await segmenter.find_current_session_start() is None

    @pytest.mark.asyncio
    async def test_without_gap_returns_oldest(
        self, store: GraphStore, segmenter: SessionSegmenter
    ):
        add_messages(store, 0, 20, 40)

        assert await segmenter.find_current_session_start() == at(0)

    @pytest.mark.asyncio
    async def test_returns_message_after_latest_gap(
        self, store: GraphStore, segmenter: SessionSegmenter
    ):
        add_messages(store, 0, 45, 50, 100, 110)

        assert await segmenter.find_current_session_start() == at(100)


class TestUnsummarizedPreviousSession:
    @pytest.mark.asyncio
    async def test_closed_session_returned(
        self, store: GraphStore, segmenter: SessionSegmenter
    ):
        add_messages(store, 0, 5, 10, 60, 65)

        session = await segmenter.get_unsummarized_previous_session()

        assert session is not None
        assert [m.created_at for m in session.messages] == [at(0), at(5), at(10)]
        assert session.start == at(0)
        assert session.end == at(10)

    @pytest.mark.asyncio
    async def test_open_session_returns_none(
        self, store: GraphStore, segmenter: SessionSegmenter
    ):
        add_messages(store, 0, 5, 10)

        assert await segmenter.get_unsummarized_previous_session() is None

    @pytest.mark.asyncio
    async def test_no_messages_returns_none(self, segmenter: SessionSegmenter):
        assert await segmenter.get_unsummarized_previous_session() is None

    @pytest.mark.asyncio
    async def test_everything_before_latest_gap(
        self, store: GraphStore, segmenter: SessionSegmenter
    ):
        add_messages(store, 0, 5, 60, 65, 120)

        session = await segmenter.get_unsummarized_previous_session()

        assert [m.created_at for m in session.messages] == [at(0), at(5), at(60), at(65)]

    @pytest.mark.asyncio
    async def test_covers_until_is_exclusive(
        self, store: GraphStore, segmenter: SessionSegmenter
    ):
        add_messages(store, 0, 5, 10, 60, 65)

        session = await segmenter.get_unsummarized_previous_session(covers_until=at(5))

        assert [m.created_at for m in session.messages] == [at(10)]

    @pytest.mark.asyncio
    async def test_defaults_to_latest_summary(
        self, store: GraphStore, segmenter: SessionSegmenter
    ):
        add_messages(store, 0, 5, 10, 60, 65, 120)
        store.add_summary("First session", covers_until=at(10))

        session = await segmenter.get_unsummarized_previous_session()

        assert [m.created_at for m in session.messages] == [at(60), at(65)]

    @pytest.mark.asyncio
    async def test_already_summarized_returns_none(
        self, store: GraphStore, segmenter: SessionSegmenter
    ):
        add_messages(store, 0, 5, 10, 60, 65)
        store.add_summary("First session", covers_until=at(10))

        assert await segmenter.get_unsummarized_previous_session() is None

    @pytest.mark.asyncio
    async def test_summarizable_threshold(
        self, store: GraphStore, segmenter: SessionSegmenter
    ):
        add_messages(store, 0, 5, 60)

        session = await segmenter.get_unsummarized_previous_session()

        assert session.is_summarizable() is False
        assert session.is_summarizable(min_messages=2) is True


class TestMessagesSince:
    @pytest.mark.asyncio
    async def test_inclusive_start(self, store: GraphStore, segmenter: SessionSegmenter):
        add_messages(store, 0, 60, 65, 70)

        messages = await segmenter.get_messages_since(at(60))

        assert [m.content for m in messages] == ["at 60", "at 65", "at 70"]

    @pytest.mark.asyncio
    async def test_limit_keeps_most_recent(
        self, store: GraphStore, segmenter: SessionSegmenter
    ):
        add_messages(store, 0, 60, 65, 70)

        messages = await segmenter.get_messages_since(at(60), limit=2)

        assert [m.content for m in messages] == ["at 65", "at 70"]

    @pytest.mark.asyncio
    async def test_zero_limit(self, store: GraphStore, segmenter: SessionSegmenter):
        add_messages(store, 0)

        assert await segmenter.get_messages_since(at(0), limit=0) == []
