"""Session segmentation over stored message timestamps.

A session is a run of user/assistant messages with no gap of
gap_threshold_minutes or more between consecutive messages.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .errors import StoreUnavailable
from .logging import JSONLLogger, get_logger
from .models import Message, SessionInfo, UnsummarizedSession
from .store import GraphStore, utcnow

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class SessionConfig:
    """Configuration for session segmentation."""

    gap_threshold_minutes: float = 30.0


def gap_minutes(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 60


class SessionSegmenter:
    """Detects session boundaries and closed sessions awaiting a summary."""

    def __init__(
        self,
        store: GraphStore,
        config: SessionConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        event_log: JSONLLogger | None = None,
    ) -> None:
        self.store = store
        self.config = config or SessionConfig()
        self.clock = clock
        self.event_log = event_log or get_logger()

    @property
    def gap_threshold(self) -> float:
        return self.config.gap_threshold_minutes

    async def detect_session(self) -> SessionInfo:
        """Report whether the next message starts a new session.

        With no messages at all, a new session starts now. Otherwise the
        session is new when the last message is at least the threshold old.
        If the store is unavailable a neutral "not new, unknown start" is
        returned.
        """
        now = self.clock()
        try:
            last = await asyncio.to_thread(self.store.get_last_message_time)
            if last is None:
                return SessionInfo(
                    is_new_session=True,
                    current_session_start=now,
                    last_message_time=None,
                    gap_minutes=0.0,
                )

            gap = gap_minutes(last, now)
            is_new = gap >= self.gap_threshold
            start = now if is_new else await self.find_current_session_start()
        except StoreUnavailable as e:
            self._degraded("detect_session", e)
            return SessionInfo(
                is_new_session=False,
                current_session_start=None,
                last_message_time=None,
                gap_minutes=0.0,
            )

        return SessionInfo(
            is_new_session=is_new,
            current_session_start=start,
            last_message_time=last,
            gap_minutes=gap,
        )

    async def find_current_session_start(self) -> datetime | None:
        """Timestamp of the first message in the unbroken recent run.

        Walks back from the newest message until the gap to the next-older
        message reaches the threshold. Without such a gap the session started
        with the oldest message.
        """
        times = await asyncio.to_thread(self.store.get_message_times)
        if not times:
            return None

        newest_first = list(reversed(times))
        for newer, older in zip(newest_first, newest_first[1:]):
            if gap_minutes(older, newer) >= self.gap_threshold:
                return newer
        return newest_first[-1]

    async def get_unsummarized_previous_session(
        self, covers_until: datetime | None = None
    ) -> UnsummarizedSession | None:
        """The closed, not yet summarized messages before the latest session break.

        Args:
            covers_until: Exclusive bound already summarized. Defaults to the
                latest stored summary's bound, or the epoch.

        Returns:
            Messages after covers_until and before the most recent gap of at
            least the threshold, or None if there is no such gap (the session
            is still open) or the store is unavailable.
        """
        try:
            if covers_until is None:
                summary = await asyncio.to_thread(self.store.get_latest_summary)
                covers_until = summary.covers_until if summary else EPOCH

            messages = await asyncio.to_thread(self.store.get_messages, covers_until)
        except StoreUnavailable as e:
            self._degraded("get_unsummarized_previous_session", e)
            return None

        boundary = self._last_boundary(messages)
        if boundary is None:
            return None

        closed = messages[:boundary]
        if not closed:
            return None

        return UnsummarizedSession(
            start=closed[0].created_at,
            end=closed[-1].created_at,
            messages=closed,
        )

    async def get_messages_since(self, session_start: datetime, limit: int = 50) -> list[Message]:
        """The most recent `limit` messages at or after session_start, oldest first."""
        if limit <= 0:
            return []
        try:
            return await asyncio.to_thread(
                self.store.get_messages, None, None, limit, session_start
            )
        except StoreUnavailable as e:
            self._degraded("get_messages_since", e)
            return []

    def _last_boundary(self, messages: list[Message]) -> int | None:
        """Index of the first message after the most recent qualifying gap."""
        boundary = None
        for index in range(1, len(messages)):
            gap = gap_minutes(messages[index - 1].created_at, messages[index].created_at)
            if gap >= self.gap_threshold:
                boundary = index
        return boundary

    def _degraded(self, operation: str, error: Exception) -> None:
        logger.warning("Message store unavailable in %s: %s", operation, error)
        self.event_log.log_degraded(operation, "store_unavailable", error=str(error))
