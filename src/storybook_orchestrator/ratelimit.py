"""Per-user, per-operation request counter over a trailing window.

The check is read-then-write with no lock around it. Two concurrent requests
from the same user can both read ``count = ceiling - 1`` and both be admitted,
so a burst may overshoot the ceiling by a few requests. Storage failures fail
open: a broken rate-limit table must not take the whole API down with it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from storybook_orchestrator.errors import DuplicateRecordError
from storybook_orchestrator.storage.base import StoryStorage

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 3600


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RateLimiter:
    def __init__(
        self,
        storage: StoryStorage,
        *,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.storage = storage
        self.window_seconds = window_seconds
        self._clock = clock

    def allow(self, user_id: str, operation: str, ceiling: int) -> bool:
        """Count one request and return whether it is admitted."""
        now = self._clock()
        since = now - timedelta(seconds=self.window_seconds)
        try:
            window = self.storage.get_rate_window(user_id, operation, since)
            if window is None:
                self.storage.create_rate_window(
                    user_id=user_id,
                    operation=operation,
                    window_start=now,
                    window_seconds=self.window_seconds,
                    max_requests=ceiling,
                )
                return True
            if window.request_count >= ceiling:
                logger.info(
                    "rate_limit event=denied user_id=%s operation=%s count=%d ceiling=%d",
                    user_id,
                    operation,
                    window.request_count,
                    ceiling,
                )
                return False
            self.storage.increment_rate_window(window.window_id)
            return True
        except DuplicateRecordError:
            # Another request opened the same window first; admit this one.
            return True
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "rate_limit event=check_failed user_id=%s operation=%s reason=%s",
                user_id,
                operation,
                exc,
            )
            return True
