"""API quota tracking with a mandatory preflight.

The platform allows a fixed number of calls per window and per quota class
(core, secrets, graphql). The tracker keeps one counter per class, refreshed
from ``x-ratelimit-*`` response headers after every call (last write wins),
and refuses reservations that would take a class below its safety margin.

All reads and writes of the counters go through one ``asyncio.Lock``, so a
reservation can never interleave with a refresh.

Safety margins default to 100 for classes with a limit of 1000 calls or more
and 10 for smaller classes; both can be overridden per class.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from .exceptions import RateLimitExhausted, SyncError
from .models import QuotaRecord, QuotaType, utcnow

if TYPE_CHECKING:
    from .store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5000
LARGE_WINDOW_MARGIN = 100
SMALL_WINDOW_MARGIN = 10
LARGE_WINDOW_THRESHOLD = 1000


@dataclass(frozen=True)
class RateLimitWindow:
    remaining: int
    limit: int
    reset_at: datetime


def parse_rate_limit_headers(headers: Mapping[str, str]) -> RateLimitWindow | None:
    """Read ``x-ratelimit-remaining/limit/reset`` from a response.

    Returns:
        The window, or None if the headers are absent or malformed
    """
    try:
        remaining = int(headers["x-ratelimit-remaining"])
        limit = int(headers["x-ratelimit-limit"])
        reset = int(headers["x-ratelimit-reset"])
    except (KeyError, ValueError):
        return None

    return RateLimitWindow(
        remaining=remaining,
        limit=limit,
        reset_at=datetime.fromtimestamp(reset, tz=UTC),
    )


class QuotaTracker:
    """Per-class call counters for one project.

    Args:
        project_id: Project the counters belong to
        store: Optional state store for persisting refreshed counters
        safety_margins: Per-class margin overrides
        default_limits: Assumed window size when nothing is known yet
        fetch_windows: Coroutine returning the current windows of every class,
            used when no fresh counter exists (e.g. GET /rate_limit)
        freshness_seconds: Age after which a stored counter is re-fetched
        persist: Save refreshed counters to the store (False for dry runs)

    Example:
        >>> tracker = QuotaTracker("acme/api")
        >>> await tracker.refresh(QuotaType.SECRETS, remaining=50, limit=5000, reset_at=later)
        >>> await tracker.check_and_reserve(QuotaType.SECRETS, 1)
        Traceback (most recent call last):
        RateLimitExhausted: Rate limit for 'secrets' exhausted: 50/5000 remaining, ...
    """

    def __init__(
        self,
        project_id: str,
        store: StateStore | None = None,
        safety_margins: Mapping[QuotaType, int] | None = None,
        default_limits: Mapping[QuotaType, int] | None = None,
        fetch_windows: Callable[[], Awaitable[dict[QuotaType, RateLimitWindow]]] | None = None,
        freshness_seconds: float = 300.0,
        persist: bool = True,
    ) -> None:
        self.project_id = project_id
        self._store = store
        self._margins = dict(safety_margins or {})
        self._default_limits = dict(default_limits or {})
        self._fetch_windows = fetch_windows
        self._freshness = timedelta(seconds=freshness_seconds)
        self._persist = persist
        self._records: dict[QuotaType, QuotaRecord] = {}
        self._lock = asyncio.Lock()

    def safety_margin(self, quota_type: QuotaType, limit: int) -> int:
        if quota_type in self._margins:
            return self._margins[quota_type]
        return LARGE_WINDOW_MARGIN if limit >= LARGE_WINDOW_THRESHOLD else SMALL_WINDOW_MARGIN

    async def check_and_reserve(self, quota_type: QuotaType, estimated_calls: int = 1) -> int:
        """Reserve ``estimated_calls`` from a quota class.

        Args:
            quota_type: Quota class to draw from
            estimated_calls: Calls the caller is about to make

        Returns:
            Calls remaining after the reservation

        Raises:
            RateLimitExhausted: If remaining is below the safety margin, or the
                reservation would take it below the margin
        """
        async with self._lock:
            record = await self._current(quota_type)
            margin = self.safety_margin(quota_type, record.limit)

            if record.remaining < margin or record.remaining - estimated_calls < margin:
                logger.warning(
                    f"Quota preflight failed for {quota_type.value}: "
                    f"{record.remaining}/{record.limit} remaining, margin {margin}, "
                    f"requested {estimated_calls}"
                )
                raise RateLimitExhausted(
                    quota_type=quota_type.value,
                    remaining=record.remaining,
                    limit=record.limit,
                    reset_at=record.reset_at,
                    requested=estimated_calls,
                )

            record = record.model_copy(update={"remaining": record.remaining - estimated_calls})
            self._records[quota_type] = record
            logger.debug(
                f"Reserved {estimated_calls} {quota_type.value} calls, {record.remaining} left"
            )
            return record.remaining

    async def refresh(
        self,
        quota_type: QuotaType,
        remaining: int,
        limit: int,
        reset_at: datetime,
    ) -> None:
        """Replace the counter of a class with values reported by the platform."""
        async with self._lock:
            await self._apply(quota_type, RateLimitWindow(remaining, limit, reset_at))

    async def refresh_from_headers(
        self, quota_type: QuotaType, headers: Mapping[str, str]
    ) -> None:
        window = parse_rate_limit_headers(headers)
        if window is not None:
            await self.refresh(quota_type, window.remaining, window.limit, window.reset_at)

    async def remaining(self) -> dict[str, int | None]:
        """Known remaining calls per class, without contacting the platform."""
        async with self._lock:
            result: dict[str, int | None] = {}
            for quota_type in QuotaType:
                record = self._records.get(quota_type)
                if record is None and self._store is not None:
                    record = await self._store.load_quota(self.project_id, quota_type)
                result[quota_type.value] = record.remaining if record else None
            return result

    async def _apply(self, quota_type: QuotaType, window: RateLimitWindow) -> QuotaRecord:
        limit = max(0, window.limit)
        record = QuotaRecord(
            project_id=self.project_id,
            quota_type=quota_type,
            remaining=max(0, min(window.remaining, limit)),
            limit=limit,
            reset_at=window.reset_at,
            last_checked_at=utcnow(),
        )
        self._records[quota_type] = record
        if self._store is not None and self._persist:
            await self._store.save_quota(record)
        return record

    async def _current(self, quota_type: QuotaType) -> QuotaRecord:
        """Counter for a class, loading or fetching it when needed (lock held)."""
        now = utcnow()
        record = self._records.get(quota_type)

        if record is None and self._store is not None:
            record = await self._store.load_quota(self.project_id, quota_type)

        is_stale = record is None or now - record.last_checked_at > self._freshness
        if is_stale and self._fetch_windows is not None:
            try:
                windows = await self._fetch_windows()
            except SyncError as e:
                logger.warning(f"Could not fetch rate limits, using last known values: {e}")
            else:
                for fetched_type, window in windows.items():
                    await self._apply(fetched_type, window)
                record = self._records.get(quota_type, record)

        if record is None:
            limit = self._default_limits.get(quota_type, DEFAULT_LIMIT)
            record = QuotaRecord(
                project_id=self.project_id,
                quota_type=quota_type,
                remaining=limit,
                limit=limit,
                reset_at=now + timedelta(hours=1),
                last_checked_at=now,
            )

        if record.reset_at <= now:
            record = record.model_copy(
                update={"remaining": record.limit, "reset_at": now + timedelta(hours=1)}
            )

        self._records[quota_type] = record
        return record


__all__ = ["QuotaTracker", "RateLimitWindow", "parse_rate_limit_headers"]
