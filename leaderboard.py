"""
Leaderboard aggregation.

All-time boards rank the learner's running total; weekly and monthly boards
sum points_history deltas inside a trailing 7 / 30 day window. Boards are
served from the cache backend for a short TTL with the period label and
generation time attached, so callers can see how stale a board is.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

from cache_backend import CacheBackend
from db_stores import LeaderboardStoreDB
from errors import InvalidInput, InvalidPeriod
from progress import to_iso, utcnow

logger = logging.getLogger(__name__)

PERIOD_WINDOWS: dict[str, Optional[int]] = {
    "weekly": 7,
    "monthly": 30,
    "alltime": None,
}


def validate_period(period: str) -> str:
    if period not in PERIOD_WINDOWS:
        raise InvalidPeriod("period must be one of weekly, monthly, alltime")
    return period


class LeaderboardAggregator:
    """Read-only ranking over learners and the points ledger."""

    def __init__(self, cache: CacheBackend | None = None, ttl: int = 60,
                 clock: Callable[[], datetime] = utcnow, max_limit: int = 100) -> None:
        self.cache = cache
        self.ttl = ttl
        self.clock = clock
        self.max_limit = max_limit

    def window_start(self, period: str) -> Optional[datetime]:
        days = PERIOD_WINDOWS[validate_period(period)]
        if days is None:
            return None
        return self.clock() - timedelta(days=days)

    def rank(self, period: str = "alltime", limit: int = 100) -> dict:
        """Ranked board for ``period``: {period, generated_at, cached, entries}."""
        validate_period(period)
        limit = self._clamp_limit(limit)
        key = f"leaderboard:{period}:{limit}"

        if self.cache is not None:
            hit = self.cache.get(key)
            if hit is not None and hit.get("period") == period:
                return {**hit, "cached": True}
            if hit is not None:
                logger.warning("Discarding cached leaderboard with period %r for %r", hit.get("period"), period)
                self.cache.delete(key)

        since = self.window_start(period)
        if since is None:
            entries = LeaderboardStoreDB.alltime(limit)
        else:
            entries = LeaderboardStoreDB.windowed(since, limit)

        payload = {
            "period": period,
            "generated_at": to_iso(self.clock()),
            "entries": entries,
        }
        if self.cache is not None:
            self.cache.set(key, payload, ttl=self.ttl)
        return {**payload, "cached": False}

    def rank_of(self, learner_id: int, period: str = "alltime") -> Optional[int]:
        """1-based position of ``learner_id`` on the board, or None when absent."""
        since = self.window_start(period)
        if since is None:
            return LeaderboardStoreDB.alltime_rank(learner_id)
        return LeaderboardStoreDB.windowed_rank(learner_id, since)

    def _clamp_limit(self, limit) -> int:
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            raise InvalidInput("limit must be an integer")
        if limit < 1:
            raise InvalidInput("limit must be at least 1")
        return min(limit, self.max_limit)


# ── App wiring ────────────────────────────────────────────

EXTENSION_KEY = "leaderboard"


def init_leaderboard(app, clock: Callable[[], datetime] = utcnow) -> LeaderboardAggregator:
    """Build the app's aggregator on top of its cache backend."""
    from cache_backend import EXTENSION_KEY as CACHE_KEY, init_cache

    cache = app.extensions.get(CACHE_KEY) or init_cache(app)
    aggregator = LeaderboardAggregator(
        cache=cache,
        ttl=app.config.get("LEADERBOARD_CACHE_TTL", 60),
        clock=clock,
        max_limit=app.config.get("LEADERBOARD_MAX_LIMIT", 100),
    )
    app.extensions[EXTENSION_KEY] = aggregator
    return aggregator


def _aggregator() -> LeaderboardAggregator:
    from flask import current_app

    aggregator = current_app.extensions.get(EXTENSION_KEY)
    if aggregator is None:
        aggregator = init_leaderboard(current_app._get_current_object())
    return aggregator


def get_leaderboard(period: str = "alltime", limit: int = 100) -> dict:
    return _aggregator().rank(period, limit)


def get_user_rank(learner_id: int, period: str = "alltime") -> Optional[int]:
    return _aggregator().rank_of(learner_id, period)
