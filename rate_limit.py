# rate_limit.py
"""Fixed-window request counters stored in the rate_limits table."""

import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 60 * 60


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: datetime
    retry_after: Optional[int] = None


def _window(window_seconds: int, now: Optional[float]):
    current = time.time() if now is None else now
    window_start = int(current // window_seconds) * window_seconds
    reset_time = datetime.fromtimestamp(window_start + window_seconds, tz=timezone.utc)
    return current, window_start, reset_time


def check_rate_limit(db, user_id: str, endpoint: str, limit: int,
                     window_seconds: int = DEFAULT_WINDOW_SECONDS, now: Optional[float] = None) -> RateLimitResult:
    """Count one request for the user/endpoint window and report whether it is allowed."""
    current, window_start, reset_time = _window(window_seconds, now)

    try:
        row = db.execute(
            "SELECT requests FROM rate_limits WHERE user_id = ? AND endpoint = ? AND window_start = ?",
            (str(user_id), endpoint, window_start),
        ).fetchone()
        requests_made = row["requests"] if row else 0

        if requests_made >= limit:
            retry_after = max(1, int(reset_time.timestamp() - current + 0.999))
            logger.info("rate_limited user_id=%s endpoint=%s retry_after=%s", user_id, endpoint, retry_after)
            return RateLimitResult(allowed=False, remaining=0, reset_time=reset_time, retry_after=retry_after)

        db.execute(
            """
            INSERT INTO rate_limits (user_id, endpoint, window_start, requests) VALUES (?, ?, ?, 1)
            ON CONFLICT(user_id, endpoint, window_start) DO UPDATE SET requests = requests + 1
            """,
            (str(user_id), endpoint, window_start),
        )
        db.commit()
        return RateLimitResult(allowed=True, remaining=limit - requests_made - 1, reset_time=reset_time)
    except sqlite3.Error as e:
        # a broken counter store must not lock users out
        logger.error("rate_limit_store_error user_id=%s endpoint=%s error=%s", user_id, endpoint, e)
        return RateLimitResult(allowed=True, remaining=limit - 1, reset_time=reset_time)


def get_rate_limit_status(db, user_id: str, endpoint: str, limit: int,
                          window_seconds: int = DEFAULT_WINDOW_SECONDS, now: Optional[float] = None) -> RateLimitResult:
    current, window_start, reset_time = _window(window_seconds, now)
    try:
        row = db.execute(
            "SELECT requests FROM rate_limits WHERE user_id = ? AND endpoint = ? AND window_start = ?",
            (str(user_id), endpoint, window_start),
        ).fetchone()
    except sqlite3.Error as e:
        logger.error("rate_limit_status_error user_id=%s endpoint=%s error=%s", user_id, endpoint, e)
        return RateLimitResult(allowed=True, remaining=limit, reset_time=reset_time)

    requests_made = row["requests"] if row else 0
    allowed = requests_made < limit
    retry_after = None if allowed else max(1, int(reset_time.timestamp() - current + 0.999))
    return RateLimitResult(allowed=allowed, remaining=max(0, limit - requests_made),
                           reset_time=reset_time, retry_after=retry_after)


def cleanup_expired_rate_limits(db, window_seconds: int = DEFAULT_WINDOW_SECONDS, now: Optional[float] = None) -> int:
    _, window_start, _ = _window(window_seconds, now)
    cursor = db.execute("DELETE FROM rate_limits WHERE window_start < ?", (window_start,))
    db.commit()
    return cursor.rowcount
