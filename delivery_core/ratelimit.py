from __future__ import annotations

import math
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from .errors import RateLimited
from .models import RateLimitWindow

EPOCH = datetime(1970, 1, 1)


def window_start(now: datetime, window_seconds: int) -> datetime:
    elapsed = (now - EPOCH).total_seconds()
    return EPOCH + timedelta(seconds=math.floor(elapsed / window_seconds) * window_seconds)


def hit(db, key: str, limit: int, window_seconds: int, now: datetime) -> None:
    """
    Count one hit for `key` in the current fixed window, raising RateLimited
    once `limit` hits have been seen. Counters live in the database so every
    worker process shares them.

    Call this before any other write in the unit of work: losing the insert
    race rolls the session back.
    """
    start = window_start(now, window_seconds)
    retry_after = max(1, math.ceil((start + timedelta(seconds=window_seconds) - now).total_seconds()))

    row = db.execute(
        select(RateLimitWindow).where(RateLimitWindow.key == key, RateLimitWindow.window_start == start)
    ).scalar_one_or_none()

    if row is None:
        db.add(RateLimitWindow(key=key, window_start=start, hits=1))
        try:
            db.flush()
        except IntegrityError:
            # a concurrent request opened this window first
            db.rollback()
            raise RateLimited("Rate limited", retry_after=retry_after)
        return

    if row.hits >= limit:
        raise RateLimited("Rate limited", retry_after=retry_after)
    row.hits += 1
    db.flush()


def purge_before(db, cutoff: datetime) -> int:
    """Drop windows that started before `cutoff`."""
    result = db.execute(delete(RateLimitWindow).where(RateLimitWindow.window_start < cutoff))
    return result.rowcount
