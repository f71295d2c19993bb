"""Retry backoff policy shared by jobs and outbound deliveries."""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from marketdesk.core.config import settings


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: base * multiplier**exponent, optionally capped.

    ``cap_seconds`` of None (or 0) means uncapped. ``jitter_seconds`` adds a
    uniform random delay on top of the capped value.
    """

    base_seconds: float = 1.0
    multiplier: float = 2.0
    cap_seconds: float | None = None
    jitter_seconds: float = 0.0

    def delay_seconds(self, exponent: int) -> float:
        delay = self.base_seconds * (self.multiplier ** max(exponent, 0))
        if self.cap_seconds:
            delay = min(delay, self.cap_seconds)
        if self.jitter_seconds:
            delay += random.uniform(0, self.jitter_seconds)
        return delay

    def next_run_at(self, exponent: int, now: datetime | None = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=self.delay_seconds(exponent))


def job_backoff_policy() -> BackoffPolicy:
    """2^attempts seconds, capped when JOB_BACKOFF_CAP_SECONDS is set."""
    return BackoffPolicy(
        base_seconds=1.0,
        multiplier=2.0,
        cap_seconds=settings.JOB_BACKOFF_CAP_SECONDS or None,
    )


def delivery_backoff_policy() -> BackoffPolicy:
    """One minute base, doubling, capped at an hour."""
    return BackoffPolicy(
        base_seconds=settings.OUTBOUND_BACKOFF_BASE_SECONDS,
        multiplier=2.0,
        cap_seconds=settings.OUTBOUND_BACKOFF_CAP_SECONDS,
    )


# Rate-limited sub-item fetches: 2s, 4s, 8s ... at most 60s.
ITEM_RATE_LIMIT_BACKOFF = BackoffPolicy(base_seconds=2.0, multiplier=2.0, cap_seconds=60.0)
