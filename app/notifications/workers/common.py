"""Helpers shared by the notification sweeps."""

from __future__ import annotations

from datetime import datetime, timezone as dt_timezone

from django.utils import timezone
from django.utils.dateparse import parse_datetime


def resolve_now(now: str | datetime | None) -> datetime:
    """
    Current time for a sweep.

    Celery tasks take ``now`` as an optional ISO string so beat runs and
    tests can pin the clock. Naive values are taken as UTC.

    Raises:
        ValueError: If ``now`` is not a valid ISO datetime
    """
    if now is None:
        return timezone.now()
    if isinstance(now, str):
        parsed = parse_datetime(now)
        if parsed is None:
            raise ValueError(f"Invalid ISO datetime: {now!r}")
        now = parsed
    if timezone.is_naive(now):
        now = timezone.make_aware(now, dt_timezone.utc)
    return now
