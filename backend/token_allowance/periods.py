"""
Period and rollover arithmetic.

Pure functions only: no database access, no clock reads. Callers pass in
``now`` so the same code path is used by the service and by the tests.

Timestamps are persisted as ISO-8601 strings normalised to UTC
(``+00:00`` suffix). With a single offset, lexicographic order of the
strings equals chronological order, which is what the ledger range
queries (``$lte`` / ``$gt`` / ``$lt``) rely on.
"""

from datetime import datetime, timezone
from typing import Optional, Tuple, Union


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    return ensure_utc(value).isoformat()


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse a stored timestamp (ISO string or datetime) into an aware UTC datetime."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def current_month_period(now: datetime) -> Tuple[datetime, datetime]:
    """
    Calendar month containing ``now``, as a half-open UTC window.

    period_start = first day of the month at 00:00 UTC
    period_end   = first day of the next month at 00:00 UTC
    """
    now = ensure_utc(now)
    period_start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        period_end = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        period_end = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return period_start, period_end


def resolve_window(
    now: datetime,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None
) -> Tuple[datetime, datetime]:
    """Explicit bounds win; any missing bound falls back to the current month."""
    default_start, default_end = current_month_period(now)
    start = ensure_utc(period_start) if period_start else default_start
    end = ensure_utc(period_end) if period_end else default_end
    return start, end


def is_active(period: dict, now: datetime) -> bool:
    """period_start <= now < period_end"""
    now = ensure_utc(now)
    return (
        parse_timestamp(period["period_start"]) <= now < parse_timestamp(period["period_end"])
    )


def calculate_rollover(previous_period: Optional[dict], base_tokens_granted: int) -> int:
    """
    Unused tokens carried into the next period.

    The leftover of the previous period is clamped to [0, base_tokens_granted]:
    an overspent period rolls nothing over, and a user never carries more than
    one month's base grant.
    """
    if not previous_period:
        return 0

    remaining = (previous_period.get("tokens_granted") or 0) - (previous_period.get("tokens_used") or 0)
    return min(max(remaining, 0), max(base_tokens_granted, 0))


def remaining_tokens(period: dict) -> int:
    return max((period.get("tokens_granted") or 0) - (period.get("tokens_used") or 0), 0)


def tokens_to_credits(tokens: int, tokens_per_credit: int) -> float:
    if tokens_per_credit <= 0:
        return 0.0
    return round(tokens / tokens_per_credit, 2)
