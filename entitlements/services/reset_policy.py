"""
Daily reset policy for trade counters.

Subscriptions roll over at local midnight in the subscriber's IANA zone.
Forex licenses roll over on the UTC calendar date. The two products are
kept on different clocks on purpose.
"""

from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from entitlements.models.subscription import UserSubscription
from entitlements.utils.logging import get_logger
from entitlements.utils.time_utils import ensure_utc

logger = get_logger(__name__)


@lru_cache(maxsize=256)
def resolve_timezone(tz_name: Optional[str]) -> ZoneInfo:
    """Return the zone for ``tz_name``, falling back to UTC for unknown names."""
    if not tz_name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{tz_name}', using UTC for daily resets")
        return ZoneInfo("UTC")


def next_reset_boundary(after: datetime, tz_name: Optional[str]) -> datetime:
    """UTC instant of the first local midnight strictly after ``after``.

    Built from the local calendar date rather than ``after + 24h`` so a DST
    shift never moves the boundary off midnight.
    """
    zone = resolve_timezone(tz_name)
    local = ensure_utc(after).astimezone(zone)
    next_day = local.date() + timedelta(days=1)
    boundary = datetime.combine(next_day, time.min, tzinfo=zone)
    return boundary.astimezone(timezone.utc)


def apply_lazy_reset(subscription: UserSubscription, now: datetime) -> bool:
    """Zero the daily counter if the reset boundary has passed.

    Returns True when the record changed. Calling it again with the same
    ``now`` is a no-op.
    """
    now = ensure_utc(now)
    if now <= ensure_utc(subscription.daily_trades_reset_at):
        return False

    subscription.daily_trades_used = 0
    subscription.daily_trades_reset_at = next_reset_boundary(now, subscription.timezone)
    logger.debug(
        f"Daily counter reset for user {subscription.user_id}, "
        f"next reset at {subscription.daily_trades_reset_at.isoformat()}"
    )
    return True


def utc_trade_day(value: datetime) -> date:
    """Calendar day of ``value`` in UTC."""
    return ensure_utc(value).date()


def is_new_utc_day(last_trade: Optional[datetime], now: datetime) -> bool:
    if last_trade is None:
        return True
    return utc_trade_day(last_trade) != utc_trade_day(now)
