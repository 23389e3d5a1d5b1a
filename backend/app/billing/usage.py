"""
Monthly NL-query quota.

Free users get `FREE_TIER_QUERY_LIMIT` queries per calendar month (UTC); the
counter lives on the subscription row and resets lazily the first time it is
read in a new month. Pro users are unlimited.
"""
import logging
from datetime import datetime, timezone

from sqlmodel import Session

from app.core.config import settings
from app.core.errors import resource_exhausted
from app.crud import get_or_create_subscription
from app.models import QueryUsage, Subscription, User, UserTier, as_utc, get_datetime_utc

logger = logging.getLogger(__name__)


def month_start(moment: datetime) -> datetime:
    moment = moment.astimezone(timezone.utc)
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def next_month_start(moment: datetime) -> datetime:
    start = month_start(moment)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def _roll_period(session: Session, subscription: Subscription, now: datetime) -> Subscription:
    period_start = as_utc(subscription.usage_period_start)
    current = month_start(now)
    if period_start is None or period_start < current:
        subscription.usage_period_start = current
        subscription.queries_used = 0
        session.add(subscription)
        session.commit()
        session.refresh(subscription)
    return subscription


def get_query_usage(session: Session, user: User, now: datetime | None = None) -> QueryUsage:
    now = now or get_datetime_utc()
    subscription = _roll_period(session, get_or_create_subscription(session=session, user_id=user.id), now)
    reset_date = next_month_start(now)
    if user.tier == UserTier.PRO:
        return QueryUsage(used=subscription.queries_used, limit=None, remaining=None, reset_date=reset_date)

    limit = settings.FREE_TIER_QUERY_LIMIT
    return QueryUsage(
        used=subscription.queries_used,
        limit=limit,
        remaining=max(0, limit - subscription.queries_used),
        reset_date=reset_date,
    )


def can_query(session: Session, user: User) -> tuple[bool, str, int | None]:
    usage = get_query_usage(session, user)
    if usage.limit is None:
        return True, "pro_tier", None
    if usage.used >= usage.limit:
        return False, "limit_exceeded", 0
    return True, "within_limit", usage.remaining


def ensure_can_query(session: Session, user: User) -> None:
    allowed, _, _ = can_query(session, user)
    if not allowed:
        usage = get_query_usage(session, user)
        raise resource_exhausted(
            f"Monthly query limit of {usage.limit} reached. Upgrade to Pro for unlimited queries.",
            {"reason": "query_limit_exceeded", "reset_date": usage.reset_date.isoformat()},
        )


def increment_query_count(session: Session, user: User) -> QueryUsage:
    subscription = _roll_period(
        session, get_or_create_subscription(session=session, user_id=user.id), get_datetime_utc()
    )
    subscription.queries_used += 1
    session.add(subscription)
    session.commit()
    usage = get_query_usage(session, user)
    logger.info("User %s has used %s queries this month", user.id, usage.used)
    return usage
