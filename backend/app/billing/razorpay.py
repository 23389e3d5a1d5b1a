"""Razorpay payment links, webhook verification and subscription state changes."""
import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

import httpx
from sqlmodel import Session, select

from app.core.config import settings
from app.core.errors import payment_error, unavailable
from app.models import (
    BillingCycle,
    Subscription,
    SubscriptionStatus,
    User,
    UserTier,
    as_utc,
    get_datetime_utc,
)

logger = logging.getLogger(__name__)

PROVIDER = "razorpay"
PERIOD_LENGTH = {
    BillingCycle.MONTHLY: timedelta(days=30),
    BillingCycle.ANNUAL: timedelta(days=365),
}


def plan_amount_cents(cycle: BillingCycle) -> int:
    if cycle == BillingCycle.ANNUAL:
        return settings.PRO_ANNUAL_PRICE_CENTS
    return settings.PRO_MONTHLY_PRICE_CENTS


def verify_webhook_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Razorpay signs the raw request body with HMAC-SHA256 (hex digest)."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


class RazorpayClient:
    def __init__(
        self,
        key_id: str | None = None,
        key_secret: str | None = None,
        *,
        base_url: str | None = None,
        timeout: float = 15.0,
    ):
        self.key_id = key_id or settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret or settings.RAZORPAY_KEY_SECRET
        self.base_url = (base_url or settings.RAZORPAY_API_URL).rstrip("/")
        self.timeout = timeout

    async def create_payment_link(
        self,
        *,
        user: User,
        cycle: BillingCycle,
        callback_url: str,
    ) -> tuple[str, str]:
        """Create a hosted payment link; returns `(link_id, short_url)`."""
        if not (self.key_id and self.key_secret):
            raise unavailable("Payments", "Payments are not configured")

        body = {
            "amount": plan_amount_cents(cycle),
            "currency": settings.BILLING_CURRENCY,
            "description": f"KiteMate Pro ({cycle.value})",
            "reference_id": uuid.uuid4().hex[:40],
            "customer": {"email": user.email, "name": user.full_name or user.email},
            "notify": {"email": True},
            "callback_url": callback_url,
            "callback_method": "get",
            "notes": {"user_id": str(user.id), "billing_cycle": cycle.value},
        }
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
                response = await client.post(
                    "/payment_links", json=body, auth=(self.key_id, self.key_secret)
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise payment_error(PROVIDER, exc)

        data = response.json()
        logger.info("Created Razorpay payment link %s for user %s", data.get("id"), user.id)
        return data["id"], data["short_url"]


def activate_pro(
    session: Session,
    subscription: Subscription,
    user: User,
    cycle: BillingCycle,
    now: datetime | None = None,
) -> Subscription:
    now = now or get_datetime_utc()
    subscription.tier = UserTier.PRO
    subscription.status = SubscriptionStatus.ACTIVE
    subscription.payment_provider = PROVIDER
    subscription.billing_cycle = cycle
    subscription.amount_cents = plan_amount_cents(cycle)
    subscription.currency = settings.BILLING_CURRENCY
    subscription.current_period_start = now
    subscription.current_period_end = now + PERIOD_LENGTH[cycle]
    subscription.cancel_at_period_end = False
    subscription.checkout_session_id = None
    subscription.pending_billing_cycle = None
    subscription.updated_at = now
    user.tier = UserTier.PRO
    session.add(subscription)
    session.add(user)
    session.commit()
    session.refresh(subscription)
    logger.info("Activated Pro (%s) for user %s", cycle.value, user.id)
    return subscription


def downgrade_to_free(session: Session, subscription: Subscription, user: User) -> Subscription:
    subscription.tier = UserTier.FREE
    subscription.status = SubscriptionStatus.CANCELLED
    subscription.cancel_at_period_end = False
    subscription.updated_at = get_datetime_utc()
    user.tier = UserTier.FREE
    session.add(subscription)
    session.add(user)
    session.commit()
    session.refresh(subscription)
    logger.info("Downgraded user %s to free tier", user.id)
    return subscription


def apply_period_end(
    session: Session, subscription: Subscription, user: User, now: datetime | None = None
) -> Subscription:
    """Downgrade a Pro subscription whose paid period is over and was cancelled or not renewed."""
    now = now or get_datetime_utc()
    period_end = as_utc(subscription.current_period_end)
    if subscription.tier == UserTier.PRO and period_end is not None and period_end <= now:
        return downgrade_to_free(session, subscription, user)
    return subscription


def _entity(event: dict[str, Any], name: str) -> dict[str, Any]:
    return ((event.get("payload") or {}).get(name) or {}).get("entity") or {}


def _user_for_subscription(session: Session, subscription: Subscription) -> User | None:
    return session.get(User, subscription.user_id)


def handle_webhook_event(session: Session, event: dict[str, Any]) -> bool:
    """Apply a verified Razorpay event. Returns False for events that are ignored."""
    event_type = event.get("event", "")

    if event_type == "payment_link.paid":
        link = _entity(event, "payment_link")
        subscription = session.exec(
            select(Subscription).where(Subscription.checkout_session_id == link.get("id"))
        ).first()
        if subscription is None:
            logger.warning("Paid payment link %s matches no pending checkout", link.get("id"))
            return False
        user = _user_for_subscription(session, subscription)
        if user is None:
            return False
        activate_pro(session, subscription, user, subscription.pending_billing_cycle or BillingCycle.MONTHLY)
        return True

    if event_type in ("payment.failed", "payment_link.cancelled", "payment_link.expired"):
        notes = _entity(event, "payment").get("notes") or _entity(event, "payment_link").get("notes") or {}
        try:
            user_id = uuid.UUID(str(notes.get("user_id")))
        except ValueError:
            logger.warning("Razorpay %s event without a usable user_id note", event_type)
            return False
        subscription = session.exec(
            select(Subscription).where(Subscription.user_id == user_id)
        ).first()
        if subscription is None:
            return False
        if subscription.tier == UserTier.PRO and event_type == "payment.failed":
            subscription.status = SubscriptionStatus.PAST_DUE
        subscription.checkout_session_id = None
        subscription.pending_billing_cycle = None
        subscription.updated_at = get_datetime_utc()
        session.add(subscription)
        session.commit()
        return True

    logger.info("Ignoring Razorpay event %s", event_type)
    return False
