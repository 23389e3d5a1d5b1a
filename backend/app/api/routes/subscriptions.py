import json
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Header, Request

from app import crud
from app.api.deps import CurrentUser, SessionDep
from app.billing.plans import pricing_plans
from app.billing.razorpay import (
    RazorpayClient,
    apply_period_end,
    handle_webhook_event,
    verify_webhook_signature,
)
from app.billing.usage import get_query_usage
from app.core.config import settings
from app.core.errors import already_exists, invalid_argument, unauthenticated, unavailable
from app.models import (
    CancelRequest,
    CancelResponse,
    CurrentSubscription,
    PricingPlan,
    SubscriptionPublic,
    UpgradeRequest,
    UpgradeResponse,
    UsageResponse,
    UserTier,
    WebhookAck,
    get_datetime_utc,
)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
logger = logging.getLogger(__name__)


@router.get("/plans", response_model=list[PricingPlan])
def read_plans() -> Any:
    return pricing_plans()


@router.get("/current", response_model=CurrentSubscription)
def read_current_subscription(session: SessionDep, current_user: CurrentUser) -> Any:
    subscription = crud.get_or_create_subscription(session=session, user_id=current_user.id)
    subscription = apply_period_end(session, subscription, current_user)
    return CurrentSubscription(
        subscription=SubscriptionPublic.model_validate(subscription),
        query_usage=get_query_usage(session, current_user),
    )


@router.get("/usage", response_model=UsageResponse)
def read_usage(session: SessionDep, current_user: CurrentUser) -> Any:
    return UsageResponse(usage=get_query_usage(session, current_user), tier=current_user.tier)


@router.post("/upgrade", response_model=UpgradeResponse)
async def upgrade(session: SessionDep, current_user: CurrentUser, body: UpgradeRequest) -> Any:
    """Start a Pro checkout. Pro is only granted once the payment webhook arrives."""
    subscription = crud.get_or_create_subscription(session=session, user_id=current_user.id)
    subscription = apply_period_end(session, subscription, current_user)
    if subscription.tier == UserTier.PRO:
        raise already_exists("Pro subscription", str(current_user.id))

    link_id, checkout_url = await RazorpayClient().create_payment_link(
        user=current_user,
        cycle=body.billing_cycle,
        callback_url=f"{settings.FRONTEND_URL}/settings/billing?checkout=complete",
    )
    subscription.checkout_session_id = link_id
    subscription.pending_billing_cycle = body.billing_cycle
    subscription.updated_at = get_datetime_utc()
    session.add(subscription)
    session.commit()
    return UpgradeResponse(checkout_url=checkout_url, session_id=link_id)


@router.post("/cancel", response_model=CancelResponse)
def cancel(session: SessionDep, current_user: CurrentUser, body: CancelRequest) -> Any:
    subscription = crud.get_or_create_subscription(session=session, user_id=current_user.id)
    if subscription.tier != UserTier.PRO:
        raise invalid_argument("You do not have an active Pro subscription", {"reason": "not_pro"})
    subscription.cancel_at_period_end = True
    subscription.updated_at = get_datetime_utc()
    session.add(subscription)
    session.commit()
    session.refresh(subscription)
    logger.info("User %s cancelled Pro (reason=%s)", current_user.id, body.reason)
    return CancelResponse(
        cancel_at_period_end=True, period_end=subscription.current_period_end
    )


@router.post("/reactivate", response_model=SubscriptionPublic)
def reactivate(session: SessionDep, current_user: CurrentUser) -> Any:
    subscription = crud.get_or_create_subscription(session=session, user_id=current_user.id)
    subscription = apply_period_end(session, subscription, current_user)
    if subscription.tier != UserTier.PRO or not subscription.cancel_at_period_end:
        raise invalid_argument(
            "There is no pending cancellation to undo", {"reason": "not_cancelled"}
        )
    subscription.cancel_at_period_end = False
    subscription.updated_at = get_datetime_utc()
    session.add(subscription)
    session.commit()
    session.refresh(subscription)
    return subscription


@router.post("/webhooks/razorpay", response_model=WebhookAck)
async def razorpay_webhook(
    request: Request,
    session: SessionDep,
    x_razorpay_signature: Annotated[str | None, Header()] = None,
) -> Any:
    if not settings.RAZORPAY_WEBHOOK_SECRET:
        raise unavailable("Payments", "Payment webhooks are not configured")

    body = await request.body()
    if not verify_webhook_signature(body, x_razorpay_signature, settings.RAZORPAY_WEBHOOK_SECRET):
        logger.warning("Rejected Razorpay webhook with an invalid signature")
        raise unauthenticated("Invalid webhook signature")
    try:
        event = json.loads(body)
    except json.JSONDecodeError:
        raise invalid_argument("Webhook body is not valid JSON")
    if not isinstance(event, dict):
        raise invalid_argument("Webhook body must be a JSON object")

    handled = handle_webhook_event(session, event)
    logger.info("Processed Razorpay event %s (handled=%s)", event.get("event"), handled)
    return WebhookAck()
