import logging
from typing import Any

from fastapi import APIRouter

from app.api.deps import CurrentUser, SessionDep
from app.core.errors import APIError, permission_denied
from app.core.security import create_state_token, verify_state_token
from app.models import (
    SuccessResponse,
    ZerodhaCallback,
    ZerodhaCallbackResponse,
    ZerodhaLoginResponse,
    ZerodhaStatus,
)
from app.portfolio.broker import KiteClient

router = APIRouter(prefix="/auth/zerodha", tags=["zerodha"])
logger = logging.getLogger(__name__)


@router.get("/login", response_model=ZerodhaLoginResponse)
def initiate_zerodha_login(current_user: CurrentUser) -> Any:
    state = create_state_token(current_user.id)
    return ZerodhaLoginResponse(auth_url=KiteClient().login_url(state), state=state)


@router.post("/callback", response_model=ZerodhaCallbackResponse)
async def zerodha_callback(
    session: SessionDep, current_user: CurrentUser, payload: ZerodhaCallback
) -> Any:
    if not verify_state_token(payload.state, current_user.id):
        raise permission_denied("OAuth state mismatch. Please restart the Zerodha login.")

    broker_session = await KiteClient().generate_session(payload.request_token)
    current_user.zerodha_user_id = broker_session.user_id
    current_user.zerodha_access_token = broker_session.access_token
    current_user.zerodha_token_expires_at = broker_session.expires_at
    session.add(current_user)
    session.commit()
    logger.info("Connected Zerodha account %s for user %s", broker_session.user_id, current_user.id)
    return ZerodhaCallbackResponse(zerodha_user_id=broker_session.user_id)


@router.get("/status", response_model=ZerodhaStatus)
def zerodha_status(current_user: CurrentUser) -> Any:
    connected = current_user.zerodha_connected
    return ZerodhaStatus(
        connected=connected,
        zerodha_user_id=current_user.zerodha_user_id if connected else None,
        token_expires_at=current_user.zerodha_token_expires_at if connected else None,
    )


@router.post("/disconnect", response_model=SuccessResponse)
async def disconnect_zerodha(session: SessionDep, current_user: CurrentUser) -> Any:
    if current_user.zerodha_connected:
        try:
            await KiteClient().invalidate_session(current_user.zerodha_access_token or "")
        except APIError as exc:
            # The local disconnect still goes ahead; the token dies at 06:00 IST anyway.
            logger.warning("Could not invalidate Kite session for %s: %s", current_user.id, exc)
    current_user.zerodha_user_id = None
    current_user.zerodha_access_token = None
    current_user.zerodha_token_expires_at = None
    session.add(current_user)
    session.commit()
    return SuccessResponse()
