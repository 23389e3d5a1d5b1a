import logging
from typing import Any

from fastapi import APIRouter

from app import crud
from app.api.deps import CurrentUser, SessionDep
from app.core.errors import already_exists, permission_denied, unauthenticated
from app.core.security import create_access_token
from app.models import AuthResponse, SuccessResponse, User, UserLogin, UserPublic, UserRegister

router = APIRouter(prefix="/auth", tags=["login"])
logger = logging.getLogger(__name__)


def _auth_response(user: User) -> AuthResponse:
    return AuthResponse(
        access_token=create_access_token(user.id, user.email, user.tier),
        user=UserPublic.model_validate(user),
    )


@router.post("/register", response_model=AuthResponse)
def register(session: SessionDep, user_in: UserRegister) -> Any:
    if crud.get_user_by_email(session=session, email=user_in.email):
        raise already_exists("User", user_in.email)
    user = crud.create_user(session=session, user_create=user_in)
    crud.get_or_create_subscription(session=session, user_id=user.id)
    logger.info("Registered user %s", user.id)
    return _auth_response(user)


@router.post("/login", response_model=AuthResponse)
def login(session: SessionDep, credentials: UserLogin) -> Any:
    user = crud.authenticate(
        session=session, email=credentials.email, password=credentials.password
    )
    if not user:
        raise unauthenticated("Invalid email or password")
    if not user.is_active:
        raise permission_denied("Inactive user")
    return _auth_response(user)


@router.post("/logout", response_model=SuccessResponse)
def logout(current_user: CurrentUser) -> Any:
    # Tokens are stateless; the client discards its copy.
    return SuccessResponse()


@router.get("/me", response_model=UserPublic)
def read_me(current_user: CurrentUser) -> Any:
    return current_user
