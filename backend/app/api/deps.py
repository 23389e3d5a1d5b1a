import uuid
from collections.abc import Generator
from typing import Annotated

from fastapi import Depends, Header
from sqlmodel import Session

from app.core.db import get_session
from app.core.errors import permission_denied, unauthenticated
from app.core.security import extract_token_from_header, verify_token
from app.models import TokenPayload, User


def get_db() -> Generator[Session, None, None]:
    yield from get_session()


SessionDep = Annotated[Session, Depends(get_db)]


def get_token_payload(
    authorization: Annotated[str | None, Header()] = None,
) -> TokenPayload:
    return verify_token(extract_token_from_header(authorization))


TokenDep = Annotated[TokenPayload, Depends(get_token_payload)]


def get_current_user(session: SessionDep, payload: TokenDep) -> User:
    try:
        user_id = uuid.UUID(payload.sub)
    except ValueError:
        raise unauthenticated("Invalid or malformed token.")
    user = session.get(User, user_id)
    if not user:
        raise unauthenticated("User not found. Please login again.")
    if not user.is_active:
        raise permission_denied("Inactive user")
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]
