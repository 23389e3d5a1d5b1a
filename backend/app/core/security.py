import time
import uuid
from typing import Any

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidSignatureError, InvalidTokenError
from pwdlib import PasswordHash
from pwdlib.hashers.argon2 import Argon2Hasher
from pwdlib.hashers.bcrypt import BcryptHasher

from app.core.config import EXPIRY_PATTERN, settings
from app.core.errors import unauthenticated
from app.models import TokenPayload, UserTier

password_hash = PasswordHash(
    (
        Argon2Hasher(),
        BcryptHasher(),
    )
)


ALGORITHM = "HS256"
STATE_TOKEN_TTL_SECONDS = 600
STATE_TOKEN_PURPOSE = "zerodha_oauth_state"

_EXPIRY_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def parse_expiry(expiry: str) -> int:
    """Parse a duration like '7d', '24h' or '30m' into seconds."""
    match = EXPIRY_PATTERN.match(expiry or "")
    if not match:
        raise ValueError(f"Invalid expiry format: {expiry}")
    value, unit = match.groups()
    return int(value) * _EXPIRY_UNITS[unit]


def create_access_token(user_id: uuid.UUID | str, email: str, tier: UserTier | str) -> str:
    now = int(time.time())
    claims: dict[str, Any] = {
        "sub": str(user_id),
        "email": email,
        "tier": UserTier(tier).value,
        "iat": now,
        "exp": now + parse_expiry(settings.JWT_EXPIRY),
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=ALGORITHM, headers={"typ": "JWT"})


def verify_token(token: str) -> TokenPayload:
    """Verify and decode an access token, raising `unauthenticated` on any failure."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={"require": ["sub", "exp", "iat"]},
        )
        return TokenPayload.model_validate(payload)
    except ExpiredSignatureError:
        raise unauthenticated("Token has expired. Please login again.")
    except InvalidSignatureError:
        raise unauthenticated("Invalid token signature.")
    except (InvalidTokenError, ValueError):
        raise unauthenticated("Invalid or malformed token.")


def extract_token_from_header(auth_header: str | None) -> str:
    if not auth_header:
        raise unauthenticated("Missing Authorization header.")

    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        raise unauthenticated("Invalid Authorization header format. Expected: Bearer <token>")
    return parts[1]


def is_token_expiring_soon(payload: TokenPayload) -> bool:
    return payload.exp - int(time.time()) < 86400


def get_token_lifetime(payload: TokenPayload) -> int:
    return max(0, payload.exp - int(time.time()))


def create_state_token(user_id: uuid.UUID | str) -> str:
    """Short-lived signed token used as the OAuth `state` parameter."""
    now = int(time.time())
    claims = {
        "sub": str(user_id),
        "purpose": STATE_TOKEN_PURPOSE,
        "nonce": uuid.uuid4().hex,
        "iat": now,
        "exp": now + STATE_TOKEN_TTL_SECONDS,
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=ALGORITHM)


def verify_state_token(state: str, user_id: uuid.UUID | str) -> bool:
    try:
        claims = jwt.decode(state, settings.JWT_SECRET, algorithms=[ALGORITHM])
    except InvalidTokenError:
        return False
    return claims.get("purpose") == STATE_TOKEN_PURPOSE and claims.get("sub") == str(user_id)


def verify_password(plain_password: str, hashed_password: str) -> tuple[bool, str | None]:
    return password_hash.verify_and_update(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return password_hash.hash(password)
