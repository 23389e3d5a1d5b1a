from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from app.core.config import settings
from app.core.errors import unauthenticated
from app.core.security import create_state_token
from app.portfolio.broker import BrokerSession

API = settings.API_V1_STR


def test_health_endpoints(client):
    assert client.get(f"{API}/utils/health-check/").json() is True

    for service in ("auth", "portfolio"):
        body = client.get(f"{API}/{service}/health").json()
        assert body["status"] == "ok"
        assert body["service"] == service
        assert "timestamp" in body


def test_register_login_and_me(client):
    registered = client.post(
        f"{API}/auth/register",
        json={"email": "new@example.com", "password": "long-password", "full_name": "New User"},
    )
    assert registered.status_code == 200
    body = registered.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["email"] == "new@example.com"
    assert body["user"]["tier"] == "free"

    login = client.post(
        f"{API}/auth/login", json={"email": "new@example.com", "password": "long-password"}
    )
    assert login.status_code == 200
    token = login.json()["access_token"]

    me = client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["full_name"] == "New User"
    assert me.json()["zerodha_connected"] is False


def test_register_duplicate_email(client, user):
    response = client.post(
        f"{API}/auth/register", json={"email": user.email, "password": "long-password"}
    )
    assert response.status_code == 409
    assert response.json()["code"] == "already_exists"


def test_login_with_wrong_password(client, user):
    response = client.post(f"{API}/auth/login", json={"email": user.email, "password": "nope"})

    assert response.status_code == 401
    assert response.json() == {
        "code": "unauthenticated",
        "message": "Invalid email or password",
        "details": None,
    }


def test_request_validation_is_invalid_argument(client):
    response = client.post(f"{API}/auth/register", json={"email": "not-an-email", "password": "x"})

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "invalid_argument"
    fields = {error["field"] for error in body["details"]["errors"]}
    assert {"email", "password"} <= fields


def test_protected_route_requires_token(client):
    missing = client.get(f"{API}/auth/me")
    assert missing.status_code == 401
    assert missing.json()["message"] == "Missing Authorization header."

    bad = client.get(f"{API}/auth/me", headers={"Authorization": "Bearer garbage"})
    assert bad.status_code == 401
    assert bad.json()["code"] == "unauthenticated"


def test_inactive_user_is_refused(client, create_user, headers_for):
    inactive = create_user(is_active=False)
    response = client.get(f"{API}/auth/me", headers=headers_for(inactive))
    assert response.status_code == 403


def test_logout(client, auth_headers):
    assert client.post(f"{API}/auth/logout", headers=auth_headers).json() == {"success": True}


def test_zerodha_login_returns_signed_state(client, auth_headers):
    body = client.get(f"{API}/auth/zerodha/login", headers=auth_headers).json()

    assert body["auth_url"].startswith(settings.ZERODHA_LOGIN_URL)
    assert body["state"]


def test_zerodha_callback_connects_account(client, db, user, auth_headers):
    broker_session = BrokerSession(
        user_id="AB1234",
        access_token="kite-token",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=12),
    )

    with patch(
        "app.api.routes.zerodha.KiteClient.generate_session",
        new=AsyncMock(return_value=broker_session),
    ):
        response = client.post(
            f"{API}/auth/zerodha/callback",
            headers=auth_headers,
            json={"request_token": "req-token", "state": create_state_token(user.id)},
        )

    assert response.status_code == 200
    assert response.json()["zerodha_user_id"] == "AB1234"

    status = client.get(f"{API}/auth/zerodha/status", headers=auth_headers).json()
    assert status["connected"] is True
    assert status["zerodha_user_id"] == "AB1234"


def test_zerodha_callback_rejects_foreign_state(client, create_user, auth_headers):
    other = create_user()
    response = client.post(
        f"{API}/auth/zerodha/callback",
        headers=auth_headers,
        json={"request_token": "req-token", "state": create_state_token(other.id)},
    )
    assert response.status_code == 403


def test_zerodha_disconnect_survives_upstream_failure(client, create_user, headers_for):
    connected = create_user(
        zerodha_user_id="AB1234",
        zerodha_access_token="kite-token",
        zerodha_token_expires_at=datetime.now(timezone.utc) + timedelta(hours=2),
    )

    with patch(
        "app.api.routes.zerodha.KiteClient.invalidate_session",
        new=AsyncMock(side_effect=unauthenticated("expired")),
    ):
        response = client.post(f"{API}/auth/zerodha/disconnect", headers=headers_for(connected))

    assert response.status_code == 200
    status = client.get(f"{API}/auth/zerodha/status", headers=headers_for(connected)).json()
    assert status == {"connected": False, "zerodha_user_id": None, "token_expires_at": None}
