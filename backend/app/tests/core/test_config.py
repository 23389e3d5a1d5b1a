import pytest
from pydantic import ValidationError

from app.core.config import Settings

REQUIRED = {
    "JWT_SECRET": "x" * 32,
    "ZERODHA_API_KEY": "key",
    "ZERODHA_API_SECRET": "secret",
    "LLM_API_KEY": "sk-test",
}


def test_defaults():
    s = Settings(**REQUIRED)

    assert s.API_V1_STR == "/api/v1"
    assert s.JWT_EXPIRY == "7d"
    assert s.FREE_TIER_QUERY_LIMIT == 50
    assert s.ENABLE_CSV_IMPORT is True


def test_short_jwt_secret_is_rejected():
    with pytest.raises(ValidationError):
        Settings(**{**REQUIRED, "JWT_SECRET": "too-short"})


def test_bad_expiry_is_rejected():
    with pytest.raises(ValidationError, match="Invalid expiry format"):
        Settings(**{**REQUIRED, "JWT_EXPIRY": "seven days"})


def test_changethis_secret_is_rejected_outside_local():
    with pytest.raises(ValidationError):
        Settings(**{**REQUIRED, "JWT_SECRET": "changethis" + "x" * 30, "ENVIRONMENT": "production"})


def test_cors_origins_include_frontend():
    s = Settings(**REQUIRED, BACKEND_CORS_ORIGINS="http://a.test, http://b.test/")

    assert s.all_cors_origins == ["http://a.test", "http://b.test", "http://localhost:5173"]


def test_database_uri_falls_back_to_postgres():
    s = Settings(**REQUIRED, DATABASE_URL="", POSTGRES_PASSWORD="pw", POSTGRES_SERVER="db")

    assert s.SQLALCHEMY_DATABASE_URI == "postgresql+psycopg://postgres:pw@db:5432/kitemate"
