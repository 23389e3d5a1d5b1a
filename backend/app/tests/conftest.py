import os

# Settings are read at import time, so the environment must be in place first.
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret-key-that-is-at-least-32-chars"
os.environ["ZERODHA_API_KEY"] = "kite_test_key"
os.environ["ZERODHA_API_SECRET"] = "kite_test_secret"
os.environ["LLM_API_KEY"] = "sk-test"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "whsec_test"
os.environ["FREE_TIER_QUERY_LIMIT"] = "50"

import uuid
from collections.abc import Callable, Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from app import crud
from app.agent.dsl_executor import execution_cache
from app.core.db import engine, init_db
from app.core.security import create_access_token
from app.main import app
from app.models import Portfolio, User, UserRegister
from app.portfolio.holdings import normalize_portfolio

SAMPLE_HOLDINGS: list[dict[str, Any]] = [
    {
        "symbol": "INFY",
        "quantity": 10,
        "avg_price": 1400.0,
        "current_price": 1500.0,
        "unrealized_pnl": 1000.0,
        "asset_type": "equity",
        "sector": "Information Technology",
        "exchange": "NSE",
        "purchase_date": "2024-01-15",
        "day_change": 10.0,
    },
    {
        "symbol": "HDFCBANK",
        "quantity": 5,
        "avg_price": 1600.0,
        "current_price": 1500.0,
        "unrealized_pnl": -500.0,
        "asset_type": "equity",
        "sector": "Financials",
        "exchange": "NSE",
        "purchase_date": "2024-03-10",
    },
    {
        "symbol": "NIFTYBEES",
        "quantity": 100,
        "avg_price": 200.0,
        "current_price": 250.0,
        "unrealized_pnl": 5000.0,
        "asset_type": "etf",
        "sector": "Index",
        "exchange": "NSE",
        "purchase_date": "2024-03-20",
    },
]


@pytest.fixture(scope="session", autouse=True)
def _schema() -> Generator[None, None, None]:
    init_db()
    yield


@pytest.fixture(autouse=True)
def _clean_database() -> Generator[None, None, None]:
    yield
    with Session(engine) as session:
        for table in reversed(SQLModel.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
    execution_cache.clear()


@pytest.fixture()
def db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def create_user(db: Session) -> Callable[..., User]:
    def _create(email: str | None = None, password: str = "s3cret-pass", **fields: Any) -> User:
        user = crud.create_user(
            session=db,
            user_create=UserRegister(
                email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
                password=password,
                full_name=fields.pop("full_name", "Test Investor"),
            ),
        )
        if fields:
            user.sqlmodel_update(fields)
            db.add(user)
            db.commit()
            db.refresh(user)
        return user

    return _create


@pytest.fixture()
def headers_for() -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        token = create_access_token(user.id, user.email, user.tier)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def user(create_user: Callable[..., User]) -> User:
    return create_user(email="investor@example.com", username="investor")


@pytest.fixture()
def auth_headers(user: User, headers_for: Callable[[User], dict[str, str]]) -> dict[str, str]:
    return headers_for(user)


@pytest.fixture()
def seed_portfolio(db: Session) -> Callable[..., Portfolio]:
    def _seed(owner: User, holdings: list[dict[str, Any]] | None = None) -> Portfolio:
        normalized = normalize_portfolio(
            str(owner.id), "csv", holdings if holdings is not None else SAMPLE_HOLDINGS
        )
        return crud.save_portfolio(session=db, user_id=owner.id, normalized=normalized)

    return _seed


@pytest.fixture()
def sample_holdings() -> list[dict[str, Any]]:
    return [dict(h) for h in SAMPLE_HOLDINGS]
