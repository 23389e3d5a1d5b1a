import logging
import uuid
from typing import Any

from pydantic import ValidationError
from sqlmodel import Session

from app import crud
from app.agent.artifacts import WidgetDSL
from app.agent.dsl_executor import execute_cached
from app.core.errors import not_found
from app.models import Portfolio
from app.portfolio.holdings import NormalizedHolding, load_holdings

logger = logging.getLogger(__name__)


def get_portfolio_or_404(session: Session, user_id: uuid.UUID) -> Portfolio:
    portfolio = crud.get_portfolio(session=session, user_id=user_id)
    if portfolio is None:
        raise not_found(
            "Portfolio not found. Connect Zerodha or import a CSV first.",
            {"reason": "portfolio_not_found", "user_id": str(user_id)},
        )
    return portfolio


def portfolio_holdings(portfolio: Portfolio | None) -> list[NormalizedHolding]:
    return load_holdings(portfolio.holdings) if portfolio else []


def portfolio_version(portfolio: Portfolio | None) -> str:
    """Changes whenever the stored holdings change; used as a cache key component."""
    if portfolio is None or portfolio.last_sync is None:
        return "none"
    return portfolio.last_sync.isoformat()


def compute_widget_data(portfolio: Portfolio | None, user_id: uuid.UUID, config: dict[str, Any]) -> dict[str, Any] | None:
    """Run a stored widget config against `portfolio`; None when there is nothing to run it on."""
    if portfolio is None:
        return None
    try:
        dsl = WidgetDSL.model_validate(config)
    except ValidationError as exc:
        logger.warning("Stored widget config no longer validates: %s", exc.errors()[:1])
        return None
    data, _ = execute_cached(
        dsl,
        portfolio_holdings(portfolio),
        user_id=str(user_id),
        portfolio_version=portfolio_version(portfolio),
    )
    return data
