"""
Canonical holding schema plus validation and normalization helpers.

Every source (broker sync, CSV import) produces `NormalizedHolding` rows and
goes through `normalize_portfolio` before anything is persisted, so the
invariants below hold for all stored portfolios:

- quantity > 0, prices >= 0
- unrealized_pnl == (current_price - avg_price) * quantity, within 0.01
- portfolio total_value >= 0
"""
import math
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from app.core.errors import APIError, validation_error

PNL_TOLERANCE = 0.01

AssetType = Literal["equity", "mutual_fund", "etf", "bond"]
SortKey = Literal["symbol", "value", "pnl", "quantity"]


class NormalizedHolding(BaseModel):
    model_config = ConfigDict(populate_by_name=True, allow_inf_nan=False)

    symbol: str = Field(min_length=1)
    isin: str | None = None
    quantity: float = Field(gt=0)
    avg_price: float = Field(ge=0, validation_alias=AliasChoices("avg_price", "avgPrice"))
    current_price: float = Field(ge=0, validation_alias=AliasChoices("current_price", "currentPrice"))
    unrealized_pnl: float = Field(validation_alias=AliasChoices("unrealized_pnl", "unrealizedPnL"))
    asset_type: AssetType = Field(validation_alias=AliasChoices("asset_type", "assetType"))
    sector: str | None = None
    exchange: str | None = None
    purchase_date: str | None = Field(
        default=None, validation_alias=AliasChoices("purchase_date", "purchaseDate")
    )
    last_trade_date: str | None = Field(
        default=None, validation_alias=AliasChoices("last_trade_date", "lastTradeDate")
    )
    day_change: float | None = Field(
        default=None, validation_alias=AliasChoices("day_change", "dayChange")
    )
    metadata: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("metadata", "_metadata")
    )

    @property
    def value(self) -> float:
        return self.current_price * self.quantity

    @property
    def cost(self) -> float:
        return self.avg_price * self.quantity

    @property
    def pnl_percent(self) -> float:
        return (self.unrealized_pnl / self.cost * 100) if self.cost else 0.0


class NormalizedPortfolio(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    user_id: str
    source: Literal["zerodha", "csv"]
    last_sync: datetime
    total_value: float = Field(ge=0)
    total_pnl: float
    currency: str = "INR"
    holdings: list[NormalizedHolding]


def calculate_unrealized_pnl(holding: NormalizedHolding) -> float:
    """(current_price - avg_price) * quantity"""
    return (holding.current_price - holding.avg_price) * holding.quantity


def _error_path(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or "holding"


def validate_holding(holding: Any) -> NormalizedHolding:
    try:
        validated = NormalizedHolding.model_validate(holding)
    except ValidationError as exc:
        first = exc.errors()[0]
        raise validation_error(_error_path(first["loc"]), first["msg"], holding)

    expected = calculate_unrealized_pnl(validated)
    actual = validated.unrealized_pnl
    difference = expected - actual
    if not math.isfinite(difference) or abs(difference) > PNL_TOLERANCE:
        raise validation_error(
            "unrealized_pnl",
            f"P&L mismatch: expected {expected:.2f}, got {actual:.2f}",
            validated.symbol,
        )
    return validated


def validate_holdings(holdings: Any) -> list[NormalizedHolding]:
    if not isinstance(holdings, list):
        raise validation_error("holdings", "Holdings must be an array", holdings)

    validated: list[NormalizedHolding] = []
    for index, holding in enumerate(holdings):
        try:
            validated.append(validate_holding(holding))
        except APIError as exc:
            raise validation_error(f"holdings[{index}]", exc.message, holding)
    return validated


def calculate_portfolio_totals(holdings: list[NormalizedHolding]) -> tuple[float, float]:
    total_value = 0.0
    total_pnl = 0.0
    for holding in holdings:
        total_value += holding.value
        total_pnl += holding.unrealized_pnl
    return max(0.0, total_value), total_pnl


def normalize_portfolio(
    user_id: str,
    source: Literal["zerodha", "csv"],
    holdings: list[Any],
    currency: str = "INR",
) -> NormalizedPortfolio:
    """Validate holdings and compute totals; the final step before persisting."""
    validated = validate_holdings(holdings)
    total_value, total_pnl = calculate_portfolio_totals(validated)
    if not (math.isfinite(total_value) and math.isfinite(total_pnl)):
        raise validation_error("total_value", "Portfolio totals must be finite numbers")
    return NormalizedPortfolio(
        user_id=user_id,
        source=source,
        last_sync=datetime.now(timezone.utc),
        total_value=total_value,
        total_pnl=total_pnl,
        currency=currency,
        holdings=validated,
    )


def load_holdings(raw: list[dict[str, Any]]) -> list[NormalizedHolding]:
    """Rehydrate holdings that were validated before they were stored."""
    return [NormalizedHolding.model_validate(item) for item in raw]


def dump_holdings(holdings: list[NormalizedHolding]) -> list[dict[str, Any]]:
    return [h.model_dump(mode="json", exclude_none=True) for h in holdings]


def get_sector_allocation(holdings: list[NormalizedHolding]) -> dict[str, float]:
    allocation: dict[str, float] = {}
    for holding in holdings:
        sector = holding.sector or "Unknown"
        allocation[sector] = allocation.get(sector, 0.0) + holding.value
    return allocation


def get_asset_type_allocation(holdings: list[NormalizedHolding]) -> dict[str, float]:
    allocation: dict[str, float] = {}
    for holding in holdings:
        allocation[holding.asset_type] = allocation.get(holding.asset_type, 0.0) + holding.value
    return allocation


def get_top_gainers(holdings: list[NormalizedHolding], limit: int = 5) -> list[NormalizedHolding]:
    return sorted(holdings, key=lambda h: h.unrealized_pnl, reverse=True)[:limit]


def get_top_losers(holdings: list[NormalizedHolding], limit: int = 5) -> list[NormalizedHolding]:
    return sorted(holdings, key=lambda h: h.unrealized_pnl)[:limit]


def filter_holdings(
    holdings: list[NormalizedHolding],
    *,
    symbol: list[str] | None = None,
    sector: list[str] | None = None,
    asset_type: list[str] | None = None,
    min_value: float | None = None,
    max_value: float | None = None,
) -> list[NormalizedHolding]:
    symbols = {s.upper() for s in symbol} if symbol else None
    sectors = {s.lower() for s in sector} if sector else None
    asset_types = set(asset_type) if asset_type else None

    result = []
    for holding in holdings:
        if symbols is not None and holding.symbol.upper() not in symbols:
            continue
        if sectors is not None and (holding.sector or "unknown").lower() not in sectors:
            continue
        if asset_types is not None and holding.asset_type not in asset_types:
            continue
        if min_value is not None and holding.value < min_value:
            continue
        if max_value is not None and holding.value > max_value:
            continue
        result.append(holding)
    return result


_SORT_KEYS = {
    "symbol": lambda h: h.symbol,
    "value": lambda h: h.value,
    "pnl": lambda h: h.unrealized_pnl,
    "quantity": lambda h: h.quantity,
}


def sort_holdings(
    holdings: list[NormalizedHolding],
    sort_by: SortKey = "symbol",
    sort_order: Literal["asc", "desc"] = "asc",
) -> list[NormalizedHolding]:
    return sorted(holdings, key=_SORT_KEYS[sort_by], reverse=sort_order == "desc")


def _allocation_rows(allocation: dict[str, float], total: float) -> list[dict[str, Any]]:
    rows = [
        {
            "name": name,
            "value": round(value, 2),
            "percentage": round(value / total * 100, 2) if total else 0.0,
        }
        for name, value in allocation.items()
    ]
    return sorted(rows, key=lambda row: row["value"], reverse=True)


def _mover_rows(holdings: list[NormalizedHolding]) -> list[dict[str, Any]]:
    return [
        {
            "symbol": h.symbol,
            "pnl": round(h.unrealized_pnl, 2),
            "pnl_percent": round(h.pnl_percent, 2),
        }
        for h in holdings
    ]


def summarize_portfolio(holdings: list[NormalizedHolding], movers: int = 5) -> dict[str, Any]:
    total_value, total_pnl = calculate_portfolio_totals(holdings)
    day_change = sum((h.day_change or 0.0) * h.quantity for h in holdings)
    previous_value = total_value - day_change
    day_change_percent = (day_change / previous_value * 100) if previous_value > 0 else 0.0

    return {
        "total_value": round(total_value, 2),
        "total_pnl": round(total_pnl, 2),
        "day_change": round(day_change, 2),
        "day_change_percent": round(day_change_percent, 2),
        "allocation": {
            "sector": _allocation_rows(get_sector_allocation(holdings), total_value),
            "asset_type": _allocation_rows(get_asset_type_allocation(holdings), total_value),
        },
        "top_gainers": _mover_rows(
            [h for h in get_top_gainers(holdings, movers) if h.unrealized_pnl > 0]
        ),
        "top_losers": _mover_rows(
            [h for h in get_top_losers(holdings, movers) if h.unrealized_pnl < 0]
        ),
    }
