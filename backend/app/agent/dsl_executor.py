"""
Validation and execution of widget DSL objects against a user's holdings.

Execution is pure: it takes validated holdings and returns a JSON-ready
`{"operation", "field", "rows", "total"}` payload. Holdings are stored as
JSON on the portfolio row, so there is no SQL to generate here.
"""
import hashlib
import json
import logging
from collections import OrderedDict
from datetime import date
from typing import Any

from pydantic import ValidationError

from app.agent.artifacts import WidgetDSL
from app.portfolio.holdings import NormalizedHolding, filter_holdings

logger = logging.getLogger(__name__)

DEFAULT_GROUP_BY = "sector"


def validate_dsl(raw: Any) -> list[dict[str, str]]:
    """Return a list of `{path, message}` problems; empty when the DSL is valid."""
    try:
        WidgetDSL.model_validate(raw)
    except ValidationError as exc:
        return [
            {
                "path": ".".join(str(part) for part in err["loc"]) or "$",
                "message": err["msg"],
            }
            for err in exc.errors()
        ]
    return []


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _group_key(holding: NormalizedHolding, group_by: str) -> str:
    if group_by == "sector":
        return holding.sector or "Unknown"
    if group_by == "asset_type":
        return holding.asset_type
    if group_by == "symbol":
        return holding.symbol
    purchased = _parse_date(holding.purchase_date)
    return purchased.isoformat() if purchased else "Unknown"


def _holding_row(holding: NormalizedHolding) -> dict[str, Any]:
    return {
        "symbol": holding.symbol,
        "sector": holding.sector or "Unknown",
        "asset_type": holding.asset_type,
        "quantity": holding.quantity,
        "avg_price": round(holding.avg_price, 2),
        "current_price": round(holding.current_price, 2),
        "value": round(holding.value, 2),
        "pnl": round(holding.unrealized_pnl, 2),
        "returns": round(holding.pnl_percent, 2),
        "purchase_date": holding.purchase_date,
    }


def _metric_key(field: str) -> str:
    if field == "pnl":
        return "pnl"
    if field in ("returns", "performance"):
        return "returns"
    return "value"


def _aggregate(holdings: list[NormalizedHolding], field: str, group_by: str) -> list[dict[str, Any]]:
    groups: dict[str, dict[str, float]] = {}
    for holding in holdings:
        bucket = groups.setdefault(
            _group_key(holding, group_by), {"value": 0.0, "cost": 0.0, "pnl": 0.0, "count": 0}
        )
        bucket["value"] += holding.value
        bucket["cost"] += holding.cost
        bucket["pnl"] += holding.unrealized_pnl
        bucket["count"] += 1

    total_value = sum(bucket["value"] for bucket in groups.values())
    rows = []
    for label, bucket in groups.items():
        row: dict[str, Any] = {
            "label": label,
            "value": round(bucket["value"], 2),
            "pnl": round(bucket["pnl"], 2),
            "returns": round(bucket["pnl"] / bucket["cost"] * 100, 2) if bucket["cost"] else 0.0,
            "count": int(bucket["count"]),
        }
        if field in ("allocation", "holdings"):
            row["percentage"] = round(bucket["value"] / total_value * 100, 2) if total_value else 0.0
        rows.append(row)
    return rows


def _timeseries(
    holdings: list[NormalizedHolding], start: date | None, end: date | None
) -> list[dict[str, Any]]:
    """Bucket holdings by purchase month and accumulate invested cost and current value."""
    months: dict[str, dict[str, float]] = {}
    for holding in holdings:
        purchased = _parse_date(holding.purchase_date)
        if purchased is None:
            continue
        if (start and purchased < start) or (end and purchased > end):
            continue
        bucket = months.setdefault(purchased.strftime("%Y-%m"), {"cost": 0.0, "value": 0.0})
        bucket["cost"] += holding.cost
        bucket["value"] += holding.value

    rows = []
    invested = value = 0.0
    for month in sorted(months):
        invested += months[month]["cost"]
        value += months[month]["value"]
        rows.append(
            {
                "label": month,
                "invested": round(invested, 2),
                "value": round(value, 2),
                "pnl": round(value - invested, 2),
                "returns": round((value - invested) / invested * 100, 2) if invested else 0.0,
            }
        )
    return rows


def _sort_value(row: dict[str, Any], key: str) -> tuple[bool, Any]:
    # Missing values are grouped together and never compared with present ones.
    value = row.get(key)
    return value is None, value if value is not None else 0


def execute_dsl(dsl: WidgetDSL, holdings: list[NormalizedHolding]) -> dict[str, Any]:
    query = dsl.query
    filters = query.filters
    selected = (
        filter_holdings(
            holdings,
            symbol=filters.symbol,
            sector=filters.sector,
            asset_type=filters.asset_type,
            min_value=filters.min_value,
            max_value=filters.max_value,
        )
        if filters
        else list(holdings)
    )

    metric = _metric_key(query.field)
    if query.operation == "aggregate":
        rows = _aggregate(selected, query.field, query.group_by or DEFAULT_GROUP_BY)
        sort_key = query.sort_by or metric
        rows.sort(key=lambda row: _sort_value(row, sort_key), reverse=query.sort_order != "asc")
    elif query.operation == "timeseries":
        start = query.time_range.from_ if query.time_range else None
        end = query.time_range.to if query.time_range else None
        rows = _timeseries(selected, start, end)
    else:
        rows = [_holding_row(h) for h in selected]
        if query.operation == "sort" or query.sort_by:
            sort_key = query.sort_by or metric
            default_desc = query.operation == "sort" and query.sort_order is None
            rows.sort(
                key=lambda row: _sort_value(row, sort_key),
                reverse=query.sort_order == "desc" or default_desc,
            )

    total = len(rows)
    if query.limit:
        rows = rows[: query.limit]
    return {"operation": query.operation, "field": query.field, "rows": rows, "total": total}


class DSLExecutionCache:
    """Small LRU of execution results keyed by user, portfolio sync time and DSL."""

    def __init__(self, max_entries: int = 256):
        self.max_entries = max_entries
        self._entries: OrderedDict[str, dict[str, Any]] = OrderedDict()

    @staticmethod
    def make_key(user_id: str, portfolio_version: str, dsl: WidgetDSL) -> str:
        body = json.dumps(dsl.to_config(), sort_keys=True)
        digest = hashlib.sha256(body.encode("utf-8")).hexdigest()
        return f"{user_id}:{portfolio_version}:{digest}"

    def get(self, key: str) -> dict[str, Any] | None:
        if key not in self._entries:
            return None
        self._entries.move_to_end(key)
        return self._entries[key]

    def put(self, key: str, value: dict[str, Any]) -> None:
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()


execution_cache = DSLExecutionCache()


def execute_cached(
    dsl: WidgetDSL,
    holdings: list[NormalizedHolding],
    *,
    user_id: str,
    portfolio_version: str,
) -> tuple[dict[str, Any], bool]:
    key = DSLExecutionCache.make_key(user_id, portfolio_version, dsl)
    cached = execution_cache.get(key)
    if cached is not None:
        return cached, True
    result = execute_dsl(dsl, holdings)
    execution_cache.put(key, result)
    logger.debug("Executed DSL for user %s (%s rows)", user_id, result["total"])
    return result, False
