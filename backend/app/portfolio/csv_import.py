import io
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal

import pandas as pd

from app.core.errors import APIError, invalid_argument
from app.portfolio.holdings import NormalizedHolding, validate_holding

logger = logging.getLogger(__name__)

CSV_HEADERS = [
    "symbol",
    "quantity",
    "avg_price",
    "current_price",
    "asset_type",
    "sector",
    "exchange",
    "isin",
    "purchase_date",
]
REQUIRED_HEADERS = ["symbol", "quantity", "avg_price", "current_price"]
NUMERIC_HEADERS = ("quantity", "avg_price", "current_price")

SAMPLE_ROW = {
    "symbol": "INFY",
    "quantity": "10",
    "avg_price": "1450.50",
    "current_price": "1520.00",
    "asset_type": "equity",
    "sector": "Information Technology",
    "exchange": "NSE",
    "isin": "INE009A01021",
    "purchase_date": "2024-01-15",
}

MergeStrategy = Literal["replace", "merge"]

RAGGED_ROW_MARKER = "__ragged_row__:"


@dataclass
class CsvParseResult:
    holdings: list[NormalizedHolding] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


def normalize_header(name: str) -> str:
    """'Avg Price', 'avgPrice' and 'avg_price' all become 'avg_price'."""
    name = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", str(name).strip())
    return re.sub(r"[\s\-]+", "_", name).lower()


def _parse_number(raw: str, column: str) -> float:
    cleaned = raw.replace(",", "").strip()
    if not cleaned:
        raise ValueError(f"{column} is required")
    try:
        return float(cleaned)
    except ValueError:
        raise ValueError(f"{column} must be a number, got '{raw}'")


def _row_to_holding(row: dict[str, str]) -> NormalizedHolding:
    numbers = {column: _parse_number(row.get(column, ""), column) for column in NUMERIC_HEADERS}
    if not row.get("symbol", "").strip():
        raise ValueError("symbol is required")

    raw: dict[str, Any] = {
        "symbol": row["symbol"].strip().upper(),
        "quantity": numbers["quantity"],
        "avg_price": numbers["avg_price"],
        "current_price": numbers["current_price"],
        "unrealized_pnl": (numbers["current_price"] - numbers["avg_price"]) * numbers["quantity"],
        "asset_type": (row.get("asset_type") or "equity").strip().lower(),
    }
    for optional in ("sector", "exchange", "isin", "purchase_date"):
        value = (row.get(optional) or "").strip()
        if value:
            raw[optional] = value
    return validate_holding(raw)


def parse_holdings_csv(text: str) -> CsvParseResult:
    """
    Parse CSV text into validated holdings.

    Row errors carry the 1-based line number of the offending row (the header
    is line 1). Valid rows are returned even when other rows fail.
    """
    if not text or not text.strip():
        raise invalid_argument("CSV file is empty")

    try:
        width = len(pd.read_csv(io.StringIO(text), nrows=0, skipinitialspace=True).columns)

        def _flag_ragged_row(fields: list[str]) -> list[str]:
            # Keep the row in place so its line number survives; it is reported below.
            return [f"{RAGGED_ROW_MARKER}{len(fields)}"] + [""] * (width - 1)

        frame = pd.read_csv(
            io.StringIO(text),
            dtype=str,
            engine="python",
            on_bad_lines=_flag_ragged_row,
            index_col=False,
            keep_default_na=False,
            skip_blank_lines=False,
            skipinitialspace=True,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise invalid_argument(f"Could not parse CSV: {exc}")

    frame = frame.fillna("")
    frame.columns = [normalize_header(column) for column in frame.columns]
    missing = [header for header in REQUIRED_HEADERS if header not in frame.columns]
    if missing:
        raise invalid_argument(
            f"CSV is missing required columns: {', '.join(missing)}",
            {"required": REQUIRED_HEADERS, "found": list(frame.columns)},
        )

    result = CsvParseResult()
    for index, record in enumerate(frame.to_dict(orient="records")):
        line_number = index + 2
        row = {key: str(value) for key, value in record.items()}
        first = next(iter(row.values()), "")
        if first.startswith(RAGGED_ROW_MARKER):
            got = first[len(RAGGED_ROW_MARKER):]
            result.errors.append(
                {"row": line_number, "message": f"expected {width} fields, got {got}"}
            )
            continue
        if not any(value.strip() for value in row.values()):
            continue
        try:
            result.holdings.append(_row_to_holding(row))
        except APIError as exc:
            result.errors.append({"row": line_number, "message": exc.message})
        except ValueError as exc:
            result.errors.append({"row": line_number, "message": str(exc)})

    logger.info(
        "Parsed holdings CSV: %s valid rows, %s invalid rows",
        len(result.holdings),
        len(result.errors),
    )
    return result


def merge_holdings(
    existing: list[NormalizedHolding],
    incoming: list[NormalizedHolding],
    strategy: MergeStrategy,
) -> list[NormalizedHolding]:
    if strategy == "replace":
        return list(incoming)

    merged: dict[str, NormalizedHolding] = {h.symbol.upper(): h for h in existing}
    for holding in incoming:
        merged[holding.symbol.upper()] = holding
    return list(merged.values())


def csv_template() -> tuple[str, list[str]]:
    lines = [",".join(CSV_HEADERS), ",".join(SAMPLE_ROW[h] for h in CSV_HEADERS)]
    return "\n".join(lines) + "\n", list(CSV_HEADERS)
