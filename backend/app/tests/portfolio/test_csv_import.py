import pytest

from app.core.errors import APIError
from app.portfolio.csv_import import (
    CSV_HEADERS,
    csv_template,
    merge_holdings,
    normalize_header,
    parse_holdings_csv,
)
from app.portfolio.holdings import load_holdings


def test_parse_valid_csv():
    text = (
        "symbol,quantity,avg_price,current_price,asset_type,sector\n"
        "infy,10,1400,1500,equity,IT\n"
        "NIFTYBEES,100,\"1,200.50\",250,etf,Index\n"
    )

    result = parse_holdings_csv(text)

    assert result.errors == []
    assert [h.symbol for h in result.holdings] == ["INFY", "NIFTYBEES"]
    assert result.holdings[0].unrealized_pnl == pytest.approx(1000)
    assert result.holdings[1].avg_price == pytest.approx(1200.5)


def test_invalid_rows_are_reported_by_line_number():
    text = (
        "symbol,quantity,avg_price,current_price\n"
        "INFY,10,1400,1500\n"
        "TCS,abc,3000,3500\n"
        "HDFCBANK,-5,1600,1500\n"
        ",1,1,1\n"
    )

    result = parse_holdings_csv(text)

    assert [h.symbol for h in result.holdings] == ["INFY"]
    assert [e["row"] for e in result.errors] == [3, 4, 5]
    assert "quantity must be a number" in result.errors[0]["message"]
    assert "quantity" in result.errors[1]["message"]
    assert result.errors[2]["message"] == "symbol is required"


def test_defaults_asset_type_to_equity():
    result = parse_holdings_csv("symbol,quantity,avg_price,current_price\nITC,1,400,410\n")
    assert result.holdings[0].asset_type == "equity"


def test_header_variants_are_normalized():
    assert normalize_header("Avg Price") == "avg_price"
    assert normalize_header("avgPrice") == "avg_price"
    assert normalize_header(" current-price ") == "current_price"

    result = parse_holdings_csv("Symbol,Quantity,Avg Price,Current Price\nITC,1,400,410\n")
    assert len(result.holdings) == 1


def test_missing_columns_fail_the_whole_file():
    with pytest.raises(APIError) as exc_info:
        parse_holdings_csv("symbol,quantity\nINFY,10\n")
    assert exc_info.value.message == "CSV is missing required columns: avg_price, current_price"


def test_empty_file():
    with pytest.raises(APIError, match="CSV file is empty"):
        parse_holdings_csv("   \n")


def test_merge_strategies(sample_holdings):
    existing = load_holdings(sample_holdings[:2])
    incoming = parse_holdings_csv("symbol,quantity,avg_price,current_price\nINFY,20,1400,1500\n").holdings

    replaced = merge_holdings(existing, incoming, "replace")
    assert [h.symbol for h in replaced] == ["INFY"]

    merged = merge_holdings(existing, incoming, "merge")
    assert {h.symbol: h.quantity for h in merged} == {"INFY": 20, "HDFCBANK": 5}


def test_template_parses_cleanly():
    template, headers = csv_template()

    assert headers == CSV_HEADERS
    result = parse_holdings_csv(template)
    assert result.errors == []
    assert result.holdings[0].symbol == "INFY"


@pytest.mark.parametrize("price", ["inf", "nan", "-inf"])
def test_non_finite_prices_are_row_errors(price):
    text = f"symbol,quantity,avg_price,current_price\nINFY,10,1400,1500\nTCS,1,3000,{price}\n"

    result = parse_holdings_csv(text)

    assert [h.symbol for h in result.holdings] == ["INFY"]
    assert [e["row"] for e in result.errors] == [3]
    assert "current_price" in result.errors[0]["message"]


def test_rows_with_extra_fields_are_reported_and_skipped():
    text = (
        "symbol,quantity,avg_price,current_price\n"
        "INFY,10,100,110\n"
        "TCS,1,2,3,4,5\n"
        "ITC,1,400,410\n"
    )

    result = parse_holdings_csv(text)

    assert [h.symbol for h in result.holdings] == ["INFY", "ITC"]
    assert result.errors == [{"row": 3, "message": "expected 4 fields, got 6"}]
