import logging
from typing import Annotated, Any, Literal

from fastapi import APIRouter, File, Form, Query, UploadFile

from app import crud
from app.api.deps import CurrentUser, SessionDep
from app.core.config import settings
from app.core.errors import invalid_argument, permission_denied
from app.models import (
    CsvImportResponse,
    CsvRowError,
    CsvTemplate,
    HoldingsPage,
    PortfolioPublic,
    PortfolioSyncResponse,
)
from app.portfolio.broker import KiteClient
from app.portfolio.csv_import import csv_template, merge_holdings, parse_holdings_csv
from app.portfolio.holdings import (
    dump_holdings,
    filter_holdings,
    normalize_portfolio,
    sort_holdings,
    summarize_portfolio,
)
from app.portfolio.service import get_portfolio_or_404, portfolio_holdings

router = APIRouter(prefix="/portfolio", tags=["portfolio"])
logger = logging.getLogger(__name__)

MAX_CSV_BYTES = 1024 * 1024


@router.get("/", response_model=PortfolioPublic)
def read_portfolio(session: SessionDep, current_user: CurrentUser) -> Any:
    return get_portfolio_or_404(session, current_user.id)


@router.post("/sync", response_model=PortfolioSyncResponse)
async def sync_portfolio(session: SessionDep, current_user: CurrentUser) -> Any:
    """Pull the latest holdings from Zerodha and replace the stored portfolio."""
    if not current_user.zerodha_connected:
        raise permission_denied(
            "Zerodha account is not connected or the session has expired. Please reconnect.",
            {"reason": "zerodha_not_connected"},
        )

    holdings = await KiteClient().get_holdings(current_user.zerodha_access_token or "")
    normalized = normalize_portfolio(str(current_user.id), "zerodha", dump_holdings(holdings))
    portfolio = crud.save_portfolio(session=session, user_id=current_user.id, normalized=normalized)
    logger.info("Synced %s holdings from Zerodha for user %s", len(holdings), current_user.id)
    return PortfolioSyncResponse(
        portfolio=PortfolioPublic.model_validate(portfolio),
        synced_at=normalized.last_sync,
    )


@router.post("/import-csv", response_model=CsvImportResponse)
async def import_csv(
    session: SessionDep,
    current_user: CurrentUser,
    file: UploadFile = File(...),
    merge_strategy: Literal["replace", "merge"] = Form("replace"),
) -> Any:
    """
    Import holdings from a CSV file.

    Valid rows are imported; invalid rows are reported with their line number.
    The request fails when no row is valid.
    """
    if not settings.ENABLE_CSV_IMPORT:
        raise permission_denied("CSV import is disabled")

    content = await file.read()
    if len(content) > MAX_CSV_BYTES:
        raise invalid_argument("CSV file is too large (max 1 MiB)")
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise invalid_argument("CSV file must be UTF-8 encoded")

    parsed = parse_holdings_csv(text)
    if not parsed.holdings:
        raise invalid_argument(
            "CSV contains no valid holdings",
            {"reason": "csv_invalid", "errors": parsed.errors},
        )

    existing = crud.get_portfolio(session=session, user_id=current_user.id)
    holdings = merge_holdings(portfolio_holdings(existing), parsed.holdings, merge_strategy)
    normalized = normalize_portfolio(
        str(current_user.id),
        "csv",
        dump_holdings(holdings),
        currency=existing.currency if existing else "INR",
    )
    portfolio = crud.save_portfolio(session=session, user_id=current_user.id, normalized=normalized)
    logger.info(
        "Imported %s holdings from CSV for user %s (%s rejected rows, strategy=%s)",
        len(parsed.holdings),
        current_user.id,
        len(parsed.errors),
        merge_strategy,
    )
    return CsvImportResponse(
        imported=len(parsed.holdings),
        errors=[CsvRowError(**error) for error in parsed.errors],
        portfolio=PortfolioPublic.model_validate(portfolio),
    )


@router.get("/holdings", response_model=HoldingsPage)
def read_holdings(
    session: SessionDep,
    current_user: CurrentUser,
    symbol: Annotated[list[str] | None, Query()] = None,
    sector: Annotated[list[str] | None, Query()] = None,
    asset_type: Annotated[list[str] | None, Query()] = None,
    min_value: Annotated[float | None, Query(ge=0)] = None,
    max_value: Annotated[float | None, Query(ge=0)] = None,
    sort_by: Literal["symbol", "value", "pnl", "quantity"] = "symbol",
    sort_order: Literal["asc", "desc"] = "asc",
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> Any:
    holdings = portfolio_holdings(get_portfolio_or_404(session, current_user.id))
    selected = filter_holdings(
        holdings,
        symbol=symbol,
        sector=sector,
        asset_type=asset_type,
        min_value=min_value,
        max_value=max_value,
    )
    ordered = sort_holdings(selected, sort_by, sort_order)
    return HoldingsPage(
        data=dump_holdings(ordered[offset:offset + limit]),
        count=len(ordered),
        limit=limit,
        offset=offset,
    )


@router.get("/summary")
def read_summary(session: SessionDep, current_user: CurrentUser) -> dict[str, Any]:
    holdings = portfolio_holdings(get_portfolio_or_404(session, current_user.id))
    return summarize_portfolio(holdings)


@router.get("/csv-template", response_model=CsvTemplate)
def read_csv_template(current_user: CurrentUser) -> Any:
    template, headers = csv_template()
    return CsvTemplate(template=template, headers=headers)
