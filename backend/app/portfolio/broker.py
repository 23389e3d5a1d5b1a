"""Thin async client for the Zerodha Kite Connect v3 REST API."""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any
from urllib.parse import quote, urlencode

import httpx

from app.core.config import settings
from app.core.errors import broker_error
from app.portfolio.holdings import NormalizedHolding, validate_holding

logger = logging.getLogger(__name__)

KITE_VERSION = "3"
IST = timezone(timedelta(hours=5, minutes=30))
# Kite access tokens are invalidated every morning at 06:00 IST.
TOKEN_RESET_TIME = time(6, 0)


class BrokerAPIError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class BrokerSession:
    user_id: str
    access_token: str
    expires_at: datetime


def next_token_expiry(now: datetime | None = None) -> datetime:
    now_ist = (now or datetime.now(timezone.utc)).astimezone(IST)
    reset = datetime.combine(now_ist.date(), TOKEN_RESET_TIME, tzinfo=IST)
    if now_ist >= reset:
        reset += timedelta(days=1)
    return reset.astimezone(timezone.utc)


def session_checksum(api_key: str, request_token: str, api_secret: str) -> str:
    return hashlib.sha256(f"{api_key}{request_token}{api_secret}".encode("utf-8")).hexdigest()


def map_kite_holding(item: dict[str, Any]) -> NormalizedHolding:
    """Map one Kite holdings row onto the canonical holding; P&L is recomputed."""
    quantity = float(item.get("quantity") or 0) + float(item.get("t1_quantity") or 0)
    avg_price = float(item.get("average_price") or 0)
    current_price = float(item.get("last_price") or 0)
    close_price = item.get("close_price")

    raw: dict[str, Any] = {
        "symbol": item.get("tradingsymbol", ""),
        "isin": item.get("isin") or None,
        "quantity": quantity,
        "avg_price": avg_price,
        "current_price": current_price,
        "unrealized_pnl": (current_price - avg_price) * quantity,
        "asset_type": "equity",
        "exchange": item.get("exchange") or None,
        "day_change": float(item["day_change"])
        if item.get("day_change") is not None
        else (current_price - float(close_price) if close_price else None),
        "metadata": {"product": item.get("product"), "instrument_token": item.get("instrument_token")},
    }
    return validate_holding(raw)


class KiteClient:
    def __init__(
        self,
        api_key: str | None = None,
        api_secret: str | None = None,
        *,
        base_url: str | None = None,
        timeout: float = 15.0,
    ):
        self.api_key = api_key or settings.ZERODHA_API_KEY
        self.api_secret = api_secret or settings.ZERODHA_API_SECRET
        self.base_url = (base_url or settings.ZERODHA_API_URL).rstrip("/")
        self.timeout = timeout

    def login_url(self, state: str) -> str:
        query = urlencode(
            {
                "v": KITE_VERSION,
                "api_key": self.api_key,
                "redirect_params": f"state={quote(state)}",
            }
        )
        return f"{settings.ZERODHA_LOGIN_URL}?{query}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: str | None = None,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        headers = {"X-Kite-Version": KITE_VERSION}
        if access_token:
            headers["Authorization"] = f"token {self.api_key}:{access_token}"

        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
                response = await client.request(
                    method, path, headers=headers, data=data, params=params
                )
        except httpx.TimeoutException as exc:
            logger.warning("Kite request %s %s timed out: %s", method, path, exc)
            raise broker_error(BrokerAPIError(503, "timeout"))
        except httpx.HTTPError as exc:
            logger.warning("Kite request %s %s failed: %s", method, path, exc)
            raise broker_error(BrokerAPIError(503, str(exc)))

        if response.status_code >= 400:
            message = response.text
            try:
                message = response.json().get("message", message)
            except ValueError:
                pass
            logger.warning("Kite %s %s returned %s: %s", method, path, response.status_code, message)
            raise broker_error(BrokerAPIError(response.status_code, message))

        return response.json().get("data")

    async def generate_session(self, request_token: str) -> BrokerSession:
        data = await self._request(
            "POST",
            "/session/token",
            data={
                "api_key": self.api_key,
                "request_token": request_token,
                "checksum": session_checksum(self.api_key, request_token, self.api_secret),
            },
        )
        return BrokerSession(
            user_id=data["user_id"],
            access_token=data["access_token"],
            expires_at=next_token_expiry(),
        )

    async def invalidate_session(self, access_token: str) -> None:
        await self._request(
            "DELETE",
            "/session/token",
            params={"api_key": self.api_key, "access_token": access_token},
        )

    async def get_holdings(self, access_token: str) -> list[NormalizedHolding]:
        rows = await self._request("GET", "/portfolio/holdings", access_token=access_token) or []
        holdings = [
            map_kite_holding(row)
            for row in rows
            if (row.get("quantity") or 0) + (row.get("t1_quantity") or 0) > 0
        ]
        logger.info("Fetched %s holdings from Kite", len(holdings))
        return holdings
