"""Alpaca Markets REST API client implementing the BrokerAdapter contract.

Provides async access to order status and position snapshots with retry
logic, rate limiting, and error handling, and maps Alpaca payloads into
NormalizedOrder / NormalizedPosition. Supports both paper and live
trading.

Usage:
    client = AlpacaClient(api_key="...", secret_key="...", paper=True)
    await client.connect()
    order = await client.get_order_tracked("b0b6dd9d-8b9b-48a9-ba46-b9d54906e415")
    position = await client.get_position_normalized("AAPL")
"""

import asyncio
import os
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from tradewatch.exceptions import DataIngestionError, ExternalAPIError
from tradewatch.schemas.broker import NormalizedOrder, NormalizedPosition
from tradewatch.schemas.enums import (
    BrokerKind,
    NormalizedOrderStatus,
    OrderKind,
    PositionDirection,
)

logger = structlog.get_logger()


ALPACA_STATUS_MAP: dict[str, NormalizedOrderStatus] = {
    "pending_new": NormalizedOrderStatus.PENDING,
    "replaced": NormalizedOrderStatus.PENDING,
    "new": NormalizedOrderStatus.SUBMITTED,
    "accepted": NormalizedOrderStatus.SUBMITTED,
    "pending_cancel": NormalizedOrderStatus.SUBMITTED,
    "pending_replace": NormalizedOrderStatus.SUBMITTED,
    "accepted_for_bidding": NormalizedOrderStatus.SUBMITTED,
    "calculated": NormalizedOrderStatus.SUBMITTED,
    "partially_filled": NormalizedOrderStatus.PARTIALLY_FILLED,
    "filled": NormalizedOrderStatus.FILLED,
    "canceled": NormalizedOrderStatus.CANCELED,
    "stopped": NormalizedOrderStatus.CANCELED,
    "suspended": NormalizedOrderStatus.CANCELED,
    "expired": NormalizedOrderStatus.EXPIRED,
    "done_for_day": NormalizedOrderStatus.EXPIRED,
    "rejected": NormalizedOrderStatus.REJECTED,
}

ALPACA_ORDER_TYPE_MAP: dict[str, OrderKind] = {
    "market": OrderKind.MARKET,
    "limit": OrderKind.LIMIT,
    "stop": OrderKind.STOP,
    "stop_limit": OrderKind.STOP_LIMIT,
    "trailing_stop": OrderKind.STOP,
}

_ACCEPTED_STATES = {"accepted", "new", "partially_filled", "filled"}
_FRACTION_RE = re.compile(r"\.(\d+)")


def map_alpaca_status(alpaca_status: str) -> NormalizedOrderStatus:
    """Map an Alpaca order status onto the normalized status set.

    Unknown statuses map to SUBMITTED so tracking keeps polling.
    """
    return ALPACA_STATUS_MAP.get(alpaca_status, NormalizedOrderStatus.SUBMITTED)


def _decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise DataIngestionError(f"Invalid numeric value from Alpaca: {value!r}") from e


def _timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    # Alpaca emits RFC 3339 with a trailing Z and nanosecond precision
    text = _FRACTION_RE.sub(
        lambda m: "." + m.group(1)[:6].ljust(6, "0"),
        value.replace("Z", "+00:00"),
    )
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise DataIngestionError(f"Invalid timestamp from Alpaca: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_order(data: dict[str, Any]) -> NormalizedOrder:
    """Convert an Alpaca order payload into a NormalizedOrder."""
    raw_status = data.get("status", "")
    status = map_alpaca_status(raw_status)
    raw_type = data.get("order_type") or data.get("type") or "market"
    submitted_at = _timestamp(data.get("submitted_at") or data.get("created_at"))

    try:
        return NormalizedOrder(
            order_id=data["id"],
            symbol=data["symbol"],
            side=data["side"],
            quantity=_decimal(data.get("qty")) or Decimal("0"),
            order_type=ALPACA_ORDER_TYPE_MAP.get(raw_type, OrderKind.MARKET),
            status=status,
            time_in_force=data.get("time_in_force", "day"),
            limit_price=_decimal(data.get("limit_price")),
            stop_price=_decimal(data.get("stop_price")),
            filled_quantity=_decimal(data.get("filled_qty")),
            filled_avg_price=_decimal(data.get("filled_avg_price")),
            submitted_at=submitted_at or datetime.now(timezone.utc),
            accepted_at=(
                _timestamp(data.get("created_at")) if raw_status in _ACCEPTED_STATES else None
            ),
            filled_at=(
                _timestamp(data.get("filled_at"))
                if status == NormalizedOrderStatus.FILLED
                else None
            ),
            canceled_at=(
                _timestamp(data.get("canceled_at"))
                if status == NormalizedOrderStatus.CANCELED
                else None
            ),
            reject_reason=(
                data.get("reject_reason") or "Order rejected by broker"
                if status == NormalizedOrderStatus.REJECTED
                else None
            ),
            raw_broker_data=data,
        )
    except (KeyError, ValidationError) as e:
        raise DataIngestionError(f"Malformed Alpaca order payload: {e}") from e


def normalize_position(data: dict[str, Any]) -> NormalizedPosition:
    """Convert an Alpaca position payload into a NormalizedPosition."""
    qty = _decimal(data.get("qty")) or Decimal("0")
    market_value = _decimal(data.get("market_value"))
    current_price = _decimal(data.get("current_price"))
    if current_price is None and market_value is not None and qty:
        current_price = market_value / qty

    if current_price is None:
        raise DataIngestionError(
            f"Alpaca position for {data.get('symbol')} has no price"
        )

    side = data.get("side")
    if side not in ("long", "short"):
        side = "long" if qty > 0 else "short"

    try:
        return NormalizedPosition(
            symbol=data["symbol"],
            quantity=abs(qty),
            current_price=current_price,
            avg_entry_price=_decimal(data.get("avg_entry_price")),
            unrealized_pnl=_decimal(data.get("unrealized_pl")),
            market_value=market_value,
            side=PositionDirection(side),
        )
    except (KeyError, ValidationError) as e:
        raise DataIngestionError(f"Malformed Alpaca position payload: {e}") from e


class AlpacaClient:
    """Async HTTP client for the Alpaca Markets REST API.

    Handles authentication, rate limiting, retries, and error mapping.
    Implements the BrokerAdapter protocol.
    Default: paper trading (ALPACA_PAPER=true).
    """

    PAPER_URL = "https://paper-api.alpaca.markets"
    LIVE_URL = "https://api.alpaca.markets"
    DEFAULT_TIMEOUT = 30.0
    MAX_RETRIES = 3
    RETRY_BACKOFF_BASE = 1.0  # seconds

    def __init__(
        self,
        api_key: str | None = None,
        secret_key: str | None = None,
        paper: bool | None = None,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the Alpaca client.

        Args:
            api_key: Alpaca API key. Falls back to ALPACA_API_KEY env var.
            secret_key: Alpaca secret key. Falls back to ALPACA_SECRET_KEY env var.
            paper: Use paper trading (True) or live (False). Falls back to ALPACA_PAPER env var, defaults to True.
            base_url: Override base URL (useful for testing).
            timeout: Request timeout in seconds.
        """
        self._api_key = api_key or os.environ.get("ALPACA_API_KEY", "")
        self._secret_key = secret_key or os.environ.get("ALPACA_SECRET_KEY", "")

        if not self._api_key or not self._secret_key:
            raise ValueError(
                "Alpaca API credentials required. Pass api_key/secret_key or set ALPACA_API_KEY/ALPACA_SECRET_KEY env vars."
            )

        if paper is None:
            paper = os.environ.get("ALPACA_PAPER", "true").lower() == "true"
        self._paper = paper

        if base_url:
            self._base_url = base_url
        else:
            self._base_url = self.PAPER_URL if paper else self.LIVE_URL

        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def kind(self) -> BrokerKind:
        return BrokerKind.ALPACA_PAPER if self._paper else BrokerKind.ALPACA_LIVE

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {
                "APCA-API-KEY-ID": self._api_key,
                "APCA-API-SECRET-KEY": self._secret_key,
            }
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an HTTP request with retry logic and error handling.

        Args:
            method: HTTP method (GET, DELETE, etc.).
            path: API endpoint path (e.g., /v2/orders/{id}).
            params: Query parameters.

        Returns:
            Parsed JSON response as a dictionary.

        Raises:
            ExternalAPIError: On HTTP errors or unexpected responses.
            DataIngestionError: On response parsing failures.
        """
        client = await self._get_client()
        last_error: Exception | None = None

        for attempt in range(self.MAX_RETRIES):
            try:
                logger.debug(
                    "alpaca_request",
                    method=method,
                    path=path,
                    attempt=attempt + 1,
                    paper=self._paper,
                )

                response = await client.request(method, path, params=params or {})

                if response.status_code == 429:
                    wait = self.RETRY_BACKOFF_BASE * (2 ** attempt)
                    logger.debug(
                        "alpaca_rate_limited",
                        path=path,
                        wait_seconds=wait,
                        attempt=attempt + 1,
                    )
                    last_error = ExternalAPIError(
                        message="Alpaca rate limit exceeded",
                        broker=self.kind.value,
                        service="alpaca",
                        status_code=429,
                    )
                    await asyncio.sleep(wait)
                    continue

                if response.status_code in (401, 403):
                    raise ExternalAPIError(
                        message=f"Alpaca authentication failed: {response.text[:200]}",
                        broker=self.kind.value,
                        service="alpaca",
                        status_code=response.status_code,
                    )

                if response.status_code not in (200, 201, 204):
                    raise ExternalAPIError(
                        message=f"Alpaca API returned {response.status_code}: {response.text[:200]}",
                        broker=self.kind.value,
                        service="alpaca",
                        status_code=response.status_code,
                    )

                if response.status_code == 204:
                    logger.debug("alpaca_success", path=path, status=204)
                    return {}

                data = response.json()
                if not isinstance(data, dict):
                    raise DataIngestionError(
                        message=f"Expected dict response, got {type(data).__name__}"
                    )

                logger.debug("alpaca_success", path=path, status=response.status_code)
                return data

            except httpx.TimeoutException as e:
                last_error = ExternalAPIError(
                    message=f"Alpaca API timeout on attempt {attempt + 1}: {e}",
                    broker=self.kind.value,
                    service="alpaca",
                )
                logger.debug(
                    "alpaca_timeout",
                    path=path,
                    attempt=attempt + 1,
                    error=str(e),
                )
                if attempt < self.MAX_RETRIES - 1:
                    await asyncio.sleep(self.RETRY_BACKOFF_BASE * (2 ** attempt))
                    continue

            except httpx.HTTPError as e:
                last_error = ExternalAPIError(
                    message=f"Alpaca API HTTP error: {e}",
                    broker=self.kind.value,
                    service="alpaca",
                )
                logger.debug(
                    "alpaca_http_error",
                    path=path,
                    attempt=attempt + 1,
                    error=str(e),
                )
                if attempt < self.MAX_RETRIES - 1:
                    await asyncio.sleep(self.RETRY_BACKOFF_BASE * (2 ** attempt))
                    continue

        raise last_error or ExternalAPIError(
            message="Alpaca API request failed after all retries",
            broker=self.kind.value,
            service="alpaca",
        )

    # Account
    async def connect(self) -> bool:
        """Verify credentials by fetching the account.

        Returns:
            True when the account is reachable and active.

        Raises:
            ExternalAPIError: When the account cannot be fetched.
        """
        account = await self._request("GET", "/v2/account")
        status = account.get("status", "ACTIVE")
        if status != "ACTIVE":
            logger.warning("alpaca_account_inactive", status=status, paper=self._paper)
            return False
        return True

    # Orders
    async def get_order(self, order_id: str) -> dict[str, Any]:
        """Fetch a raw order payload by broker order id."""
        return await self._request("GET", f"/v2/orders/{order_id}")

    async def get_order_tracked(self, order_id: str) -> NormalizedOrder:
        """Fetch an order and return it in normalized form."""
        return normalize_order(await self.get_order(order_id))

    # Positions
    async def get_position(self, symbol: str) -> dict[str, Any] | None:
        """Fetch a raw position payload, or None if the broker has none."""
        try:
            return await self._request("GET", f"/v2/positions/{symbol}")
        except ExternalAPIError as e:
            if e.status_code == 404:
                return None
            raise

    async def get_position_normalized(self, symbol: str) -> NormalizedPosition | None:
        """Fetch the position for a symbol in normalized form.

        Returns:
            NormalizedPosition, or None when no position exists at the broker.
        """
        data = await self.get_position(symbol)
        if data is None:
            return None
        return normalize_position(data)
