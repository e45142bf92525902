"""BrokerAdapter contract and broker client factory.

Every broker the engine talks to is reached through a BrokerAdapter that
returns normalized order and position snapshots. Supported brokers form
the closed BrokerKind enum; create_broker_client() maps each member to
its constructor.
"""
from __future__ import annotations

from typing import Any, Callable, Mapping, Protocol, runtime_checkable

import structlog

from tradewatch.exceptions import BrokerConnectionError, UnsupportedBrokerError
from tradewatch.infra.alpaca_client import AlpacaClient
from tradewatch.schemas.broker import NormalizedOrder, NormalizedPosition
from tradewatch.schemas.enums import BrokerKind

logger = structlog.get_logger()


@runtime_checkable
class BrokerAdapter(Protocol):
    """Uniform interface to an external trading venue."""

    @property
    def kind(self) -> BrokerKind: ...

    async def connect(self) -> bool: ...

    async def get_order_tracked(self, order_id: str) -> NormalizedOrder: ...

    async def get_position_normalized(self, symbol: str) -> NormalizedPosition | None: ...

    async def close(self) -> None: ...


BrokerFactory = Callable[[str, Mapping[str, Any]], BrokerAdapter]


def _require(credentials: Mapping[str, Any], key: str, broker: BrokerKind) -> str:
    value = credentials.get(key)
    if not value:
        raise BrokerConnectionError(
            f"Missing credential '{key}' for broker {broker.value}",
            broker=broker.value,
        )
    return str(value)


def _build_alpaca_paper(credentials: Mapping[str, Any]) -> BrokerAdapter:
    return AlpacaClient(
        api_key=_require(credentials, "api_key", BrokerKind.ALPACA_PAPER),
        secret_key=_require(credentials, "secret_key", BrokerKind.ALPACA_PAPER),
        paper=True,
        base_url=credentials.get("base_url"),
    )


def _build_alpaca_live(credentials: Mapping[str, Any]) -> BrokerAdapter:
    return AlpacaClient(
        api_key=_require(credentials, "api_key", BrokerKind.ALPACA_LIVE),
        secret_key=_require(credentials, "secret_key", BrokerKind.ALPACA_LIVE),
        paper=False,
        base_url=credentials.get("base_url"),
    )


# One builder per BrokerKind member
_BUILDERS: dict[BrokerKind, Callable[[Mapping[str, Any]], BrokerAdapter]] = {
    BrokerKind.ALPACA_PAPER: _build_alpaca_paper,
    BrokerKind.ALPACA_LIVE: _build_alpaca_live,
}


def parse_broker_kind(broker: str | BrokerKind) -> BrokerKind:
    """Resolve a broker identifier to a BrokerKind.

    Raises:
        UnsupportedBrokerError: If the identifier is not a known broker.
    """
    if isinstance(broker, BrokerKind):
        return broker
    try:
        return BrokerKind(broker)
    except ValueError:
        raise UnsupportedBrokerError(f"Unsupported broker: {broker}", broker=broker) from None


def create_broker_client(
    broker: str | BrokerKind,
    credentials: Mapping[str, Any],
) -> BrokerAdapter:
    """Build an (unconnected) broker client for a broker identifier.

    Args:
        broker: BrokerKind or its string value (e.g. "alpaca_paper").
        credentials: Plain credential mapping for the connection.

    Returns:
        A BrokerAdapter ready for connect().

    Raises:
        UnsupportedBrokerError: If the broker identifier is unknown.
        BrokerConnectionError: If required credentials are missing.
    """
    kind = parse_broker_kind(broker)
    client = _BUILDERS[kind](credentials)
    logger.debug("broker_client_created", broker=kind.value)
    return client
