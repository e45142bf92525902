from tradewatch.infra.alpaca_client import AlpacaClient
from tradewatch.infra.broker import (
    BrokerAdapter,
    BrokerFactory,
    create_broker_client,
    parse_broker_kind,
)

__all__ = [
    "AlpacaClient",
    "BrokerAdapter",
    "BrokerFactory",
    "create_broker_client",
    "parse_broker_kind",
]
