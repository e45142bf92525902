"""Tradewatch exception hierarchy.

All custom exceptions inherit from TradewatchError, allowing callers
to catch broad or specific error categories as needed.
"""


class TradewatchError(Exception):
    """Base exception for all Tradewatch errors."""

    def __init__(self, message: str = "", broker: str | None = None) -> None:
        self.broker = broker
        super().__init__(message)


class ExternalAPIError(TradewatchError):
    """Raised when a broker API call fails.

    Examples: HTTP timeout, rate limiting, authentication failure,
    unexpected response format.
    """

    def __init__(
        self,
        message: str = "",
        broker: str | None = None,
        status_code: int | None = None,
        service: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.service = service
        super().__init__(message, broker)


class DataIngestionError(TradewatchError):
    """Raised when a broker response cannot be parsed into a normalized shape."""


class BrokerConnectionError(TradewatchError):
    """Raised when no usable broker connection exists for a position.

    Examples: owner has no active connection for the broker, position has
    no broker assigned, credentials are incomplete.
    """


class UnsupportedBrokerError(TradewatchError):
    """Raised when building a client for a broker identifier we don't know."""


class PositionNotFoundError(TradewatchError):
    """Raised when a position id does not exist in the store."""

    def __init__(self, position_id: str) -> None:
        self.position_id = position_id
        super().__init__(f"Position {position_id} not found")
