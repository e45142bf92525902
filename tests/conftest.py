"""Shared test fixtures for Tradewatch tests."""

import pytest

from tests.fixtures.brokers import OWNER_ID, VirtualClock
from tradewatch.config.connections import BrokerConnection, ConnectionRegistry
from tradewatch.schemas.enums import BrokerKind
from tradewatch.storage.tracking_store import TrackingStore


@pytest.fixture
def store() -> TrackingStore:
    return TrackingStore()


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def connections() -> ConnectionRegistry:
    return ConnectionRegistry(
        connections=(
            BrokerConnection(
                owner_id=OWNER_ID,
                broker=BrokerKind.ALPACA_PAPER.value,
                credentials={"api_key": "k", "secret_key": "s"},
            ),
        )
    )
