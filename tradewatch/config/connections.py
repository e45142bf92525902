"""Broker connection registry.

Maps (owner, broker) pairs to the credentials used to build a broker
client during position sync. Loaded from YAML; credential values of the
form ``env:NAME`` are read from the environment at load time so secrets
stay out of the file.

Example connections.yaml:

    connections:
      - owner_id: user-1
        broker: alpaca_paper
        credentials:
          api_key: env:ALPACA_API_KEY
          secret_key: env:ALPACA_SECRET_KEY
      - owner_id: user-2
        broker: alpaca_live
        is_active: false
        credentials:
          api_key: AKXXXX
          secret_key: env:USER2_ALPACA_SECRET
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

logger = structlog.get_logger()

_ENV_PREFIX = "env:"


@dataclass(frozen=True)
class BrokerConnection:
    """One owner's credentials for one broker."""
    owner_id: str
    broker: str
    credentials: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    is_active: bool = True


def _resolve_credential(value: Any) -> Any:
    if isinstance(value, str) and value.startswith(_ENV_PREFIX):
        return os.environ.get(value[len(_ENV_PREFIX):], "")
    return value


@dataclass(frozen=True)
class ConnectionRegistry:
    """Immutable set of broker connections."""
    connections: tuple[BrokerConnection, ...] = ()

    def find_active(self, owner_id: str, broker: str) -> BrokerConnection | None:
        """First active connection for the owner at the broker, if any."""
        for conn in self.connections:
            if conn.owner_id == owner_id and conn.broker == broker and conn.is_active:
                return conn
        return None

    def for_owner(self, owner_id: str) -> list[BrokerConnection]:
        return [c for c in self.connections if c.owner_id == owner_id]

    def __len__(self) -> int:
        return len(self.connections)

    @classmethod
    def from_yaml(cls, path: Path) -> ConnectionRegistry:
        """Load from YAML file."""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConnectionRegistry:
        """Load from dict (e.g. parsed YAML)."""
        connections = []
        for entry in data.get("connections", []):
            credentials = {
                key: _resolve_credential(value)
                for key, value in (entry.get("credentials") or {}).items()
            }
            connections.append(
                BrokerConnection(
                    owner_id=str(entry["owner_id"]),
                    broker=str(entry["broker"]),
                    credentials=credentials,
                    is_active=entry.get("is_active", True),
                )
            )
        return cls(connections=tuple(connections))

    @classmethod
    def load(cls, path: Path) -> ConnectionRegistry:
        """Load from path, or return an empty registry if the file is missing."""
        if not path.exists():
            logger.warning("Broker connections file not found", path=str(path))
            return cls()
        registry = cls.from_yaml(path)
        logger.info("Broker connections loaded", path=str(path), count=len(registry))
        return registry
