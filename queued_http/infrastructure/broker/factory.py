"""
Broker Connection Factory

Selects the broker implementation from BROKER_TYPE.

Connection config accepted by AdapterManager.make() and QueueWorker:
- a live BrokerConnection: used as-is, never closed by this package
- a BrokerSettings instance or a mapping of BrokerSettings fields: a new
  connection is created and owned by the caller of resolve_connection()
- None: a new connection from the global settings
"""

from collections.abc import Mapping
from typing import Any

from queued_http.core.config.settings import BrokerSettings, get_settings
from queued_http.core.exceptions import ConfigurationError
from queued_http.core.interfaces.broker import BrokerConnection
from queued_http.core.logging.logger import get_logger
from queued_http.infrastructure.broker.memory_broker import MemoryBrokerConnection
from queued_http.infrastructure.broker.redis_broker import RedisBrokerConnection

logger = get_logger(__name__)

ConnectionConfig = BrokerConnection | BrokerSettings | Mapping[str, Any] | None


def create_connection(settings: BrokerSettings | Mapping[str, Any] | None = None) -> BrokerConnection:
    """
    Create a new broker connection.

    Args:
        settings: Broker settings; defaults to the global settings

    Raises:
        ConfigurationError: If BROKER_TYPE is unknown or a field is invalid
    """
    if settings is None:
        settings = get_settings().broker
    elif isinstance(settings, Mapping):
        try:
            settings = BrokerSettings(**settings)
        except ValueError as e:
            raise ConfigurationError(f"Invalid broker settings: {e}") from e

    broker_type = settings.BROKER_TYPE.lower()
    logger.debug("Creating broker connection", stage="BROKER.FACTORY", broker_type=broker_type)

    if broker_type == "memory":
        return MemoryBrokerConnection()
    if broker_type == "redis":
        return RedisBrokerConnection(settings)

    raise ConfigurationError(
        f"Unknown broker type: {settings.BROKER_TYPE}. Available types: memory, redis"
    )


def resolve_connection(config: ConnectionConfig) -> tuple[BrokerConnection, bool]:
    """
    Turn connection config into a connection plus an ownership flag.

    Returns:
        (connection, external): external is True when the caller supplied a
        live connection that must not be closed here
    """
    if isinstance(config, BrokerConnection):
        return config, True
    return create_connection(config), False
