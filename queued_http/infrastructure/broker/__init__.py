"""
Broker Module

Queue broker implementations behind the BrokerConnection interface.
"""

from queued_http.infrastructure.broker.factory import (
    ConnectionConfig,
    create_connection,
    resolve_connection,
)
from queued_http.infrastructure.broker.memory_broker import (
    MemoryBroker,
    MemoryBrokerConnection,
    MemoryQueue,
)
from queued_http.infrastructure.broker.redis_broker import RedisBrokerConnection, RedisQueue

__all__ = [
    "ConnectionConfig",
    "MemoryBroker",
    "MemoryBrokerConnection",
    "MemoryQueue",
    "RedisBrokerConnection",
    "RedisQueue",
    "create_connection",
    "resolve_connection",
]
