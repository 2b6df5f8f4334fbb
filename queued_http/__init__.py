"""
queued-http

HTTP requests carried over a message queue. Callers hand a request config to
an adapter; a rate-limited worker on the other side of the broker performs the
call and sends the outcome back.

Usage:
------
```python
from queued_http import AdapterManager, QueueWorker, RequestConfig, create_connection

connection = create_connection({"BROKER_TYPE": "redis"})
worker = QueueWorker("example-queue", connection, {"per_interval": 10}, {"base_url": "https://api.example.com"})
await worker.start()

adapter = AdapterManager.make("example-queue", connection)
response = await adapter(RequestConfig(method="get", url="/user/12345"))
```
"""

from queued_http.client import ProxiedClient
from queued_http.core.exceptions import (
    BrokerError,
    CanceledError,
    ConnectionClosedError,
    DeserializationError,
    QueuedHttpError,
    RateLimitExceededError,
    RequestError,
    StatusValidationError,
    TransportError,
)
from queued_http.core.resilience import AdapterManager, CancelToken, ConnectionState, QueueWorker
from queued_http.infrastructure.broker import (
    MemoryBroker,
    MemoryBrokerConnection,
    RedisBrokerConnection,
    create_connection,
)
from queued_http.infrastructure.transport import HttpTransport, TransportDefaults
from queued_http.protocol import ParamsSerializerOptions, RequestConfig, Response
from queued_http.rate_limiting import RateLimitConfig, SpillMethod

__version__ = "1.0.0"

__all__ = [
    "AdapterManager",
    "BrokerError",
    "CancelToken",
    "CanceledError",
    "ConnectionClosedError",
    "ConnectionState",
    "DeserializationError",
    "HttpTransport",
    "MemoryBroker",
    "MemoryBrokerConnection",
    "ParamsSerializerOptions",
    "ProxiedClient",
    "QueueWorker",
    "QueuedHttpError",
    "RateLimitConfig",
    "RateLimitExceededError",
    "RedisBrokerConnection",
    "RequestConfig",
    "RequestError",
    "Response",
    "SpillMethod",
    "StatusValidationError",
    "TransportDefaults",
    "TransportError",
    "create_connection",
]
