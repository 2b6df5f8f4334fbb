"""
Exception Module

Structured exception hierarchy for queued-http.

Module Structure:
-----------------
- **base.py**: QueuedHttpError base class + ConfigurationError
- **broker.py**: Broker connection and queue operation errors
- **request.py**: Errors surfaced to callers of the adapter

Usage:
------
```python
from queued_http.core.exceptions import CanceledError, RequestError

try:
    response = await adapter(config)
except CanceledError:
    ...
```
"""

# Base exception
from queued_http.core.exceptions.base import ConfigurationError, QueuedHttpError

# Broker exceptions
from queued_http.core.exceptions.broker import (
    BrokerConnectionError,
    BrokerError,
    ConnectionClosedError,
    QueueTimeoutError,
)

# Request exceptions
from queued_http.core.exceptions.request import (
    CanceledError,
    DeserializationError,
    RateLimitExceededError,
    RequestError,
    StatusValidationError,
    TransportError,
)

__all__ = [
    # Base
    "QueuedHttpError",
    "ConfigurationError",
    # Broker
    "BrokerError",
    "BrokerConnectionError",
    "ConnectionClosedError",
    "QueueTimeoutError",
    # Request
    "RequestError",
    "CanceledError",
    "TransportError",
    "DeserializationError",
    "StatusValidationError",
    "RateLimitExceededError",
]
