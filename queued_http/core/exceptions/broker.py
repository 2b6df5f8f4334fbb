"""
Broker Exceptions

All exceptions related to broker connections and queue operations.
"""

from queued_http.core.exceptions.base import QueuedHttpError


class BrokerError(QueuedHttpError):
    """Base exception for broker errors."""
    pass


class BrokerConnectionError(BrokerError):
    """
    Raised when the broker cannot be reached.

    Common causes:
    - Redis not running or wrong host/port
    - Authentication failure
    """
    pass


class ConnectionClosedError(BrokerError):
    """
    Raised when an operation needs a connection that has already closed.

    Adapter managers created with connection options own their connection
    and close it after the first request; create a new manager instead.
    """
    pass


class QueueTimeoutError(BrokerError):
    """
    Raised when a drain or pause operation exceeds its time budget.

    Teardown code catches this and moves on.
    """
    pass
