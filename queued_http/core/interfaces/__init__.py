"""
Interfaces Module

Abstract contracts for external collaborators, enabling dependency injection
and in-memory implementations for testing.
"""

from queued_http.core.interfaces.broker import (
    BrokerConnection,
    BrokerMessage,
    BrokerQueue,
    MessageHandler,
)

__all__ = [
    "BrokerConnection",
    "BrokerMessage",
    "BrokerQueue",
    "MessageHandler",
]
