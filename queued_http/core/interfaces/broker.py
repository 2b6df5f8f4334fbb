"""
Queue Broker Interface

Abstract contract the dispatcher and worker rely on. Implementations live in
queued_http.infrastructure.broker (in-memory and Redis).

Semantics:
- Queues are addressed by name and declared on first get_queue().
- max_length drops the oldest buffered message once exceeded.
- confirm=True makes enqueue() wait for the broker's acknowledgement.
- listen() delivers every message to the handler, which settles it with
  ack() or nack(requeue).
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field


@dataclass
class BrokerMessage:
    """
    A message delivered to a queue listener.

    Settling twice is a no-op; only the first ack()/nack() counts.
    """

    content: bytes
    correlation_id: str | None = None
    queue: str = ""
    settled: bool = False
    _on_ack: Callable[[], Awaitable[None]] | None = field(default=None, repr=False)
    _on_nack: Callable[[bool], Awaitable[None]] | None = field(default=None, repr=False)

    async def ack(self) -> None:
        """Acknowledge the message."""
        if self.settled:
            return
        self.settled = True
        if self._on_ack is not None:
            await self._on_ack()

    async def nack(self, requeue: bool = False) -> None:
        """
        Reject the message.

        Args:
            requeue: Put the message back at the head of the queue
        """
        if self.settled:
            return
        self.settled = True
        if self._on_nack is not None:
            await self._on_nack(requeue)


MessageHandler = Callable[[BrokerMessage], Awaitable[None]]


class BrokerQueue(ABC):
    """
    Abstract base class for a named queue handle.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Queue name."""
        pass

    @abstractmethod
    async def enqueue(self, content: bytes, correlation_id: str | None = None) -> None:
        """
        Publish a message.

        Args:
            content: Raw message body
            correlation_id: Broker-level correlation attribute
        """
        pass

    @abstractmethod
    async def listen(self, handler: MessageHandler) -> None:
        """Start delivering messages to handler."""
        pass

    @abstractmethod
    async def pause(self, timeout: float) -> None:
        """
        Stop delivering messages.

        Raises:
            QueueTimeoutError: If the consumer did not stop within timeout
        """
        pass

    @abstractmethod
    async def delete(self) -> None:
        """Delete the queue. Deleting a missing queue is not an error."""
        pass

    @abstractmethod
    async def await_handling_of_confirmations(self, timeout: float) -> None:
        """
        Wait until every publish made through this handle is confirmed.

        Raises:
            QueueTimeoutError: If publishes are still outstanding after timeout
        """
        pass

    @abstractmethod
    async def await_processing_of_rpcs(self, timeout: float) -> None:
        """
        Wait until every handler invocation started by listen() has returned.

        Raises:
            QueueTimeoutError: If handlers are still running after timeout
        """
        pass

    @abstractmethod
    async def message_count(self) -> int:
        """Number of messages buffered and not yet delivered."""
        pass


class BrokerConnection(ABC):
    """
    Abstract base class for a broker connection.
    """

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once close() has completed."""
        pass

    @abstractmethod
    async def get_queue(
        self, name: str, max_length: int | None = None, confirm: bool = False
    ) -> BrokerQueue:
        """
        Declare (if needed) and return a queue handle.

        Raises:
            ConnectionClosedError: If the connection is closed
        """
        pass

    @abstractmethod
    def on_close(self, callback: Callable[[], None]) -> None:
        """Register a callback fired once when the connection closes."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Closing twice is not an error."""
        pass
