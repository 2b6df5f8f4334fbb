"""
In-Memory Broker

Process-local broker used by tests and single-process deployments. Behaves
like the Redis broker from the protocol's point of view:

- Queues are created on first get_queue() and shared by name across every
  connection to the same MemoryBroker.
- Multiple listeners on one queue compete; each message goes to one of them.
- max_length drops the oldest buffered message once exceeded.
- nack(requeue=True) puts the message back at the head.
- Publishing to a deleted queue discards the message.
"""

import asyncio
from collections import deque
from collections.abc import Callable

from queued_http.core.exceptions import ConnectionClosedError
from queued_http.core.interfaces.broker import BrokerConnection, BrokerMessage
from queued_http.core.logging.logger import get_logger
from queued_http.infrastructure.broker.base import BaseQueue

logger = get_logger(__name__)


class _QueueState:
    """Buffered messages for one named queue."""

    def __init__(self, name: str, max_length: int | None):
        self.name = name
        self.max_length = max_length
        self.messages: deque[tuple[bytes, str | None]] = deque()
        self._available = asyncio.Event()

    def put(self, content: bytes, correlation_id: str | None) -> None:
        self.messages.append((content, correlation_id))
        if self.max_length is not None:
            while len(self.messages) > self.max_length:
                self.messages.popleft()
        self._available.set()

    def requeue(self, content: bytes, correlation_id: str | None) -> None:
        self.messages.appendleft((content, correlation_id))
        self._available.set()

    async def get(self) -> tuple[bytes, str | None]:
        while not self.messages:
            self._available.clear()
            await self._available.wait()
        return self.messages.popleft()


class MemoryBroker:
    """
    Holds the queues. Connections are cheap views onto a broker.

    Usage:
        broker = MemoryBroker()
        connection = broker.connect()
    """

    _default: "MemoryBroker | None" = None

    def __init__(self):
        self._queues: dict[str, _QueueState] = {}

    @classmethod
    def default(cls) -> "MemoryBroker":
        """Process-wide broker used by connections created from settings."""
        if cls._default is None:
            cls._default = cls()
        return cls._default

    @classmethod
    def reset_default(cls) -> None:
        cls._default = None

    def connect(self) -> "MemoryBrokerConnection":
        return MemoryBrokerConnection(self)

    def declare(self, name: str, max_length: int | None = None) -> _QueueState:
        state = self._queues.get(name)
        if state is None:
            state = _QueueState(name, max_length)
            self._queues[name] = state
            logger.debug("Queue declared", stage="BROKER.DECLARE", queue=name, max_length=max_length)
        return state

    def lookup(self, name: str) -> _QueueState | None:
        return self._queues.get(name)

    def remove(self, name: str) -> bool:
        return self._queues.pop(name, None) is not None

    def queue_names(self) -> list[str]:
        return list(self._queues)


class MemoryQueue(BaseQueue):
    """Queue handle backed by a MemoryBroker."""

    # state.get() pops only after its wait returns, without suspending again
    cancel_safe_receive = True

    def __init__(self, broker: MemoryBroker, name: str, **kwargs):
        super().__init__(name, **kwargs)
        self._broker = broker

    async def _publish(self, content: bytes, correlation_id: str | None) -> None:
        state = self._broker.lookup(self._name)
        if state is None:
            logger.debug("Publish to deleted queue discarded", stage="BROKER.PUBLISH", queue=self._name)
            return
        state.put(content, correlation_id)

    async def _receive(self) -> BrokerMessage:
        state = self._broker.declare(self._name, self._max_length)
        content, correlation_id = await state.get()

        async def on_nack(requeue: bool) -> None:
            if requeue:
                state.requeue(content, correlation_id)

        return BrokerMessage(
            content=content,
            correlation_id=correlation_id,
            queue=self._name,
            _on_nack=on_nack,
        )

    async def delete(self) -> None:
        if self._broker.remove(self._name):
            logger.debug("Queue deleted", stage="BROKER.DELETE", queue=self._name)

    async def message_count(self) -> int:
        state = self._broker.lookup(self._name)
        return len(state.messages) if state is not None else 0


class MemoryBrokerConnection(BrokerConnection):
    """Connection to a MemoryBroker."""

    def __init__(self, broker: MemoryBroker | None = None):
        self._broker = broker or MemoryBroker.default()
        self._closed = False
        self._close_callbacks: list[Callable[[], None]] = []
        self._queues: list[MemoryQueue] = []

    @property
    def broker(self) -> MemoryBroker:
        return self._broker

    @property
    def closed(self) -> bool:
        return self._closed

    async def get_queue(
        self, name: str, max_length: int | None = None, confirm: bool = False
    ) -> MemoryQueue:
        if self._closed:
            raise ConnectionClosedError(f"Cannot open queue {name}: connection is closed")

        self._broker.declare(name, max_length)
        queue = MemoryQueue(
            self._broker,
            name,
            max_length=max_length,
            confirm=confirm,
            is_closed=lambda: self._closed,
        )
        self._queues.append(queue)
        return queue

    def on_close(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for queue in self._queues:
            if queue.listening:
                await queue.pause(timeout=1.0)
        self._queues.clear()

        for callback in self._close_callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Close callback failed", stage="BROKER.CLOSE", error=str(e))
        self._close_callbacks.clear()
        logger.debug("Connection closed", stage="BROKER.CLOSE")
