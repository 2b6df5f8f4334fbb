"""
Shared Queue Handle Machinery

Broker implementations only provide the raw operations (_publish, _receive,
delete, message_count). This base class layers the bookkeeping both the
dispatcher and worker depend on for bounded-time teardown:

    BaseQueue
        ├── pending publishes  -> await_handling_of_confirmations()
        ├── in-flight handlers -> await_processing_of_rpcs()
        └── consumer task      -> listen() / pause()
"""

import asyncio
from abc import abstractmethod
from collections.abc import Callable

from queued_http.core.exceptions import BrokerError, ConnectionClosedError, QueueTimeoutError
from queued_http.core.interfaces.broker import BrokerMessage, BrokerQueue, MessageHandler
from queued_http.core.logging.logger import get_logger

logger = get_logger(__name__)


class BaseQueue(BrokerQueue):
    """
    Queue handle with task tracking for drains and pauses.

    A handle belongs to one connection. Publishes run as tasks so that a caller
    who stops waiting (cancellation) does not abort the publish itself, and so
    that they can be drained later.
    """

    # True when cancelling _receive() can never drop a popped message
    cancel_safe_receive = False

    def __init__(
        self,
        name: str,
        *,
        max_length: int | None = None,
        confirm: bool = False,
        is_closed: Callable[[], bool] | None = None,
    ):
        self._name = name
        self._max_length = max_length
        self._confirm = confirm
        self._is_closed = is_closed or (lambda: False)

        self._pending_publishes: set[asyncio.Task] = set()
        self._inflight_handlers: set[asyncio.Task] = set()
        self._handler: MessageHandler | None = None
        self._consumer_task: asyncio.Task | None = None
        self._stopping = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def max_length(self) -> int | None:
        return self._max_length

    @property
    def confirm(self) -> bool:
        return self._confirm

    @property
    def listening(self) -> bool:
        return self._consumer_task is not None and not self._consumer_task.done()

    # -------------------------------------------------------------------------
    # Broker-specific operations
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _publish(self, content: bytes, correlation_id: str | None) -> None:
        """Hand one message to the broker."""
        pass

    @abstractmethod
    async def _receive(self) -> BrokerMessage | None:
        """
        Wait for the next message.

        Returns None when nothing arrived within the broker's poll window.
        """
        pass

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    async def enqueue(self, content: bytes, correlation_id: str | None = None) -> None:
        self._ensure_open()
        task = asyncio.create_task(self._publish(content, correlation_id))
        self._track(self._pending_publishes, task)
        await asyncio.shield(task)

    # -------------------------------------------------------------------------
    # Consuming
    # -------------------------------------------------------------------------

    async def listen(self, handler: MessageHandler) -> None:
        self._ensure_open()
        if self.listening:
            raise BrokerError(f"Queue {self._name} already has a listener on this handle")

        self._handler = handler
        self._stopping = False
        self._consumer_task = asyncio.create_task(self._consume_loop())
        logger.debug("Listener attached", stage="BROKER.LISTEN", queue=self._name)

    async def _consume_loop(self) -> None:
        while not self._stopping:
            message = await self._receive()
            if message is None:
                continue
            # A message received while stopping is still handed to the handler
            task = asyncio.create_task(self._dispatch(message))
            self._track(self._inflight_handlers, task)

    async def _dispatch(self, message: BrokerMessage) -> None:
        try:
            await self._handler(message)
        except Exception as e:
            logger.error(
                "Message handler failed",
                stage="BROKER.HANDLER_ERR",
                queue=self._name,
                error=str(e),
                error_type=type(e).__name__,
            )
            await message.nack(requeue=False)

    async def pause(self, timeout: float) -> None:
        """
        Stop consuming.

        Brokers whose receive can lose a message when cancelled mid-flight
        (cancel_safe_receive False) get up to `timeout` to finish the pending
        receive; whatever it returns is still dispatched. The consumer is
        cancelled only once that budget is spent.

        Raises:
            QueueTimeoutError: If the consumer did not stop in time
        """
        task = self._consumer_task
        if task is None or task.done():
            return

        self._stopping = True
        if not self.cancel_safe_receive:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if done:
                logger.debug("Listener paused", stage="BROKER.PAUSE", queue=self._name)
                return
            logger.warning(
                "Pending receive outlived pause budget; cancelling",
                stage="BROKER.PAUSE",
                queue=self._name,
                timeout=timeout,
            )

        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            raise QueueTimeoutError(
                f"Consumer for {self._name} did not stop within {timeout}s",
                details={"queue": self._name},
            )
        logger.debug("Listener paused", stage="BROKER.PAUSE", queue=self._name)

    # -------------------------------------------------------------------------
    # Drains
    # -------------------------------------------------------------------------

    async def await_handling_of_confirmations(self, timeout: float) -> None:
        await self._wait_for(self._pending_publishes, timeout, "publish confirmations")

    async def await_processing_of_rpcs(self, timeout: float) -> None:
        await self._wait_for(self._inflight_handlers, timeout, "message handlers")

    async def _wait_for(self, tasks: set[asyncio.Task], timeout: float, what: str) -> None:
        current = asyncio.current_task()
        outstanding = {task for task in tasks if task is not current}
        if not outstanding:
            return

        _, pending = await asyncio.wait(outstanding, timeout=timeout)
        if pending:
            raise QueueTimeoutError(
                f"{len(pending)} {what} still outstanding on {self._name} after {timeout}s",
                details={"queue": self._name, "outstanding": len(pending)},
            )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._is_closed():
            raise ConnectionClosedError(f"Connection for queue {self._name} is closed")

    @staticmethod
    def _track(tasks: set[asyncio.Task], task: asyncio.Task) -> None:
        tasks.add(task)
        task.add_done_callback(tasks.discard)
