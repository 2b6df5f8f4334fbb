"""
Redis List Broker

Architecture:
    RedisBrokerConnection (Public API)
        ├── ConnectionManager (client lifecycle, ping on connect)
        ├── MessageFraming (orjson frame with base64 body)
        └── RedisQueue (one list per queue)

Queue Mapping:
    - Queue "N" lives at key "<REDIS_QUEUE_PREFIX>N"
    - Publish: LPUSH, then LTRIM to max_length (drops the oldest)
    - Consume: BRPOP with BROKER_POLL_INTERVAL_SECONDS timeout
    - nack(requeue=True): RPUSH back to the consuming end
    - Delete: DEL (missing key is fine)
    - Per-request queues (N/R/*): EXPIRE refreshed on every push

Why Redis Lists?
    - BRPOP gives competing consumers for free
    - LTRIM gives the capacity-1 response queues their drop-oldest behaviour
"""

import base64
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import orjson
import redis.asyncio as redis
from redis.exceptions import ConnectionError, RedisError, TimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from queued_http.core.config.settings import BrokerSettings, get_settings
from queued_http.core.exceptions import BrokerConnectionError, BrokerError, ConnectionClosedError
from queued_http.core.interfaces.broker import BrokerConnection, BrokerMessage
from queued_http.core.logging.logger import get_logger
from queued_http.infrastructure.broker.base import BaseQueue
from queued_http.protocol.topology import is_request_scoped

logger = get_logger(__name__)


# =============================================================================
# LAYER 1: MESSAGE FRAMING
# Encodes message body and attributes into a single list element
# =============================================================================


class MessageFraming:
    """
    Frames a message for storage in a Redis list.

    Frame layout (orjson):
        {"content": <base64>, "correlation_id": <str|null>, "timestamp": <iso>}
    """

    @staticmethod
    def encode(content: bytes, correlation_id: str | None) -> bytes:
        return orjson.dumps(
            {
                "content": base64.b64encode(content).decode("ascii"),
                "correlation_id": correlation_id,
                "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            }
        )

    @staticmethod
    def decode(raw: bytes | str) -> tuple[bytes, str | None]:
        """
        Raises:
            BrokerError: If the frame is not a valid message frame
        """
        try:
            frame = orjson.loads(raw)
            return base64.b64decode(frame["content"]), frame.get("correlation_id")
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise BrokerError(f"Malformed message frame: {e}") from e


# =============================================================================
# LAYER 2: QUEUE HANDLE
# =============================================================================


class RedisQueue(BaseQueue):
    """Queue handle backed by one Redis list."""

    def __init__(
        self,
        client: redis.Redis,
        name: str,
        *,
        settings: BrokerSettings,
        **kwargs,
    ):
        super().__init__(name, **kwargs)
        self._client = client
        self._key = f"{settings.REDIS_QUEUE_PREFIX}{name}"
        self._poll_interval = settings.BROKER_POLL_INTERVAL_SECONDS
        self._max_retries = max(1, settings.BROKER_PUBLISH_MAX_RETRIES)
        # Per-request keys expire; a late publish may re-create one after delete
        self._ttl = settings.REDIS_REQUEST_QUEUE_TTL_SECONDS if is_request_scoped(name) else None

    @property
    def key(self) -> str:
        return self._key

    async def _publish(self, content: bytes, correlation_id: str | None) -> None:
        frame = MessageFraming.encode(content, correlation_id)

        if not self._confirm:
            await self._push(frame)
            return

        @retry(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=0.1, max=1.0),
            retry=retry_if_exception_type((ConnectionError, TimeoutError)),
            reraise=True,
            before_sleep=lambda retry_state: logger.info(
                "Publish retry",
                stage="BROKER.RETRY",
                attempt=retry_state.attempt_number,
                queue=self._name,
            ),
        )
        async def _confirmed_push():
            await self._push(frame)

        await _confirmed_push()

    async def _push(self, frame: bytes) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.lpush(self._key, frame)
            if self._max_length is not None:
                pipe.ltrim(self._key, 0, self._max_length - 1)
            if self._ttl is not None:
                pipe.expire(self._key, self._ttl)
            await pipe.execute()

    async def _receive(self) -> BrokerMessage | None:
        try:
            item = await self._client.brpop([self._key], timeout=self._poll_interval)
        except RedisError as e:
            logger.warning("Consume failed", stage="BROKER.CONSUME_ERR", queue=self._name, error=str(e))
            return None

        if item is None:
            return None

        _, raw = item
        try:
            content, correlation_id = MessageFraming.decode(raw)
        except BrokerError as e:
            logger.warning("Discarding malformed frame", stage="BROKER.CONSUME_ERR", queue=self._name, error=str(e))
            return None

        async def on_nack(requeue: bool) -> None:
            if requeue:
                await self._client.rpush(self._key, raw)

        return BrokerMessage(
            content=content,
            correlation_id=correlation_id,
            queue=self._name,
            _on_nack=on_nack,
        )

    async def delete(self) -> None:
        removed = await self._client.delete(self._key)
        logger.debug("Queue deleted", stage="BROKER.DELETE", queue=self._name, existed=bool(removed))

    async def message_count(self) -> int:
        return await self._client.llen(self._key)


# =============================================================================
# LAYER 3: CONNECTION
# =============================================================================


class RedisBrokerConnection(BrokerConnection):
    """
    Broker connection over redis.asyncio.

    The Redis client is created lazily on the first get_queue() and verified
    with PING. A client passed in by the caller is used as-is and is still
    closed by close(); pass a dedicated client.
    """

    def __init__(self, settings: BrokerSettings | None = None, client: redis.Redis | None = None):
        self._settings = settings or get_settings().broker
        self._client = client
        self._connected = client is not None
        self._closed = False
        self._close_callbacks: list[Callable[[], None]] = []
        self._queues: list[RedisQueue] = []

    @property
    def closed(self) -> bool:
        return self._closed

    async def connect(self) -> redis.Redis:
        """
        Create the client and verify it.

        Raises:
            BrokerConnectionError: If Redis cannot be reached
        """
        if self._connected and self._client is not None:
            return self._client

        try:
            if self._client is None:
                self._client = redis.Redis(
                    host=self._settings.REDIS_HOST,
                    port=self._settings.REDIS_PORT,
                    db=self._settings.REDIS_DB,
                    password=self._settings.REDIS_PASSWORD,
                    socket_connect_timeout=self._settings.REDIS_SOCKET_CONNECT_TIMEOUT,
                )
            await self._client.ping()
        except (ConnectionError, TimeoutError) as e:
            logger.error("Failed to connect to Redis", stage="BROKER.CONNECT", error=str(e))
            raise BrokerConnectionError(
                f"Failed to connect to Redis: {e}",
                details={"host": self._settings.REDIS_HOST, "port": self._settings.REDIS_PORT},
            ) from e

        self._connected = True
        logger.info(
            "Redis broker connected",
            stage="BROKER.CONNECT",
            host=self._settings.REDIS_HOST,
            port=self._settings.REDIS_PORT,
        )
        return self._client

    async def get_queue(
        self, name: str, max_length: int | None = None, confirm: bool = False
    ) -> RedisQueue:
        if self._closed:
            raise ConnectionClosedError(f"Cannot open queue {name}: connection is closed")

        client = await self.connect()
        queue = RedisQueue(
            client,
            name,
            settings=self._settings,
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
                try:
                    await queue.pause(timeout=self._settings.BROKER_POLL_INTERVAL_SECONDS)
                except BrokerError as e:
                    logger.warning("Pause on close failed", stage="BROKER.CLOSE", queue=queue.name, error=str(e))
        self._queues.clear()

        if self._client is not None:
            try:
                await self._client.aclose()
            except RedisError as e:
                logger.warning("Redis close failed", stage="BROKER.CLOSE", error=str(e))

        for callback in self._close_callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Close callback failed", stage="BROKER.CLOSE", error=str(e))
        self._close_callbacks.clear()
        logger.info("Redis broker connection closed", stage="BROKER.CLOSE")

    def stats(self) -> dict[str, Any]:
        return {
            "connected": self._connected,
            "closed": self._closed,
            "queues": len(self._queues),
            "key_prefix": self._settings.REDIS_QUEUE_PREFIX,
        }
