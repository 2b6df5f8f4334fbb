"""
Unit Tests for the Redis Broker

Redis is mocked; these tests pin down the list commands issued, the framing,
confirm-mode retries and connection handling.
"""

import asyncio
import warnings
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from queued_http.core.config.settings import BrokerSettings
from queued_http.core.exceptions import BrokerConnectionError, BrokerError, ConnectionClosedError
from queued_http.infrastructure.broker.redis_broker import MessageFraming, RedisBrokerConnection


@pytest.fixture
def redis_settings():
    return BrokerSettings(
        BROKER_TYPE="redis",
        REDIS_QUEUE_PREFIX="test:",
        BROKER_POLL_INTERVAL_SECONDS=0.05,
        BROKER_PUBLISH_MAX_RETRIES=3,
        REDIS_REQUEST_QUEUE_TTL_SECONDS=120,
    )


@pytest.fixture
def mock_redis():
    """Mock redis.asyncio client with a transactional pipeline."""
    client = MagicMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, True])
    client.pipeline.return_value.__aenter__.return_value = pipe
    client.pipeline.return_value.__aexit__.return_value = False
    client.ping = AsyncMock(return_value=True)
    client.brpop = AsyncMock(return_value=None)
    client.rpush = AsyncMock(return_value=1)
    client.delete = AsyncMock(return_value=1)
    client.llen = AsyncMock(return_value=3)
    client.aclose = AsyncMock()
    client.pipe = pipe
    return client


@pytest.mark.unit
class TestMessageFraming:
    """Test the list element format."""

    def test_frame_carries_content_and_correlation_id(self):
        """Test a frame decodes back to its parts."""
        frame = MessageFraming.encode(b"\x00binary\xff", "r1")
        assert MessageFraming.decode(frame) == (b"\x00binary\xff", "r1")

    @pytest.mark.parametrize("raw", [b"not json", b'{"correlation_id": "r1"}', b'{"content": 42}'])
    def test_malformed_frame_rejected(self, raw):
        """Test broken frames raise BrokerError."""
        with pytest.raises(BrokerError):
            MessageFraming.decode(raw)


@pytest.mark.unit
class TestRedisQueue:
    """Test queue handles over a mocked client."""

    @pytest.mark.asyncio
    async def test_publish_uses_lpush(self, mock_redis, redis_settings):
        """Test a plain publish pushes one frame to the prefixed key."""
        connection = RedisBrokerConnection(redis_settings, client=mock_redis)
        queue = await connection.get_queue("api")

        await queue.enqueue(b"payload", correlation_id="r1")

        assert queue.key == "test:api"
        key, frame = mock_redis.pipe.lpush.call_args.args
        assert key == "test:api"
        assert MessageFraming.decode(frame) == (b"payload", "r1")
        mock_redis.pipe.ltrim.assert_not_called()

    @pytest.mark.asyncio
    async def test_max_length_trims(self, mock_redis, redis_settings):
        """Test capacity-limited queues trim to max_length."""
        connection = RedisBrokerConnection(redis_settings, client=mock_redis)
        queue = await connection.get_queue("api/r/response", max_length=1)

        await queue.enqueue(b"outcome")

        mock_redis.pipe.ltrim.assert_called_once_with("test:api/r/response", 0, 0)

    @pytest.mark.asyncio
    async def test_confirm_publish_retries_connection_errors(self, mock_redis, redis_settings):
        """Test confirm-mode publishes survive a transient failure."""
        mock_redis.pipe.execute.side_effect = [RedisConnectionError("reset"), [1]]
        connection = RedisBrokerConnection(redis_settings, client=mock_redis)
        queue = await connection.get_queue("api", confirm=True)

        await queue.enqueue(b"envelope")

        assert mock_redis.pipe.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_confirm_publish_gives_up(self, mock_redis, redis_settings):
        """Test the last error is raised after max retries."""
        mock_redis.pipe.execute.side_effect = RedisConnectionError("down")
        connection = RedisBrokerConnection(redis_settings, client=mock_redis)
        queue = await connection.get_queue("api", confirm=True)

        with pytest.raises(RedisConnectionError):
            await queue.enqueue(b"envelope")
        assert mock_redis.pipe.execute.await_count == 3

    @pytest.mark.asyncio
    async def test_plain_publish_does_not_retry(self, mock_redis, redis_settings):
        """Test publishes without confirm fail immediately."""
        mock_redis.pipe.execute.side_effect = RedisConnectionError("down")
        connection = RedisBrokerConnection(redis_settings, client=mock_redis)
        queue = await connection.get_queue("api/r/download-progress")

        with pytest.raises(RedisConnectionError):
            await queue.enqueue(b"tick")
        assert mock_redis.pipe.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_confirm_retry_emits_no_deprecation_warning(self, mock_redis, redis_settings):
        """Test the retry policy builds cleanly under warnings-as-errors."""
        mock_redis.pipe.execute.side_effect = [RedisConnectionError("reset"), [1]]
        connection = RedisBrokerConnection(redis_settings, client=mock_redis)
        queue = await connection.get_queue("api", confirm=True)

        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            await queue.enqueue(b"envelope")

        assert mock_redis.pipe.execute.await_count == 2

    @pytest.mark.parametrize("suffix", ["response", "upload-progress", "download-progress", "cancel"])
    @pytest.mark.asyncio
    async def test_request_scoped_push_sets_expiry(self, mock_redis, redis_settings, suffix):
        """Test every push to a per-request queue refreshes its expiry."""
        connection = RedisBrokerConnection(redis_settings, client=mock_redis)
        queue = await connection.get_queue(f"api/r1/{suffix}")

        await queue.enqueue(b"tick")

        mock_redis.pipe.expire.assert_called_once_with(f"test:api/r1/{suffix}", 120)

    @pytest.mark.parametrize("name", ["api", "team/api", "api/r1/other"])
    @pytest.mark.asyncio
    async def test_shared_queue_push_has_no_expiry(self, mock_redis, redis_settings, name):
        """Test shared queues are never given an expiry."""
        connection = RedisBrokerConnection(redis_settings, client=mock_redis)
        queue = await connection.get_queue(name)

        await queue.enqueue(b"envelope")

        mock_redis.pipe.expire.assert_not_called()

    @pytest.mark.asyncio
    async def test_pause_lets_pending_receive_deliver(self, mock_redis, redis_settings):
        """Test a message popped while pause() waits still reaches the handler."""
        frame = MessageFraming.encode(b"job", "r1")
        in_flight = asyncio.Event()
        release = asyncio.Event()

        async def brpop(keys, timeout):
            if not in_flight.is_set():
                in_flight.set()
                await release.wait()
                return keys[0], frame
            await asyncio.sleep(timeout)
            return None

        mock_redis.brpop.side_effect = brpop
        connection = RedisBrokerConnection(redis_settings, client=mock_redis)
        queue = await connection.get_queue("api")
        received = []

        async def handler(message):
            received.append(message.content)
            await message.ack()

        await queue.listen(handler)
        await asyncio.wait_for(in_flight.wait(), timeout=1.0)

        pause = asyncio.create_task(queue.pause(1.0))
        await asyncio.sleep(0.02)
        assert not pause.done()

        release.set()
        await asyncio.wait_for(pause, timeout=1.0)
        await queue.await_processing_of_rpcs(1.0)

        assert received == [b"job"]
        assert mock_redis.brpop.await_count == 1
        assert queue.listening is False

    @pytest.mark.asyncio
    async def test_pause_cancels_receive_after_budget(self, mock_redis, redis_settings):
        """Test a receive that never returns is cancelled once the budget is spent."""

        async def brpop(keys, timeout):
            await asyncio.Event().wait()

        mock_redis.brpop.side_effect = brpop
        connection = RedisBrokerConnection(redis_settings, client=mock_redis)
        queue = await connection.get_queue("api")
        await queue.listen(AsyncMock())
        await asyncio.sleep(0.01)

        await asyncio.wait_for(queue.pause(0.05), timeout=1.0)

        assert queue.listening is False

    @pytest.mark.asyncio
    async def test_listen_delivers_and_requeues(self, mock_redis, redis_settings):
        """Test BRPOP results reach the handler and nack(requeue) pushes back."""
        frame = MessageFraming.encode(b"job", "r1")
        frames = [frame]

        async def brpop(keys, timeout):
            if frames:
                return keys[0], frames.pop(0)
            await asyncio.sleep(0.01)
            return None

        mock_redis.brpop.side_effect = brpop
        connection = RedisBrokerConnection(redis_settings, client=mock_redis)
        queue = await connection.get_queue("api")
        received = asyncio.get_running_loop().create_future()

        async def handler(message):
            await message.nack(requeue=True)
            received.set_result(message)

        await queue.listen(handler)
        message = await asyncio.wait_for(received, timeout=1.0)
        await queue.pause(1.0)

        assert message.content == b"job"
        assert message.correlation_id == "r1"
        mock_redis.rpush.assert_awaited_once_with("test:api", frame)

    @pytest.mark.asyncio
    async def test_delete_and_count(self, mock_redis, redis_settings):
        """Test delete() and message_count() map to DEL and LLEN."""
        connection = RedisBrokerConnection(redis_settings, client=mock_redis)
        queue = await connection.get_queue("api/r/cancel")

        await queue.delete()
        count = await queue.message_count()

        mock_redis.delete.assert_awaited_once_with("test:api/r/cancel")
        assert count == 3


@pytest.mark.unit
class TestRedisBrokerConnection:
    """Test connection handling."""

    @pytest.mark.asyncio
    async def test_connect_failure_raises_broker_connection_error(self, mock_redis, redis_settings):
        """Test an unreachable Redis is reported as BrokerConnectionError."""
        mock_redis.ping.side_effect = RedisConnectionError("refused")

        with patch("queued_http.infrastructure.broker.redis_broker.redis.Redis", return_value=mock_redis):
            connection = RedisBrokerConnection(redis_settings)
            with pytest.raises(BrokerConnectionError):
                await connection.get_queue("api")

    @pytest.mark.asyncio
    async def test_lazy_connect_pings_once(self, mock_redis, redis_settings):
        """Test the client is created and verified on first use only."""
        with patch(
            "queued_http.infrastructure.broker.redis_broker.redis.Redis", return_value=mock_redis
        ) as redis_class:
            connection = RedisBrokerConnection(redis_settings)
            await connection.get_queue("api")
            await connection.get_queue("api/r/response", max_length=1)

        redis_class.assert_called_once()
        mock_redis.ping.assert_awaited_once()
        assert connection.stats()["queues"] == 2

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, mock_redis, redis_settings):
        """Test close() twice closes the client and fires callbacks once."""
        connection = RedisBrokerConnection(redis_settings, client=mock_redis)
        calls = []
        connection.on_close(lambda: calls.append(1))

        await connection.close()
        await connection.close()

        mock_redis.aclose.assert_awaited_once()
        assert calls == [1]
        assert connection.closed is True
        with pytest.raises(ConnectionClosedError):
            await connection.get_queue("api")
