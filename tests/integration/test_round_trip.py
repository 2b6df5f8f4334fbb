"""
Integration Tests: Dispatcher and Worker End to End

Both sides run in one process over the in-memory broker; HTTP is served by
httpx.MockTransport. These tests cover the protocol as a caller sees it:
responses, errors, progress, cancellation, rate limiting and queue cleanup.
"""

import asyncio
from unittest.mock import patch

import httpx
import pytest

from queued_http.core.exceptions import (
    CanceledError,
    ConnectionClosedError,
    RateLimitExceededError,
    StatusValidationError,
    TransportError,
)
from queued_http.core.resilience.cancellation import CancelToken
from queued_http.core.resilience.request_dispatcher import ConnectionState
from queued_http.infrastructure.broker.memory_broker import MemoryQueue
from queued_http.infrastructure.transport.http_transport import HttpTransport
from queued_http.protocol.envelope import RequestConfig, Response
from queued_http.protocol.topology import QueueTopology
from tests.test_fixtures import ErrorRequestFactory, RequestFactory, WorkerTestFactory

QUEUE = WorkerTestFactory.QUEUE_NAME


async def settle(condition, timeout: float = 1.0) -> None:
    async def poll():
        while not condition():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.fixture
async def worker(worker_connection, echo_transport, fast_settings):
    """Started worker answering from the echo server."""
    worker = await WorkerTestFactory.started_worker(worker_connection, echo_transport, fast_settings)
    yield worker
    await worker.shutdown()


@pytest.fixture
def manager(connection, fast_settings):
    """Adapter manager over a borrowed connection."""
    return WorkerTestFactory.manager(connection, fast_settings)


@pytest.mark.integration
class TestRoundTrip:
    """Test ordinary requests."""

    @pytest.mark.asyncio
    async def test_post_json(self, worker, manager, memory_broker):
        """Test a JSON POST reaches the server and the response comes back."""
        config = RequestFactory.json_post()

        response = await manager.adapter(config)

        assert isinstance(response, Response)
        assert response.status == 200
        assert response.data["method"] == "POST"
        assert response.data["url"] == "https://api.test/user/12345"
        assert response.data["body"] == '{"firstName":"Fred","lastName":"Flintstone"}'
        assert response.config is config
        assert response.request_id
        assert memory_broker.queue_names() == [QUEUE]

    @pytest.mark.asyncio
    async def test_mapping_config(self, worker, manager):
        """Test the adapter accepts a plain mapping."""
        response = await manager.adapter({"method": "delete", "url": "/user/1"})
        assert response.data["method"] == "DELETE"

    @pytest.mark.asyncio
    async def test_worker_defaults_apply(self, worker, manager):
        """Test headers set on worker.defaults reach the server."""
        worker.defaults.headers["Authorization"] = "Bearer worker-token"

        response = await manager.adapter(RequestFactory.basic_get())

        assert response.data["headers"]["authorization"] == "Bearer worker-token"
        assert response.data["headers"]["accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_params_serializer_resolved_on_caller(self, worker, manager):
        """Test a caller-side serializer produces the query the server sees."""
        config = RequestConfig(url="/search", params={"q": "fred"}, params_serializer=lambda params: "custom=1")

        response = await manager.adapter(config)

        assert response.data["query"] == "custom=1"

    @pytest.mark.asyncio
    async def test_error_status_without_validation(self, worker, manager):
        """Test non-2xx responses resolve when validate_status is not set."""
        response = await manager.adapter(RequestFactory.with_status(503))
        assert response.status == 503

    @pytest.mark.parametrize("status,code", [(404, "ERR_BAD_REQUEST"), (500, "ERR_BAD_RESPONSE")])
    @pytest.mark.asyncio
    async def test_validate_status_rejects(self, worker, manager, status, code):
        """Test validate_status turns unwanted statuses into StatusValidationError."""
        config = RequestFactory.with_status(status, validate_status=lambda s: 200 <= s < 300)

        with pytest.raises(StatusValidationError) as exc_info:
            await manager.adapter(config)

        assert exc_info.value.code == code
        assert exc_info.value.response.status == status
        assert exc_info.value.config is config

    @pytest.mark.asyncio
    async def test_concurrent_requests_are_isolated(self, worker, manager):
        """Test each caller gets its own response."""
        configs = RequestFactory.batch_requests(5)

        responses = await asyncio.gather(*(manager.adapter(config) for config in configs))

        assert [r.data["path"] for r in responses] == [f"/batch/{i}" for i in range(5)]
        assert [r.data["query"] for r in responses] == [f"i={i}" for i in range(5)]
        assert len({r.request_id for r in responses}) == 5

    @pytest.mark.asyncio
    async def test_transport_failure_relayed(self, worker_connection, manager, fast_settings):
        """Test a failed outbound call raises TransportError on the caller."""

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            transport = HttpTransport({"base_url": "https://api.test"}, client=client)
            worker = await WorkerTestFactory.started_worker(worker_connection, transport, fast_settings)
            try:
                with pytest.raises(TransportError) as exc_info:
                    await manager.adapter(RequestFactory.basic_get())
            finally:
                await worker.shutdown()

        assert exc_info.value.code == "ERR_NETWORK"
        assert "connection refused" in exc_info.value.message


@pytest.mark.integration
class TestCompatibility:
    """Test requests answered without a worker round trip."""

    @pytest.mark.asyncio
    async def test_stream_gets_406_without_publish(self, worker, manager, memory_broker):
        """Test response_type stream is refused locally."""
        response = await manager.adapter(ErrorRequestFactory.stream_response())

        assert response.status == 406
        assert await (await manager.connection.get_queue(QUEUE)).message_count() == 0
        assert worker.working is False
        assert memory_broker.queue_names() == [QUEUE]

    @pytest.mark.asyncio
    async def test_worker_only_option_rejected_by_validation(self, worker, manager):
        """Test a 406 can still be rejected by validate_status."""
        config = ErrorRequestFactory.worker_only("lookup")
        config.validate_status = lambda status: status < 400

        with pytest.raises(StatusValidationError) as exc_info:
            await manager.adapter(config)

        assert exc_info.value.response.status == 406


@pytest.mark.integration
class TestProgress:
    """Test progress relay from worker to caller."""

    @pytest.mark.asyncio
    async def test_upload_and_download_progress(self, worker, manager):
        """Test events arrive in order and reach the full size."""
        uploads, downloads = [], []
        config = RequestFactory.large_upload()
        config.on_upload_progress = uploads.append

        async def on_download(event):
            downloads.append(event)

        config.on_download_progress = on_download

        await manager.adapter(config)

        loaded = [event["loaded"] for event in uploads]
        assert loaded == sorted(loaded)
        assert loaded[-1] == 200_000
        assert all(event["upload"] for event in uploads)
        assert downloads
        assert [event["loaded"] for event in downloads] == sorted(event["loaded"] for event in downloads)

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_fail_request(self, worker, manager):
        """Test a raising progress callback leaves the response intact."""

        def broken(event):
            raise RuntimeError("callback bug")

        config = RequestFactory.large_upload()
        config.on_upload_progress = broken

        response = await manager.adapter(config)

        assert response.status == 200


@pytest.mark.integration
class TestCancellation:
    """Test caller-side cancellation."""

    @pytest.fixture
    async def slow_worker(self, worker_connection, slow_client, fast_settings):
        transport = HttpTransport({"base_url": "https://api.test"}, client=slow_client)
        worker = await WorkerTestFactory.started_worker(worker_connection, transport, fast_settings)
        yield worker
        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_token_wins_race(self, slow_worker, manager):
        """Test cancel() rejects promptly and aborts the worker's call."""
        original = MemoryQueue._publish
        published = []

        async def recording(queue, content, correlation_id):
            published.append(queue.name)
            await original(queue, content, correlation_id)

        loop = asyncio.get_running_loop()
        token = CancelToken()
        loop.call_later(0.05, token.cancel, "User navigated away")

        with patch.object(MemoryQueue, "_publish", recording):
            started = loop.time()
            with pytest.raises(CanceledError) as exc_info:
                await asyncio.wait_for(manager.adapter(RequestConfig(url="/slow", cancel_token=token)), timeout=1.5)
            elapsed = loop.time() - started
            await settle(lambda: not slow_worker.working, timeout=1.5)

        # Cancel fires at 50ms while the upstream call takes 5s
        assert elapsed < 0.2
        assert exc_info.value.message == "User navigated away"
        assert exc_info.value.code == "ERR_CANCELED"
        assert len([name for name in published if name.endswith("/cancel")]) == 1

    @pytest.mark.asyncio
    async def test_signal_set_before_dispatch_never_publishes(self, slow_worker, manager):
        """Test a pre-aborted signal settles without sending the envelope."""
        signal = asyncio.Event()
        signal.set()

        with pytest.raises(CanceledError) as exc_info:
            await manager.adapter(RequestConfig(url="/slow", signal=signal))

        assert exc_info.value.message == "Request aborted"
        assert slow_worker.working is False
        assert await (await manager.connection.get_queue(QUEUE)).message_count() == 0

    @pytest.mark.asyncio
    async def test_cancel_after_settle_is_harmless(self, worker, manager):
        """Test cancelling a settled request changes nothing."""
        token = CancelToken()

        response = await manager.adapter(RequestConfig(url="/x", cancel_token=token))
        token.cancel()

        assert response.status == 200


@pytest.mark.integration
class TestBackpressure:
    """Test the worker's rate limit as seen by callers."""

    @pytest.mark.asyncio
    async def test_dropped_requests_fail_fast(self, worker_connection, echo_transport, manager, fast_settings):
        """Test requests over the limit raise RateLimitExceededError instead of hanging."""
        worker = await WorkerTestFactory.started_worker(
            worker_connection, echo_transport, fast_settings, per_interval=2
        )
        try:
            results = await asyncio.wait_for(
                asyncio.gather(
                    *(manager.adapter(config) for config in RequestFactory.batch_requests(5)),
                    return_exceptions=True,
                ),
                timeout=3.0,
            )
        finally:
            await worker.shutdown()

        responses = [r for r in results if isinstance(r, Response)]
        dropped = [r for r in results if isinstance(r, RateLimitExceededError)]
        assert len(responses) == 2
        assert len(dropped) == 3
        assert dropped[0].code == "ERR_RATE_LIMITED"


@pytest.mark.integration
class TestConnectionOwnership:
    """Test owned versus borrowed connections."""

    @pytest.mark.asyncio
    async def test_owned_connection_is_single_use(self, worker, fast_settings):
        """Test a manager built from settings closes after one request."""
        manager = WorkerTestFactory.manager({"BROKER_TYPE": "memory"}, fast_settings)

        response = await manager.adapter(RequestFactory.basic_get())

        assert response.status == 200
        assert manager.state == ConnectionState.CLOSED
        with pytest.raises(ConnectionClosedError, match="create a new adapter manager"):
            manager.adapter

    @pytest.mark.asyncio
    async def test_borrowed_connection_survives(self, worker, manager, connection):
        """Test an external connection stays open across requests."""
        await manager.adapter(RequestFactory.basic_get())
        await manager.adapter(RequestFactory.basic_get())

        assert manager.state == ConnectionState.ACTIVE
        assert connection.closed is False

    @pytest.mark.asyncio
    async def test_request_queues_removed_after_settle(self, worker, manager, memory_broker):
        """Test the caller deletes the four request queues once it settles."""
        response = await manager.adapter(RequestFactory.basic_get())

        leftovers = set(QueueTopology(QUEUE, response.request_id).ephemeral) & set(memory_broker.queue_names())
        assert leftovers == set()
