"""
Request Dispatcher - Caller Side of Request-over-Queue

Turns a RequestConfig into a Response by way of a worker on the other end of
a broker queue, with the look and feel of a direct HTTP call.

Architecture:
    AdapterManager (Public API; owns or borrows the broker connection)
        └── RequestDispatcher (one dispatch() per request)
              ├── open_queues()          5-queue topology for the request
              ├── ProgressListener       N/R/*-progress -> caller callbacks
              ├── check_compatibility()  synthetic 406 for worker-only options
              ├── CancellationRelay      token/signal -> CanceledError + cancel marker
              └── drain_and_pause() / delete_queues()   bounded teardown

Flow per request:
    1. New request id (uuid4); open the five queues
    2. Listen on both progress queues before anything is sent
    3. Compatibility gate (no publish on a synthetic response)
    4. Publish the envelope (confirm mode, correlation id = request id)
    5. Race cancellation against the response; the loser is cancelled
    6. Teardown: drain 0.5s, pause 1.0s, delete the four request queues,
       close the connection if owned
    7. Settle through validate_status
"""

import asyncio
import inspect
import uuid
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import Any

from queued_http.core.config.settings import DispatcherSettings, get_settings
from queued_http.core.exceptions import (
    ConnectionClosedError,
    DeserializationError,
    RequestError,
    StatusValidationError,
)
from queued_http.core.interfaces.broker import BrokerConnection, BrokerMessage
from queued_http.core.logging.logger import clear_request_id, get_logger, set_request_id
from queued_http.core.resilience.cancellation import CancellationRelay, race_first
from queued_http.core.resilience.teardown import delete_queues, drain_and_pause
from queued_http.infrastructure.broker.factory import ConnectionConfig, resolve_connection
from queued_http.protocol import codec
from queued_http.protocol.compatibility import check_compatibility
from queued_http.protocol.envelope import RequestConfig, RequestEnvelope, Response
from queued_http.protocol.outcome import outcome_to_result
from queued_http.protocol.params_serializer import build_url
from queued_http.protocol.topology import QueueTopology, RequestQueues, open_queues

logger = get_logger(__name__)

Adapter = Callable[[RequestConfig | Mapping[str, Any]], Awaitable[Response]]
ProgressCallback = Callable[[dict[str, Any]], Any]


# =============================================================================
# LAYER 1: PROGRESS RELAY
# =============================================================================


class ProgressListener:
    """
    Hands progress events from a progress queue to the caller's callback.

    - No callback, or an undecodable message: nack without requeue
    - Callback raised: nack with requeue
    - Otherwise: ack
    """

    def __init__(self, callback: ProgressCallback | None, request_id: str):
        self._callback = callback
        self._request_id = request_id

    async def __call__(self, message: BrokerMessage) -> None:
        if self._callback is None:
            await message.nack(requeue=False)
            return

        try:
            event = codec.decode(message.content)
        except DeserializationError as e:
            logger.debug("Undecodable progress event", stage="DISPATCH.PROGRESS", error=str(e))
            await message.nack(requeue=False)
            return

        try:
            result = self._callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(
                "Progress callback failed",
                stage="DISPATCH.PROGRESS",
                request_id=self._request_id,
                error=str(e),
            )
            await message.nack(requeue=True)
            return

        await message.ack()


# =============================================================================
# LAYER 2: DISPATCH
# =============================================================================


class RequestDispatcher:
    """
    Runs the request protocol for a single connection.

    Responsibility: one dispatch() call is one request, from queue creation
    to settled Response (or raised RequestError).
    """

    def __init__(
        self,
        name: str,
        connection: BrokerConnection,
        external_connection: bool,
        settings: DispatcherSettings | None = None,
    ):
        settings = settings or get_settings().dispatcher
        self._name = name
        self._connection = connection
        self._external_connection = external_connection
        self._drain_timeout = settings.DISPATCH_DRAIN_TIMEOUT_SECONDS
        self._pause_timeout = settings.DISPATCH_PAUSE_TIMEOUT_SECONDS

    async def dispatch(self, config: RequestConfig | Mapping[str, Any] | None = None) -> Response:
        """
        Send one request through the queue and wait for its outcome.

        Raises:
            CanceledError: The caller's cancel token or signal fired first
            StatusValidationError: validate_status rejected the response
            TransportError: The worker could not complete the call
            RateLimitExceededError: The worker dropped the request
            DeserializationError: The worker's answer could not be decoded
            ConnectionClosedError: The connection is already closed
        """
        config = RequestConfig.from_value(config)
        request_id = str(uuid.uuid4())
        set_request_id(request_id)
        logger.info("Dispatching request", stage="DISPATCH.1", method=config.method, url=config.url)

        try:
            # STAGE-DISPATCH.1: Topology
            queues = await open_queues(self._connection, QueueTopology(self._name, request_id), include_request=True)
            try:
                result = await self._run(config, request_id, queues)
            finally:
                await self._teardown(queues)
            return self._settle(result, config, request_id)
        finally:
            clear_request_id()

    async def _run(self, config: RequestConfig, request_id: str, queues: RequestQueues) -> Response | RequestError:
        # STAGE-DISPATCH.2: Progress listeners before any send
        await queues.upload_progress.listen(ProgressListener(config.on_upload_progress, request_id))
        await queues.download_progress.listen(ProgressListener(config.on_download_progress, request_id))

        relay = CancellationRelay(config, queues.cancel, request_id)
        try:
            # STAGE-DISPATCH.5: Race cancellation against the operation
            return await race_first(relay.wait(), self._operate(config, request_id, queues, relay))
        finally:
            await relay.flush()

    async def _operate(
        self, config: RequestConfig, request_id: str, queues: RequestQueues, relay: CancellationRelay
    ) -> Response | RequestError:
        # STAGE-DISPATCH.3: Compatibility gate
        synthetic = check_compatibility(config)
        if synthetic is not None:
            logger.info("Rejected locally", stage="DISPATCH.3", status=synthetic.status, reason=synthetic.status_text)
            synthetic.request_id = request_id
            return synthetic

        envelope = RequestEnvelope.from_config(config, request_id)
        if config.params_serializer is not None:
            envelope = envelope.with_resolved_url(build_url(config.url, config.params, config.params_serializer))

        if relay.aborted:
            relay.send_cancel_marker()
            return relay.abort_error()

        loop = asyncio.get_running_loop()
        answer: asyncio.Future = loop.create_future()

        async def on_response(message: BrokerMessage) -> None:
            try:
                outcome = codec.decode(message.content)
            except DeserializationError as e:
                logger.warning("Undecodable response", stage="DISPATCH.RECV_ERR", error=str(e))
                await message.nack(requeue=False)
                if not answer.done():
                    answer.set_result(
                        DeserializationError("Failed to deserialize response", config=config, request_id=request_id)
                    )
                return
            await message.ack()
            if not answer.done():
                answer.set_result(outcome_to_result(outcome, config, request_id))

        await queues.response.listen(on_response)

        # STAGE-DISPATCH.4: Publish
        await queues.request.enqueue(envelope.to_bytes(), correlation_id=request_id)
        logger.debug("Envelope published", stage="DISPATCH.4", queue=queues.request.name)

        if relay.aborted:
            relay.send_cancel_marker()
            return relay.abort_error()

        return await answer

    async def _teardown(self, queues: RequestQueues) -> None:
        # STAGE-DISPATCH.6: Bounded teardown; failures are logged only
        await drain_and_pause(queues.all, self._drain_timeout, self._pause_timeout, "DISPATCH.TEARDOWN")
        await delete_queues(queues.ephemeral, "DISPATCH.TEARDOWN")

        if not self._external_connection:
            try:
                await self._connection.close()
            except Exception as e:
                logger.warning("Connection close failed", stage="DISPATCH.TEARDOWN", error=str(e))

    @staticmethod
    def _settle(result: Response | RequestError, config: RequestConfig, request_id: str) -> Response:
        # STAGE-DISPATCH.7: Settle
        if isinstance(result, BaseException):
            logger.info("Request failed", stage="DISPATCH.7", error_type=type(result).__name__, code=result.code)
            raise result

        validate_status = config.validate_status
        if not result.status or validate_status is None or validate_status(result.status):
            logger.info("Request completed", stage="DISPATCH.7", status=result.status)
            return result

        raise StatusValidationError.for_response(result, config, request_id)


# =============================================================================
# LAYER 3: PUBLIC API
# =============================================================================


class ConnectionState(str, Enum):
    """Lifecycle of an AdapterManager's connection."""

    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class AdapterManager:
    """
    Produces adapter functions bound to one queue and one broker connection.

    A manager built from connection settings owns its connection, and the
    connection is closed once the first request completes; the manager is
    then CLOSED and `adapter` raises. Build the manager from a live
    BrokerConnection to reuse it across requests (and close that connection
    yourself).

    Usage:
        # Single use
        adapter = AdapterManager.make("example-queue", {"BROKER_TYPE": "redis"})
        response = await adapter(RequestConfig(method="post", url="/user/12345", data={"firstName": "Fred"}))

        # Reusable
        connection = create_connection()
        adapter = AdapterManager.make("example-queue", connection)
    """

    def __init__(
        self,
        name: str,
        config: ConnectionConfig = None,
        *,
        settings: DispatcherSettings | None = None,
    ):
        self._name = name
        self._connection, self._external_connection = resolve_connection(config)
        self._state = ConnectionState.ACTIVE
        if not self._external_connection:
            self._connection.on_close(self._on_connection_closed)
        self._dispatcher = RequestDispatcher(name, self._connection, self._external_connection, settings)

    def _on_connection_closed(self) -> None:
        self._state = ConnectionState.CLOSED
        logger.debug("Adapter connection closed", stage="DISPATCH.CLOSE", queue=self._name)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def external_connection(self) -> bool:
        return self._external_connection

    @property
    def connection(self) -> BrokerConnection:
        return self._connection

    @property
    def adapter(self) -> Adapter:
        """
        The adapter function: `await adapter(config) -> Response`.

        Raises:
            ConnectionClosedError: If the connection has been closed
        """
        if self._state == ConnectionState.CLOSED:
            raise ConnectionClosedError(
                "Connection has been closed. Please create a new adapter manager instance."
            )
        return self._dispatcher.dispatch

    async def close(self) -> None:
        """Close the connection. Closing twice is not an error."""
        if self._state != ConnectionState.ACTIVE:
            return
        self._state = ConnectionState.CLOSING
        try:
            await self._connection.close()
        finally:
            self._state = ConnectionState.CLOSED

    async def __aenter__(self) -> "AdapterManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @classmethod
    def make(cls, name: str, config: ConnectionConfig = None) -> Adapter:
        """Create a manager and return its adapter."""
        return cls(name, config).adapter
