"""
Queue Worker - Rate-Limited HTTP Execution

Consumes request envelopes from the shared queue, performs the HTTP call and
answers on the request's response queue.

Architecture:
    QueueWorker (Public API)
        ├── RateLimitedQueueClient (admission; spill policy forced to DROP)
        ├── JobExecutor (one job: queues, cancel listener, call, outcome, teardown)
        ├── ProgressPublisher (fire-and-forget progress relay)
        └── HttpTransport (outbound call; defaults and interceptors)

Flow per job:
    1. Decode the envelope; the broker correlation id is the request id
    2. Open N/R/response (max_length 1), N/R/upload-progress,
       N/R/download-progress, N/R/cancel
    3. Listen on N/R/cancel: any message aborts the call
    4. Perform the call; every status is accepted
    5. Flush progress ticks, then sanitize and publish exactly one outcome
    6. Drain and pause the four queues (never delete them)

A job never takes the worker down: any failure in 1-5 becomes an error
outcome. A job the rate limiter drops is answered with a "dropped" outcome so
the caller fails fast instead of waiting.
"""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

from queued_http.core.config.settings import Settings, get_settings
from queued_http.core.exceptions import QueuedHttpError
from queued_http.core.interfaces.broker import BrokerConnection, BrokerMessage, BrokerQueue
from queued_http.core.logging.logger import clear_request_id, get_logger, set_request_id
from queued_http.core.resilience.teardown import drain_and_pause
from queued_http.infrastructure.broker.factory import ConnectionConfig, resolve_connection
from queued_http.infrastructure.transport.http_transport import HttpTransport, TransportDefaults
from queued_http.protocol import codec
from queued_http.protocol.envelope import RequestEnvelope
from queued_http.protocol.outcome import dropped_outcome, error_outcome, response_outcome
from queued_http.protocol.sanitizer import clean_non_serializable
from queued_http.protocol.topology import QueueTopology, RequestQueues, open_queues
from queued_http.rate_limiting.rate_limited_queue import (
    QueuedJob,
    RateLimitConfig,
    RateLimitedQueueClient,
    SpillMethod,
)

logger = get_logger(__name__)


# =============================================================================
# LAYER 1: PROGRESS RELAY
# =============================================================================


class ProgressPublisher:
    """
    Publishes transport progress ticks without blocking the transfer.

    Failed publishes are logged and not retried; progress is best effort.
    """

    def __init__(self, upload_queue: BrokerQueue, download_queue: BrokerQueue, request_id: str):
        self._upload_queue = upload_queue
        self._download_queue = download_queue
        self._request_id = request_id
        self._tasks: set[asyncio.Task] = set()

    def upload(self, event: dict[str, Any]) -> None:
        self._schedule(self._upload_queue, event)

    def download(self, event: dict[str, Any]) -> None:
        self._schedule(self._download_queue, event)

    def _schedule(self, queue: BrokerQueue, event: dict[str, Any]) -> None:
        task = asyncio.create_task(self._send(queue, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, queue: BrokerQueue, event: dict[str, Any]) -> None:
        try:
            await queue.enqueue(codec.encode(event))
        except Exception as e:
            logger.warning(
                "Progress publish failed",
                stage="WORKER.PROGRESS_ERR",
                queue=queue.name,
                request_id=self._request_id,
                error=str(e),
            )

    async def flush(self, timeout: float) -> None:
        """Wait (bounded) until scheduled publishes have been handed to the broker."""
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)


# =============================================================================
# LAYER 2: JOB EXECUTION
# =============================================================================


@dataclass
class JobContext:
    """State for one job."""

    request_id: str
    topology: QueueTopology
    abort: asyncio.Event
    queues: RequestQueues | None = None
    progress: ProgressPublisher | None = None


class JobExecutor:
    """
    Executes one queued request end to end.

    Responsibility: queue setup, cancel listening, the transport call, outcome
    publishing and teardown for a single job.
    """

    def __init__(
        self,
        name: str,
        connection: BrokerConnection,
        transport: HttpTransport,
        drain_timeout: float,
        pause_timeout: float,
        rate_config: RateLimitConfig,
    ):
        self._name = name
        self._connection = connection
        self._transport = transport
        self._drain_timeout = drain_timeout
        self._pause_timeout = pause_timeout
        self._rate_config = rate_config

    @staticmethod
    def _request_id(job: QueuedJob) -> str | None:
        if job.correlation_id:
            return job.correlation_id
        if isinstance(job.payload, Mapping):
            return job.payload.get("request_id")
        return None

    async def process(self, job: QueuedJob) -> None:
        """Process one admitted job. Never raises."""
        request_id = self._request_id(job)
        if not request_id:
            logger.error("Job without request id discarded", stage="WORKER.1")
            return

        set_request_id(request_id)
        ctx = JobContext(
            request_id=request_id,
            topology=QueueTopology(self._name, request_id),
            abort=asyncio.Event(),
        )
        try:
            try:
                outcome = await self._execute(ctx, job)
            except Exception as e:
                logger.error(
                    "Job failed",
                    stage="WORKER.ERR",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=not isinstance(e, QueuedHttpError),
                )
                outcome = error_outcome(e)

            if ctx.progress is not None:
                await ctx.progress.flush(self._drain_timeout)
            await self._publish_outcome(ctx, outcome)
            await self._teardown(ctx)
            logger.info("Job finished", stage="WORKER.6", outcome=outcome["kind"])
        finally:
            clear_request_id()

    async def _execute(self, ctx: JobContext, job: QueuedJob) -> dict[str, Any]:
        # STAGE-WORKER.1: Decode
        envelope = RequestEnvelope.from_payload(job.payload)
        logger.info("Processing request", stage="WORKER.1", method=envelope.method, url=envelope.url)

        # STAGE-WORKER.2: Per-request queues and cancel listener
        ctx.queues = await open_queues(self._connection, ctx.topology)

        async def on_cancel(message: BrokerMessage) -> None:
            logger.info("Cancel received", stage="WORKER.CANCEL", request_id=ctx.request_id)
            ctx.abort.set()
            await message.ack()

        await ctx.queues.cancel.listen(on_cancel)

        # STAGE-WORKER.3: Progress relay
        ctx.progress = ProgressPublisher(ctx.queues.upload_progress, ctx.queues.download_progress, ctx.request_id)

        # STAGE-WORKER.4-5: Outbound call; every status resolves
        try:
            response = await self._transport.request(
                envelope,
                on_upload_progress=ctx.progress.upload,
                on_download_progress=ctx.progress.download,
                abort=ctx.abort,
            )
        except QueuedHttpError as e:
            logger.info("Outbound call failed", stage="WORKER.5", error=str(e), code=getattr(e, "code", None))
            return error_outcome(e)

        logger.info("Outbound call completed", stage="WORKER.5", status=response.status)
        return response_outcome(response)

    async def _publish_outcome(self, ctx: JobContext, outcome: dict[str, Any]) -> None:
        try:
            if ctx.queues is not None:
                response_queue = ctx.queues.response
            else:
                response_queue = (await open_queues(self._connection, ctx.topology)).response
            await response_queue.enqueue(codec.encode(clean_non_serializable(outcome)))
        except Exception as e:
            logger.error(
                "Outcome publish failed",
                stage="WORKER.PUBLISH_ERR",
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _teardown(self, ctx: JobContext) -> None:
        if ctx.queues is not None:
            await drain_and_pause(ctx.queues.ephemeral, self._drain_timeout, self._pause_timeout, "WORKER.TEARDOWN")

    async def reject(self, job: QueuedJob) -> None:
        """Answer a job dropped by the rate limiter."""
        request_id = self._request_id(job)
        if not request_id:
            return

        topology = QueueTopology(self._name, request_id)
        outcome = dropped_outcome(self._rate_config.per_interval, self._rate_config.interval)
        try:
            queues = await open_queues(self._connection, topology)
            await queues.response.enqueue(codec.encode(outcome))
        except Exception as e:
            logger.error("Drop notification failed", stage="WORKER.DROP_ERR", request_id=request_id, error=str(e))
            return
        await drain_and_pause(queues.ephemeral, self._drain_timeout, self._pause_timeout, "WORKER.TEARDOWN")


# =============================================================================
# LAYER 3: PUBLIC API
# =============================================================================


class QueueWorker:
    """
    Worker serving one shared request queue.

    Usage:
        worker = QueueWorker(
            "example-queue",
            {"BROKER_TYPE": "redis", "REDIS_HOST": "localhost"},
            {"interval": 1.0, "per_interval": 10},
            {"base_url": "https://some-domain.com/api"},
        )
        worker.defaults.headers["Authorization"] = AUTH_TOKEN

        async def log_request(request):
            ...
        worker.interceptors["request"].append(log_request)

        await worker.start()
        ...
        await worker.shutdown()

    A connection passed in as a live BrokerConnection is never closed here;
    one created from settings is closed by shutdown().
    """

    def __init__(
        self,
        name: str,
        connection: ConnectionConfig = None,
        config: RateLimitConfig | Mapping[str, Any] | None = None,
        defaults: TransportDefaults | Mapping[str, Any] | None = None,
        *,
        transport: HttpTransport | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self._name = name
        self._connection, self._external_connection = resolve_connection(connection)

        rate_config = RateLimitConfig.from_value(config, settings.worker)
        if rate_config.spill_method != SpillMethod.DROP:
            logger.warning(
                "Spill method overridden to drop",
                stage="WORKER.0",
                requested=rate_config.spill_method.value,
            )
            rate_config = replace(rate_config, spill_method=SpillMethod.DROP)

        self._owns_transport = transport is None
        self._transport = transport or HttpTransport(defaults)
        self._executor = JobExecutor(
            name,
            self._connection,
            self._transport,
            drain_timeout=settings.worker.WORKER_DRAIN_TIMEOUT_SECONDS,
            pause_timeout=settings.worker.WORKER_PAUSE_TIMEOUT_SECONDS,
            rate_config=rate_config,
        )
        self._client = RateLimitedQueueClient(
            name,
            self._connection,
            self._executor.process,
            rate_config,
            on_drop=self._executor.reject,
        )
        logger.info(
            "Worker created",
            stage="WORKER.0",
            queue=name,
            external_connection=self._external_connection,
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._client.running

    @property
    def working(self) -> bool:
        return self._client.working

    @property
    def is_shut_down(self) -> bool:
        return self._client.is_shut_down

    @property
    def defaults(self) -> TransportDefaults:
        return self._transport.defaults

    @property
    def interceptors(self) -> dict[str, list]:
        return self._transport.interceptors

    async def get_pressure(self) -> int:
        """Total jobs waiting plus active."""
        return await self._client.get_pressure()

    async def start(self) -> None:
        await self._client.start()

    async def stop(self) -> None:
        await self._client.stop()

    async def shutdown(self) -> None:
        """Stop consuming, close the transport and, if owned, the connection."""
        if self._client.is_shut_down:
            return
        await self._client.shutdown()
        if self._owns_transport:
            await self._transport.close()
        if not self._external_connection:
            await self._connection.close()
        logger.info("Worker shut down", stage="WORKER.SHUTDOWN", queue=self._name)
