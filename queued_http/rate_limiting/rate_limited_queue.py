"""
Rate-Limited Queue Client

Consumes JSON jobs from a named queue and feeds them to a processor under a
fixed-window rate limit plus a concurrency cap.

Admission (per message):
1. Reset the window if `interval` seconds have passed since it opened
2. Admit if fewer than `per_interval` jobs started in this window AND fewer
   than `concurrency` jobs are active
3. Otherwise spill:
   - DROP:   ack the message and hand the job to on_drop()
   - BUFFER: ack the message and keep the job locally until the next window
             (or until an active job finishes)

Undecodable messages are nacked without requeue.
"""

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any

import orjson

from queued_http.core.config.settings import WorkerSettings, get_settings
from queued_http.core.exceptions import BrokerError, ConfigurationError
from queued_http.core.interfaces.broker import BrokerConnection, BrokerMessage, BrokerQueue
from queued_http.core.logging.logger import get_logger

logger = get_logger(__name__)


class SpillMethod(str, Enum):
    """What happens to a job that arrives while the limit is exhausted."""

    DROP = "drop"
    BUFFER = "buffer"


@dataclass
class RateLimitConfig:
    """
    Attributes:
        interval: Window length in seconds
        per_interval: Jobs allowed to start per window
        concurrency: Jobs allowed to run at the same time
        autostart: Start consuming as soon as an event loop is available
        spill_method: DROP or BUFFER
    """

    interval: float = 1.0
    per_interval: int = 10
    concurrency: int = 10
    autostart: bool = True
    spill_method: SpillMethod = SpillMethod.DROP

    def __post_init__(self):
        if self.interval <= 0:
            raise ConfigurationError("interval must be positive", details={"interval": self.interval})
        if self.per_interval < 1 or self.concurrency < 1:
            raise ConfigurationError(
                "per_interval and concurrency must be at least 1",
                details={"per_interval": self.per_interval, "concurrency": self.concurrency},
            )
        self.spill_method = SpillMethod(self.spill_method)

    @classmethod
    def from_settings(cls, settings: WorkerSettings | None = None) -> "RateLimitConfig":
        settings = settings or get_settings().worker
        return cls(
            interval=settings.RATE_LIMIT_INTERVAL_SECONDS,
            per_interval=settings.RATE_LIMIT_PER_INTERVAL,
            concurrency=settings.RATE_LIMIT_CONCURRENCY,
            autostart=settings.RATE_LIMIT_AUTOSTART,
        )

    @classmethod
    def from_value(
        cls, value: "RateLimitConfig | Mapping[str, Any] | None", settings: WorkerSettings | None = None
    ) -> "RateLimitConfig":
        """Fill unspecified fields from settings."""
        if isinstance(value, cls):
            return value
        base = cls.from_settings(settings)
        if not value:
            return base
        known = {f.name for f in fields(cls)}
        unknown = set(value) - known
        if unknown:
            raise ConfigurationError(f"Unknown rate limit option(s): {', '.join(sorted(unknown))}")
        merged = {f.name: getattr(base, f.name) for f in fields(cls)}
        merged.update(value)
        return cls(**merged)


@dataclass
class QueuedJob:
    """A decoded job and the broker attributes it arrived with."""

    payload: Any
    correlation_id: str | None = None


JobProcessor = Callable[[QueuedJob], Awaitable[None]]
DropHandler = Callable[[QueuedJob], Awaitable[None]]


class WindowCounter:
    """Fixed-window start counter."""

    def __init__(self, interval: float, limit: int):
        self._interval = interval
        self._limit = limit
        self._window_start = time.monotonic()
        self._count = 0

    def _roll(self, now: float) -> None:
        if now - self._window_start >= self._interval:
            self._window_start = now
            self._count = 0

    def has_capacity(self) -> bool:
        self._roll(time.monotonic())
        return self._count < self._limit

    def take(self) -> None:
        self._count += 1

    @property
    def count(self) -> int:
        return self._count


class RateLimitedQueueClient:
    """
    Rate-limited consumer for one queue.

    Usage:
        client = RateLimitedQueueClient("api", connection, process_job, {"per_interval": 5})
        await client.start()
        ...
        await client.shutdown()
    """

    def __init__(
        self,
        name: str,
        connection: BrokerConnection,
        processor: JobProcessor,
        config: RateLimitConfig | Mapping[str, Any] | None = None,
        on_drop: DropHandler | None = None,
    ):
        self._name = name
        self._connection = connection
        self._processor = processor
        self._config = RateLimitConfig.from_value(config)
        self._on_drop = on_drop

        self._window = WindowCounter(self._config.interval, self._config.per_interval)
        self._lock = asyncio.Lock()
        self._waiting: deque[QueuedJob] = deque()
        self._active: set[asyncio.Task] = set()

        self._queue: BrokerQueue | None = None
        self._ticker: asyncio.Task | None = None
        self._running = False
        self._shut_down = False
        self._autostart_task: asyncio.Task | None = None

        if self._config.autostart:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                self._autostart_task = loop.create_task(self.start())

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    @property
    def running(self) -> bool:
        return self._running

    @property
    def working(self) -> bool:
        return bool(self._active)

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Start consuming. Calling start() on a running client is a no-op.

        Raises:
            BrokerError: If the client has been shut down
        """
        if self._shut_down:
            raise BrokerError(f"Rate-limited client for {self._name} has been shut down")

        autostart = self._autostart_task
        if autostart is not None and autostart is not asyncio.current_task() and not autostart.done():
            await asyncio.gather(autostart, return_exceptions=True)
        if self._running:
            return

        self._running = True
        try:
            if self._queue is None:
                self._queue = await self._connection.get_queue(self._name, confirm=True)
            await self._queue.listen(self._on_message)
        except Exception:
            self._running = False
            raise

        self._ticker = asyncio.create_task(self._tick_loop())
        logger.info(
            "Rate-limited consumer started",
            stage="LIMITER.START",
            queue=self._name,
            interval=self._config.interval,
            per_interval=self._config.per_interval,
            concurrency=self._config.concurrency,
            spill_method=self._config.spill_method.value,
        )

    async def stop(self, timeout: float | None = None) -> None:
        """Stop consuming and wait for active jobs to finish."""
        autostart = self._autostart_task
        if autostart is not None and autostart is not asyncio.current_task() and not autostart.done():
            await asyncio.gather(autostart, return_exceptions=True)

        if self._running:
            self._running = False
            if self._ticker is not None:
                self._ticker.cancel()
                await asyncio.gather(self._ticker, return_exceptions=True)
                self._ticker = None
            if self._queue is not None:
                try:
                    await self._queue.pause(timeout or self._config.interval)
                except BrokerError as e:
                    logger.warning("Pause failed during stop", stage="LIMITER.STOP", queue=self._name, error=str(e))

        if self._active:
            await asyncio.wait(set(self._active), timeout=timeout)
        logger.info("Rate-limited consumer stopped", stage="LIMITER.STOP", queue=self._name)

    async def shutdown(self) -> None:
        """Stop for good. Buffered jobs are handed to on_drop()."""
        if self._shut_down:
            return
        await self.stop()
        self._shut_down = True

        while self._waiting:
            await self._drop(self._waiting.popleft())
        logger.info("Rate-limited consumer shut down", stage="LIMITER.SHUTDOWN", queue=self._name)

    async def get_pressure(self) -> int:
        """Jobs waiting (locally buffered plus still on the queue) plus jobs active."""
        queued = 0
        if self._queue is not None:
            try:
                queued = await self._queue.message_count()
            except BrokerError as e:
                logger.warning("Queue depth unavailable", stage="LIMITER.PRESSURE", queue=self._name, error=str(e))
        return queued + len(self._waiting) + len(self._active)

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    async def _on_message(self, message: BrokerMessage) -> None:
        try:
            payload = orjson.loads(message.content)
        except orjson.JSONDecodeError as e:
            logger.warning("Undecodable job discarded", stage="LIMITER.DECODE_ERR", queue=self._name, error=str(e))
            await message.nack(requeue=False)
            return

        job = QueuedJob(payload=payload, correlation_id=message.correlation_id)
        await message.ack()

        async with self._lock:
            admitted = self._admit(job)
            if not admitted and self._config.spill_method == SpillMethod.BUFFER:
                self._waiting.append(job)
                logger.debug("Job buffered", stage="LIMITER.BUFFER", queue=self._name, waiting=len(self._waiting))
                return

        if not admitted:
            await self._drop(job)

    def _admit(self, job: QueuedJob) -> bool:
        """Start job if the window and concurrency allow it. Caller holds the lock."""
        if not self._running or len(self._active) >= self._config.concurrency:
            return False
        if not self._window.has_capacity():
            return False

        self._window.take()
        task = asyncio.create_task(self._run(job))
        self._active.add(task)
        task.add_done_callback(self._on_job_done)
        return True

    async def _drop(self, job: QueuedJob) -> None:
        logger.warning(
            "Job dropped by rate limit",
            stage="LIMITER.DROP",
            queue=self._name,
            correlation_id=job.correlation_id,
            per_interval=self._config.per_interval,
        )
        if self._on_drop is None:
            return
        try:
            await self._on_drop(job)
        except Exception as e:
            logger.error("Drop handler failed", stage="LIMITER.DROP_ERR", queue=self._name, error=str(e))

    async def _run(self, job: QueuedJob) -> None:
        try:
            await self._processor(job)
        except Exception as e:
            logger.error(
                "Job processor failed",
                stage="LIMITER.JOB_ERR",
                queue=self._name,
                correlation_id=job.correlation_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    def _on_job_done(self, task: asyncio.Task) -> None:
        self._active.discard(task)
        if self._waiting and self._running:
            asyncio.get_running_loop().create_task(self._drain_waiting())

    async def _drain_waiting(self) -> None:
        async with self._lock:
            while self._waiting and self._admit(self._waiting[0]):
                self._waiting.popleft()

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.interval)
            if self._waiting:
                await self._drain_waiting()
