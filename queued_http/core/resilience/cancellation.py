"""
Cancellation Relay

Caller side:
    CancelToken / asyncio.Event signal ──fires──> CancellationRelay.wait()
        ├── publishes one cancel marker to N/R/cancel (side effect, awaited later)
        └── resolves to CanceledError, which wins the race against the response

Worker side:
    any message on N/R/cancel ──> abort event set ──> transport call aborted

The race itself (race_first) runs both contenders as tasks, returns the first
result and cancels the loser. Cancellation is therefore immediate for the
caller, while the worker's abort stays best effort.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

from queued_http.core.exceptions import CanceledError
from queued_http.core.interfaces.broker import BrokerQueue
from queued_http.core.logging.logger import get_logger

logger = get_logger(__name__)

DEFAULT_ABORT_MESSAGE = "Request aborted"


class CancelToken:
    """
    Explicit cancellation handle for a request.

    Usage:
        token = CancelToken()
        task = asyncio.create_task(adapter(RequestConfig(url="/slow", cancel_token=token)))
        token.cancel("User navigated away")
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "Request canceled") -> None:
        """Cancel once; later calls are ignored."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for callback in self._callbacks:
            callback(reason)

    def on_cancel(self, callback: Callable[[str], None]) -> None:
        if self._event.is_set():
            callback(self._reason)
        else:
            self._callbacks.append(callback)

    async def wait(self) -> str:
        await self._event.wait()
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CanceledError(self._reason)


def _signal_is_set(signal: Any) -> bool:
    return signal is not None and signal.is_set()


class CancellationRelay:
    """
    Watches one request's cancel token and signal.

    The cancel marker is published at most once per request, however many
    paths observe the abort.
    """

    def __init__(self, config: Any, cancel_queue: BrokerQueue, request_id: str):
        self._config = config
        self._token: CancelToken | None = config.cancel_token
        self._signal = config.signal
        self._cancel_queue = cancel_queue
        self._request_id = request_id
        self._side_effects: list[asyncio.Task] = []
        self._marker_sent = False

    @property
    def aborted(self) -> bool:
        return (self._token is not None and self._token.is_cancelled) or _signal_is_set(self._signal)

    def abort_error(self) -> CanceledError:
        if self._token is not None and self._token.is_cancelled:
            message = self._token.reason or DEFAULT_ABORT_MESSAGE
        else:
            message = DEFAULT_ABORT_MESSAGE
        return CanceledError(message, config=self._config, request_id=self._request_id)

    def send_cancel_marker(self) -> None:
        """Schedule the cancel marker publish; awaited by flush()."""
        if self._marker_sent:
            return
        self._marker_sent = True
        marker = str(int(time.time() * 1000)).encode()
        self._side_effects.append(asyncio.create_task(self._cancel_queue.enqueue(marker)))
        logger.info("Cancel marker scheduled", stage="DISPATCH.CANCEL", queue=self._cancel_queue.name)

    async def wait(self) -> CanceledError:
        """Resolve with CanceledError once the token or signal fires; never resolves otherwise."""
        waiters = []
        if self._token is not None:
            waiters.append(asyncio.ensure_future(self._token.wait()))
        if self._signal is not None:
            waiters.append(asyncio.ensure_future(self._signal.wait()))

        if not waiters:
            await asyncio.Future()

        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        self.send_cancel_marker()
        return self.abort_error()

    async def flush(self) -> None:
        """Await scheduled side effects; failures are logged."""
        if not self._side_effects:
            return
        results = await asyncio.gather(*self._side_effects, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.warning(
                    "Cancel marker publish failed",
                    stage="DISPATCH.CANCEL_ERR",
                    error=str(result),
                    error_type=type(result).__name__,
                )


async def race_first(*contenders: Awaitable[Any]) -> Any:
    """
    Run contenders concurrently and return the first result.

    When several finish in the same iteration the earliest argument wins.
    Losers are cancelled and awaited before returning. An exception raised by
    the winner propagates.
    """
    tasks = [asyncio.ensure_future(contender) for contender in contenders]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    for task in tasks:
        if task.done() and not task.cancelled():
            return task.result()
    raise asyncio.CancelledError()
