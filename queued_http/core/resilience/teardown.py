"""
Bounded-Time Queue Teardown

Both sides finish a request the same way: drain outstanding publishes and
handler invocations, then pause listeners. The caller additionally deletes the
request-scoped queues. Every step has a budget and every failure is logged and
swallowed; teardown never changes how a request settles.
"""

import asyncio
from collections.abc import Awaitable, Iterable

from queued_http.core.interfaces.broker import BrokerQueue
from queued_http.core.logging.logger import get_logger

logger = get_logger(__name__)


async def _quietly(operation: Awaitable[None], stage: str, queue: BrokerQueue, action: str) -> None:
    try:
        await operation
    except Exception as e:
        logger.warning(
            "Teardown step failed",
            stage=stage,
            queue=queue.name,
            action=action,
            error=str(e),
            error_type=type(e).__name__,
        )


async def drain_and_pause(
    queues: Iterable[BrokerQueue], drain_timeout: float, pause_timeout: float, stage: str
) -> None:
    """Await confirmations and handlers on every queue, then pause them all."""
    queues = list(queues)
    await asyncio.gather(
        *(
            _quietly(queue.await_handling_of_confirmations(drain_timeout), stage, queue, "confirmations")
            for queue in queues
        ),
        *(_quietly(queue.await_processing_of_rpcs(drain_timeout), stage, queue, "rpcs") for queue in queues),
    )
    await asyncio.gather(*(_quietly(queue.pause(pause_timeout), stage, queue, "pause") for queue in queues))


async def delete_queues(queues: Iterable[BrokerQueue], stage: str) -> None:
    await asyncio.gather(*(_quietly(queue.delete(), stage, queue, "delete") for queue in queues))
