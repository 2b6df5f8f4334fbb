"""
Queue Topology

Deterministic naming for the five queues one request uses. Both sides derive
the names independently from the shared queue name and the correlation id, so
nothing about the topology travels on the wire.

    N                      shared request queue (confirm mode, long-lived)
    N/R/response           exactly one outcome (max_length 1)
    N/R/upload-progress    progress ticks, worker -> caller
    N/R/download-progress  progress ticks, worker -> caller
    N/R/cancel             cancel markers, caller -> worker
"""

import asyncio
from dataclasses import dataclass

from queued_http.core.config.constants import (
    QUEUE_NAME_SEPARATOR,
    RESPONSE_QUEUE_MAX_LENGTH,
    QueueSuffix,
)
from queued_http.core.interfaces.broker import BrokerConnection, BrokerQueue


@dataclass(frozen=True)
class QueueTopology:
    """Queue names for one request."""

    base_name: str
    request_id: str

    def _scoped(self, suffix: QueueSuffix) -> str:
        return QUEUE_NAME_SEPARATOR.join((self.base_name, self.request_id, suffix.value))

    @property
    def request(self) -> str:
        return self.base_name

    @property
    def response(self) -> str:
        return self._scoped(QueueSuffix.RESPONSE)

    @property
    def upload_progress(self) -> str:
        return self._scoped(QueueSuffix.UPLOAD_PROGRESS)

    @property
    def download_progress(self) -> str:
        return self._scoped(QueueSuffix.DOWNLOAD_PROGRESS)

    @property
    def cancel(self) -> str:
        return self._scoped(QueueSuffix.CANCEL)

    @property
    def ephemeral(self) -> tuple[str, str, str, str]:
        """The four request-scoped queue names, response first."""
        return (self.response, self.upload_progress, self.download_progress, self.cancel)


def is_request_scoped(name: str) -> bool:
    """True for N/R/<suffix> names, False for shared queues."""
    parts = name.rsplit(QUEUE_NAME_SEPARATOR, 2)
    return len(parts) == 3 and all(parts[:2]) and parts[2] in {suffix.value for suffix in QueueSuffix}


@dataclass
class RequestQueues:
    """Open handles for the request-scoped queues (plus the shared one on the caller side)."""

    response: BrokerQueue
    upload_progress: BrokerQueue
    download_progress: BrokerQueue
    cancel: BrokerQueue
    request: BrokerQueue | None = None

    @property
    def ephemeral(self) -> list[BrokerQueue]:
        return [self.response, self.upload_progress, self.download_progress, self.cancel]

    @property
    def all(self) -> list[BrokerQueue]:
        queues = [self.request] if self.request is not None else []
        return queues + self.ephemeral


async def open_queues(
    connection: BrokerConnection, topology: QueueTopology, include_request: bool = False
) -> RequestQueues:
    """
    Declare the request's queues concurrently and return their handles.

    Args:
        include_request: Also open the shared queue in confirm mode (caller side)
    """
    opening = [
        connection.get_queue(topology.response, max_length=RESPONSE_QUEUE_MAX_LENGTH),
        connection.get_queue(topology.upload_progress),
        connection.get_queue(topology.download_progress),
        connection.get_queue(topology.cancel),
    ]
    if include_request:
        opening.append(connection.get_queue(topology.request, confirm=True))

    handles = await asyncio.gather(*opening)
    return RequestQueues(
        response=handles[0],
        upload_progress=handles[1],
        download_progress=handles[2],
        cancel=handles[3],
        request=handles[4] if include_request else None,
    )
