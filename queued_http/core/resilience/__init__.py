"""
Resilience Module

Orchestration for both sides of a queued request.

Module Structure:
-----------------
- **request_dispatcher.py**: AdapterManager and the caller-side request flow
- **queue_worker.py**: QueueWorker and per-job execution
- **cancellation.py**: CancelToken, CancellationRelay, race_first
- **teardown.py**: Bounded drain/pause/delete of request queues
"""

from queued_http.core.resilience.cancellation import CancellationRelay, CancelToken, race_first
from queued_http.core.resilience.queue_worker import JobExecutor, ProgressPublisher, QueueWorker
from queued_http.core.resilience.request_dispatcher import (
    Adapter,
    AdapterManager,
    ConnectionState,
    ProgressListener,
    RequestDispatcher,
)
from queued_http.core.resilience.teardown import delete_queues, drain_and_pause

__all__ = [
    "Adapter",
    "AdapterManager",
    "CancelToken",
    "CancellationRelay",
    "ConnectionState",
    "JobExecutor",
    "ProgressListener",
    "ProgressPublisher",
    "QueueWorker",
    "RequestDispatcher",
    "delete_queues",
    "drain_and_pause",
    "race_first",
]
