"""
Transport Module

Outbound HTTP for the worker.
"""

from queued_http.infrastructure.transport.http_transport import (
    HttpTransport,
    TransportDefaults,
    combine_urls,
    progress_event,
)

__all__ = ["HttpTransport", "TransportDefaults", "combine_urls", "progress_event"]
