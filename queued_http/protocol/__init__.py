"""
Protocol Module

Everything both sides of the request-over-queue protocol must agree on:
queue naming, the request envelope, outcomes, the binary codec, the result
sanitizer, query-string pre-resolution and the compatibility gate.
"""

from queued_http.protocol.codec import decode, encode
from queued_http.protocol.compatibility import WORKER_ONLY_OPTIONS, check_compatibility
from queued_http.protocol.envelope import (
    LOCAL_ONLY_FIELDS,
    TRANSMISSIBLE_FIELDS,
    RequestConfig,
    RequestEnvelope,
    Response,
)
from queued_http.protocol.outcome import (
    dropped_outcome,
    error_outcome,
    outcome_to_result,
    response_outcome,
)
from queued_http.protocol.params_serializer import (
    ParamsSerializerOptions,
    VisitorHelpers,
    build_url,
    serialize_params,
)
from queued_http.protocol.sanitizer import clean_non_serializable
from queued_http.protocol.topology import QueueTopology, RequestQueues, open_queues

__all__ = [
    "LOCAL_ONLY_FIELDS",
    "TRANSMISSIBLE_FIELDS",
    "WORKER_ONLY_OPTIONS",
    "ParamsSerializerOptions",
    "QueueTopology",
    "RequestConfig",
    "RequestEnvelope",
    "RequestQueues",
    "Response",
    "VisitorHelpers",
    "build_url",
    "check_compatibility",
    "clean_non_serializable",
    "decode",
    "dropped_outcome",
    "encode",
    "error_outcome",
    "open_queues",
    "outcome_to_result",
    "response_outcome",
    "serialize_params",
]
