"""
Outcomes

The single message a worker places on a request's response queue. On the wire
an outcome is a plain dict (pickled by the codec) discriminated by `kind`:

    response  {status, status_text, headers, data, config}
    error     {error_type, code, message, status}
    canceled  {error_type, code, message}
    dropped   {code, message}
"""

from enum import Enum
from typing import Any

from queued_http.core.config.constants import ErrorCode, OutcomeKind
from queued_http.core.exceptions import (
    CanceledError,
    DeserializationError,
    RateLimitExceededError,
    RequestError,
    TransportError,
)
from queued_http.protocol.envelope import Response


def response_outcome(response: Response) -> dict[str, Any]:
    return {
        "kind": OutcomeKind.RESPONSE.value,
        "status": response.status,
        "status_text": response.status_text,
        "headers": dict(response.headers),
        "data": response.data,
        "config": response.config,
    }


def error_outcome(exc: BaseException) -> dict[str, Any]:
    """Describe a failed job. CanceledError maps to the canceled kind."""
    kind = OutcomeKind.CANCELED if isinstance(exc, CanceledError) else OutcomeKind.ERROR
    code = getattr(exc, "code", None) or ErrorCode.WORKER
    status = getattr(exc, "status", None)
    return {
        "kind": kind.value,
        "error_type": type(exc).__name__,
        "code": code.value if isinstance(code, Enum) else str(code),
        "message": str(exc) or type(exc).__name__,
        "status": status if isinstance(status, int) else None,
    }


def dropped_outcome(limit: int, interval: float) -> dict[str, Any]:
    return {
        "kind": OutcomeKind.DROPPED.value,
        "code": ErrorCode.RATE_LIMITED.value,
        "message": f"Request dropped: worker rate limit of {limit} per {interval}s exceeded",
    }


def outcome_to_result(
    outcome: Any, config: Any = None, request_id: str | None = None
) -> Response | RequestError:
    """
    Turn a decoded outcome into what the adapter settles with.

    Returns:
        A Response carrying the caller's config, or the RequestError to raise
    """
    kind = outcome.get("kind") if isinstance(outcome, dict) else None

    if kind == OutcomeKind.RESPONSE.value:
        try:
            status = int(outcome["status"])
        except (KeyError, TypeError, ValueError):
            return DeserializationError("Response outcome has no valid status", config=config, request_id=request_id)
        return Response(
            status=status,
            status_text=outcome.get("status_text") or "",
            headers=dict(outcome.get("headers") or {}),
            data=outcome.get("data"),
            config=config,
            request_id=request_id,
        )

    if kind == OutcomeKind.CANCELED.value:
        return CanceledError(outcome.get("message") or "Request aborted", config=config, request_id=request_id)

    if kind == OutcomeKind.DROPPED.value:
        return RateLimitExceededError(
            outcome.get("message") or "Request dropped by worker rate limit",
            config=config,
            request_id=request_id,
        )

    if kind == OutcomeKind.ERROR.value:
        status = outcome.get("status")
        return TransportError(
            outcome.get("message") or "Request failed on worker",
            code=outcome.get("code"),
            config=config,
            request_id=request_id,
            details={"error_type": outcome.get("error_type"), "status": status},
            status=status if isinstance(status, int) else None,
        )

    return DeserializationError("Failed to deserialize response", config=config, request_id=request_id)
