"""
Request Exceptions

Errors a caller can receive from a queued request. Any of these raised by the
adapter means the request did not produce an accepted response.
"""

from typing import Any

from queued_http.core.config.constants import ErrorCode
from queued_http.core.exceptions.base import QueuedHttpError


class RequestError(QueuedHttpError):
    """
    Base exception for request outcomes that are not accepted responses.

    Attributes:
        code: ErrorCode value (e.g. "ERR_CANCELED")
        config: The caller's RequestConfig, when known
        response: The Response that caused the error, when there is one
        status: HTTP status of that response, or the status the worker
            reported alongside an error
    """

    default_code: ErrorCode | None = None

    def __init__(
        self,
        message: str,
        code: str | None = None,
        config: Any = None,
        response: Any = None,
        request_id: str | None = None,
        details: dict[str, Any] | None = None,
        status: int | None = None,
    ):
        super().__init__(message, request_id=request_id, details=details)
        if code is None and self.default_code is not None:
            code = self.default_code.value
        self.code = code
        self.config = config
        self.response = response
        self._status = status

    @property
    def status(self) -> int | None:
        """Status of the response, or the status reported without one."""
        if self.response is not None:
            return getattr(self.response, "status", None)
        return self._status

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["code"] = self.code
        data["status"] = self.status
        return data


class CanceledError(RequestError):
    """Raised when the caller cancels a request before it settles."""

    default_code = ErrorCode.CANCELED


class TransportError(RequestError):
    """
    Raised when the worker's outbound call failed.

    The worker relays the failure verbatim; `details["error_type"]` holds the
    class name of the original exception.
    """

    default_code = ErrorCode.NETWORK


class DeserializationError(RequestError):
    """Raised when a response payload from the worker cannot be decoded."""

    default_code = ErrorCode.DESERIALIZATION


class StatusValidationError(RequestError):
    """
    Raised when a well-formed response fails the caller's validate_status.

    code is ERR_BAD_REQUEST for 4xx and ERR_BAD_RESPONSE otherwise.
    """

    @classmethod
    def for_response(cls, response: Any, config: Any = None, request_id: str | None = None):
        status = response.status
        code = ErrorCode.BAD_REQUEST if 400 <= status < 500 else ErrorCode.BAD_RESPONSE
        return cls(
            f"Request failed with status code {status}",
            code=code.value,
            config=config,
            response=response,
            request_id=request_id,
        )


class RateLimitExceededError(RequestError):
    """
    Raised when the worker dropped the request because its rate limit was full.

    Retrying later may succeed.
    """

    default_code = ErrorCode.RATE_LIMITED
