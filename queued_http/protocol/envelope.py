"""
Request Config, Envelope and Response

RequestConfig is what callers build. RequestEnvelope is the part of it that
crosses the broker: an explicit allow-list of transmissible fields, frozen once
built. Everything in LOCAL_ONLY_FIELDS (callbacks, serializers, agents,
cancellation handles, DNS overrides, transforms) stays in the caller process.
"""

import base64
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields, replace
from typing import Any, Literal

import httpx
import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from queued_http.core.exceptions import DeserializationError

DataEncoding = Literal["none", "json", "text", "base64", "form"]

TRANSMISSIBLE_FIELDS: tuple[str, ...] = (
    "method",
    "url",
    "base_url",
    "headers",
    "params",
    "data",
    "data_encoding",
    "timeout",
    "response_type",
    "response_encoding",
    "auth",
    "follow_redirects",
)

LOCAL_ONLY_FIELDS: tuple[str, ...] = (
    "transform_request",
    "transform_response",
    "adapter",
    "on_upload_progress",
    "on_download_progress",
    "validate_status",
    "before_redirect",
    "http_agent",
    "https_agent",
    "cancel_token",
    "signal",
    "lookup",
    "params_serializer",
)


@dataclass
class RequestConfig:
    """
    Caller-side request configuration.

    Attributes:
        method: HTTP method (case-insensitive)
        url: Absolute URL or a path resolved against base_url on the worker
        base_url: Overrides the worker's default base URL
        headers: Request headers
        params: Query parameters; nested mappings use bracket notation
        data: Request body; dict/list go as JSON, str as text, bytes as-is
        data_encoding: Force a body encoding ("form" sends a mapping form-encoded)
        timeout: Seconds; None or 0 means no timeout
        response_type: "json", "text", "bytes"/"arraybuffer"; "stream" is rejected
        response_encoding: Charset used to decode text bodies
        auth: (username, password) for basic auth
        follow_redirects: Follow 3xx responses on the worker
        validate_status: Predicate deciding which statuses resolve; None accepts all
        on_upload_progress: Called with each upload progress event (sync or async)
        on_download_progress: Called with each download progress event (sync or async)
        cancel_token: CancelToken whose cancel() aborts the request
        signal: asyncio.Event; setting it aborts the request
        params_serializer: Callable, object with serialize(), or ParamsSerializerOptions
        transform_request: Callables applied to (data, headers) before dispatch
        transform_response: Callables applied to (data, headers) after the response
        before_redirect / http_agent / https_agent / lookup: worker-only options;
            setting any of them on the caller yields a synthetic 406 response
    """

    method: str = "get"
    url: str | None = None
    base_url: str | None = None
    headers: dict[str, Any] = field(default_factory=dict)
    params: Any = None
    data: Any = None
    data_encoding: DataEncoding | None = None
    timeout: float | None = None
    response_type: str = "json"
    response_encoding: str = "utf-8"
    auth: tuple[str, str] | None = None
    follow_redirects: bool = True

    validate_status: Callable[[int], bool] | None = None
    on_upload_progress: Callable[[dict[str, Any]], Any] | None = None
    on_download_progress: Callable[[dict[str, Any]], Any] | None = None
    cancel_token: Any = None
    signal: Any = None
    params_serializer: Any = None
    transform_request: list[Callable] | Callable | None = None
    transform_response: list[Callable] | Callable | None = None
    adapter: Callable | None = None
    before_redirect: Callable | None = None
    http_agent: Any = None
    https_agent: Any = None
    lookup: Callable | None = None

    @classmethod
    def from_value(cls, value: "RequestConfig | Mapping[str, Any] | None") -> "RequestConfig":
        """Accept a RequestConfig, a mapping of its fields, or None."""
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        known = {f.name for f in fields(cls)}
        unknown = set(value) - known
        if unknown:
            raise TypeError(f"Unknown request config option(s): {', '.join(sorted(unknown))}")
        return cls(**dict(value))

    def merged_with(self, overrides: "RequestConfig | Mapping[str, Any] | None") -> "RequestConfig":
        """
        Return a copy with overrides applied.

        Headers are merged (override wins per key); every other field is
        replaced when the override sets it to a non-default value.
        """
        if overrides is None:
            return replace(self, headers=dict(self.headers))

        if isinstance(overrides, RequestConfig):
            defaults = RequestConfig()
            changes = {
                f.name: getattr(overrides, f.name)
                for f in fields(RequestConfig)
                if getattr(overrides, f.name) != getattr(defaults, f.name)
            }
        else:
            changes = dict(overrides)

        headers = {**self.headers, **(changes.pop("headers", None) or {})}
        return replace(self, headers=headers, **changes)


class RequestEnvelope(BaseModel):
    """
    The transmissible part of a request, as published on the shared queue.

    Serialized as JSON with orjson. `data` carries the body in the form named
    by `data_encoding` (base64 text for bytes).
    """

    model_config = ConfigDict(frozen=True)

    request_id: str
    method: str = "GET"
    url: str | None = None
    base_url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    params: Any = None
    data: Any = None
    data_encoding: DataEncoding = "none"
    timeout: float | None = None
    response_type: str = "json"
    response_encoding: str = "utf-8"
    auth: tuple[str, str] | None = None
    follow_redirects: bool = True

    @classmethod
    def from_config(cls, config: RequestConfig, request_id: str) -> "RequestEnvelope":
        """Build an envelope from the allow-listed fields of config."""
        values = {name: getattr(config, name) for name in TRANSMISSIBLE_FIELDS}
        values["method"] = (values["method"] or "get").upper()
        values["headers"] = {str(k): str(v) for k, v in (values["headers"] or {}).items() if v is not None}
        if isinstance(values["params"], httpx.QueryParams):
            values["params"] = values["params"].multi_items()
        values["data"], values["data_encoding"] = encode_body(config.data, config.data_encoding)
        if values["auth"] is not None:
            values["auth"] = tuple(values["auth"])
        return cls(request_id=request_id, **values)

    def with_resolved_url(self, url: str | None) -> "RequestEnvelope":
        """Envelope with query-string pre-resolved into url and params cleared."""
        return self.model_copy(update={"url": url, "params": None})

    def body(self) -> Any:
        """Decode `data` back into what the transport sends."""
        if self.data_encoding == "base64":
            return base64.b64decode(self.data)
        return self.data

    def to_bytes(self) -> bytes:
        return orjson.dumps(self.model_dump(mode="json"))

    @classmethod
    def from_bytes(cls, raw: bytes) -> "RequestEnvelope":
        """
        Raises:
            DeserializationError: If raw is not a valid envelope
        """
        try:
            payload = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise DeserializationError(f"Invalid request envelope: {e}") from e
        return cls.from_payload(payload)

    @classmethod
    def from_payload(cls, payload: Any) -> "RequestEnvelope":
        """
        Raises:
            DeserializationError: If payload does not describe a valid envelope
        """
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise DeserializationError(f"Invalid request envelope: {e}") from e


def encode_body(data: Any, encoding: DataEncoding | None = None) -> tuple[Any, DataEncoding]:
    """
    Pick a wire form for a request body.

    Returns:
        (wire_data, data_encoding)
    """
    if data is None:
        return None, "none"
    if isinstance(data, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(data)).decode("ascii"), "base64"
    if encoding == "form":
        return dict(data), "form"
    if isinstance(data, str) and encoding != "json":
        return data, "text"
    return data, "json"


@dataclass
class Response:
    """
    A settled response.

    `config` is the caller's RequestConfig for responses returned by the
    adapter, and the transmitted envelope (as a dict) inside worker outcomes.
    """

    status: int
    status_text: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    data: Any = None
    config: Any = None
    request_id: str | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300
