"""
HTTP Transport - Outbound Calls for the Worker

Architecture:
    HttpTransport (Public API)
        ├── TransportDefaults (base_url / headers / params / timeout applied per call)
        ├── httpx.AsyncClient (connection pool; event_hooks act as interceptors)
        ├── upload progress    (request body streamed in chunks)
        ├── download progress  (response body read with aiter_bytes)
        └── abort              (an asyncio.Event racing the call)

Status codes are never an error here: every HTTP response becomes a Response
and status policy is left to the caller. Only failures to obtain a response
(connect errors, timeouts, aborts) raise.

Progress events are plain dicts:
    {"loaded": int, "total": int | None, "progress": float | None,
     "bytes": int, "upload": True} (or "download": True)
"""

import asyncio
import inspect
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import httpx
import orjson

from queued_http.core.config.constants import UPLOAD_CHUNK_SIZE, ErrorCode
from queued_http.core.exceptions import CanceledError, TransportError
from queued_http.core.logging.logger import get_logger
from queued_http.protocol.envelope import RequestEnvelope, Response
from queued_http.protocol.params_serializer import serialize_params

logger = get_logger(__name__)

ProgressCallback = Callable[[dict[str, Any]], Any]

_BINARY_RESPONSE_TYPES = {"bytes", "arraybuffer", "blob"}


@dataclass
class TransportDefaults:
    """
    Defaults merged into every outbound call.

    Mutations take effect on the next call:
        worker.defaults.headers["Authorization"] = f"Bearer {token}"
    """

    base_url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    timeout: float | None = None

    @classmethod
    def from_value(cls, value: "TransportDefaults | Mapping[str, Any] | None") -> "TransportDefaults":
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls(**dict(value))


def progress_event(loaded: int, total: int | None, chunk: int, direction: str) -> dict[str, Any]:
    return {
        "loaded": loaded,
        "total": total,
        "progress": (loaded / total) if total else None,
        "bytes": chunk,
        direction: True,
    }


def combine_urls(base_url: str | None, url: str | None) -> str:
    """Join a relative url onto base_url; absolute urls are returned unchanged."""
    url = url or ""
    try:
        absolute = httpx.URL(url).is_absolute_url
    except httpx.InvalidURL:
        absolute = False
    if not base_url or absolute:
        return url
    if not url:
        return base_url
    return f"{base_url.rstrip('/')}/{url.lstrip('/')}"


async def _notify(callback: ProgressCallback | None, event: dict[str, Any]) -> None:
    if callback is None:
        return
    result = callback(event)
    if inspect.isawaitable(result):
        await result


class HttpTransport:
    """
    Performs the HTTP call described by a RequestEnvelope.

    Usage:
        transport = HttpTransport({"base_url": "https://api.example.com"})
        response = await transport.request(envelope, abort=abort_event)
        await transport.close()
    """

    def __init__(
        self,
        defaults: TransportDefaults | Mapping[str, Any] | None = None,
        client: httpx.AsyncClient | None = None,
        upload_chunk_size: int = UPLOAD_CHUNK_SIZE,
    ):
        self._defaults = TransportDefaults.from_value(defaults)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._upload_chunk_size = upload_chunk_size

    @property
    def defaults(self) -> TransportDefaults:
        return self._defaults

    @property
    def interceptors(self) -> dict[str, list[Callable]]:
        """
        The httpx event hooks: {"request": [...], "response": [...]}.

        Hooks are async callables receiving httpx.Request / httpx.Response;
        append to the lists to register one.
        """
        return self._client.event_hooks

    async def request(
        self,
        envelope: RequestEnvelope,
        *,
        on_upload_progress: ProgressCallback | None = None,
        on_download_progress: ProgressCallback | None = None,
        abort: asyncio.Event | None = None,
    ) -> Response:
        """
        Perform the call.

        Raises:
            CanceledError: If abort was set before or during the call
            TransportError: If no response could be obtained
        """
        if abort is not None and abort.is_set():
            raise CanceledError("Request aborted", request_id=envelope.request_id)

        call = asyncio.create_task(self._perform(envelope, on_upload_progress, on_download_progress))
        if abort is None:
            return await call

        aborted = asyncio.create_task(abort.wait())
        try:
            await asyncio.wait({call, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
            if not call.done():
                call.cancel()
                await asyncio.gather(call, return_exceptions=True)

        if call.cancelled():
            logger.info("Outbound call aborted", stage="TRANSPORT.ABORT", request_id=envelope.request_id)
            raise CanceledError("Request aborted", request_id=envelope.request_id)
        return call.result()

    async def _perform(
        self,
        envelope: RequestEnvelope,
        on_upload_progress: ProgressCallback | None,
        on_download_progress: ProgressCallback | None,
    ) -> Response:
        url = combine_urls(envelope.base_url or self._defaults.base_url, envelope.url)
        headers = {**self._defaults.headers, **envelope.headers}
        url, params = self._apply_params(url, envelope.params)
        content = self._encode_body(envelope, headers)
        timeout = envelope.timeout or self._defaults.timeout or None

        if content is not None and on_upload_progress is not None:
            headers["Content-Length"] = str(len(content))
            content = self._upload_stream(content, on_upload_progress)

        auth = httpx.BasicAuth(*envelope.auth) if envelope.auth else httpx.USE_CLIENT_DEFAULT

        try:
            request = self._client.build_request(
                envelope.method, url, headers=headers, params=params, content=content, timeout=timeout
            )
            logger.debug("Sending outbound request", stage="TRANSPORT.SEND", method=envelope.method, url=url)
            response = await self._client.send(
                request, stream=True, auth=auth, follow_redirects=envelope.follow_redirects
            )
        except httpx.TimeoutException as e:
            raise TransportError(
                f"timeout of {timeout}s exceeded",
                code=ErrorCode.TIMEOUT.value,
                request_id=envelope.request_id,
                details={"error_type": type(e).__name__},
            ) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransportError(
                str(e) or type(e).__name__,
                request_id=envelope.request_id,
                details={"error_type": type(e).__name__},
            ) from e

        try:
            body = await self._read_body(response, on_download_progress)
        except httpx.TimeoutException as e:
            raise TransportError(
                f"timeout of {timeout}s exceeded",
                code=ErrorCode.TIMEOUT.value,
                request_id=envelope.request_id,
                details={"error_type": type(e).__name__},
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                str(e) or type(e).__name__,
                request_id=envelope.request_id,
                details={"error_type": type(e).__name__},
            ) from e
        finally:
            await response.aclose()

        logger.debug(
            "Outbound response received",
            stage="TRANSPORT.RECV",
            status=response.status_code,
            size=len(body),
        )
        return Response(
            status=response.status_code,
            status_text=response.reason_phrase,
            headers=dict(response.headers),
            data=self._decode_body(body, envelope, response),
            config=envelope.model_dump(mode="json"),
            request_id=envelope.request_id,
        )

    def _apply_params(self, url: str, params: Any) -> tuple[str, Any]:
        merged: Any = params
        if self._defaults.params:
            if params is None:
                merged = dict(self._defaults.params)
            elif isinstance(params, Mapping):
                merged = {**self._defaults.params, **params}

        if isinstance(merged, Mapping) and any(isinstance(v, Mapping) for v in merged.values()):
            query = serialize_params(merged)
            separator = "&" if "?" in url else "?"
            return (f"{url}{separator}{query}" if query else url), None
        return url, merged or None

    @staticmethod
    def _encode_body(envelope: RequestEnvelope, headers: dict[str, str]) -> bytes | None:
        body = envelope.body()
        lowered = {k.lower() for k in headers}

        if envelope.data_encoding == "none":
            return None
        if envelope.data_encoding == "json":
            if "content-type" not in lowered:
                headers["Content-Type"] = "application/json"
            return orjson.dumps(body)
        if envelope.data_encoding == "text":
            if "content-type" not in lowered:
                headers["Content-Type"] = "text/plain;charset=utf-8"
            return body.encode("utf-8")
        if envelope.data_encoding == "form":
            if "content-type" not in lowered:
                headers["Content-Type"] = "application/x-www-form-urlencoded"
            return urlencode(body, doseq=True).encode("utf-8")
        return body

    async def _upload_stream(self, content: bytes, callback: ProgressCallback) -> AsyncIterator[bytes]:
        total = len(content)
        loaded = 0
        for start in range(0, total, self._upload_chunk_size):
            chunk = content[start:start + self._upload_chunk_size]
            yield chunk
            loaded += len(chunk)
            await _notify(callback, progress_event(loaded, total, len(chunk), "upload"))

    @staticmethod
    async def _read_body(response: httpx.Response, callback: ProgressCallback | None) -> bytes:
        length = response.headers.get("content-length")
        total = int(length) if length and length.isdigit() else None
        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            await _notify(callback, progress_event(len(body), total, len(chunk), "download"))
        return bytes(body)

    @staticmethod
    def _decode_body(body: bytes, envelope: RequestEnvelope, response: httpx.Response) -> Any:
        if envelope.response_type in _BINARY_RESPONSE_TYPES:
            return body

        encoding = envelope.response_encoding or response.charset_encoding or "utf-8"
        try:
            text = body.decode(encoding, errors="replace")
        except LookupError:
            text = body.decode("utf-8", errors="replace")

        if envelope.response_type != "json" or not text:
            return text
        try:
            return orjson.loads(text)
        except orjson.JSONDecodeError:
            return text

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
