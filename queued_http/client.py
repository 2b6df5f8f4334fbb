"""
Proxied Client

A preconfigured caller whose every request travels through the queue:

    client = ProxiedClient("example-queue", connection, {"headers": {"X-App": "billing"}})
    response = await client.post("/user/12345", {"firstName": "Fred"})

Request transforms, response transforms and interceptors run here, in the
caller process; they never cross the broker. Options that only make sense on
the worker (agents, redirect hooks, DNS overrides) still come back as a
synthetic 406 response.
"""

import inspect
from collections.abc import Callable, Mapping
from dataclasses import replace
from typing import Any

from queued_http.core.logging.logger import get_logger
from queued_http.core.resilience.request_dispatcher import AdapterManager
from queued_http.infrastructure.broker.factory import ConnectionConfig
from queued_http.infrastructure.transport.http_transport import combine_urls
from queued_http.protocol.envelope import RequestConfig, Response
from queued_http.protocol.params_serializer import build_url

logger = get_logger(__name__)

ConfigLike = RequestConfig | Mapping[str, Any] | None


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _as_list(transforms: list[Callable] | Callable | None) -> list[Callable]:
    if transforms is None:
        return []
    if callable(transforms):
        return [transforms]
    return list(transforms)


class ProxiedClient:
    """
    Request-over-queue client with per-method helpers.

    The connection follows AdapterManager rules: pass a live BrokerConnection
    to send more than one request, or connection settings for a single
    request over an owned connection.
    """

    def __init__(self, queue_name: str, connection: ConnectionConfig = None, defaults: ConfigLike = None):
        self._queue_name = queue_name
        self._manager = AdapterManager(queue_name, connection)
        self._defaults = RequestConfig.from_value(defaults)
        self._interceptors: dict[str, list[Callable]] = {"request": [], "response": []}

    @property
    def defaults(self) -> RequestConfig:
        """Defaults merged into every request; mutate to change later requests."""
        return self._defaults

    @property
    def interceptors(self) -> dict[str, list[Callable]]:
        """
        {"request": [...], "response": [...]}.

        Request interceptors receive the merged RequestConfig and return the one
        to send; response interceptors receive the Response and return the one
        to hand back. Both may be sync or async.
        """
        return self._interceptors

    @property
    def manager(self) -> AdapterManager:
        return self._manager

    def get_uri(self, config: ConfigLike = None) -> str:
        """The URL a request with this config would be sent to, query string included."""
        merged = self._defaults.merged_with(config)
        url = combine_urls(merged.base_url, merged.url)
        return build_url(url, merged.params, merged.params_serializer) or ""

    async def request(self, config: ConfigLike = None) -> Response:
        """
        Send a request through the queue.

        Raises:
            RequestError: Any subclass the adapter raises
        """
        return await self._send(self._defaults.merged_with(config))

    async def _send(self, merged: RequestConfig) -> Response:
        for interceptor in self._interceptors["request"]:
            merged = await _maybe_await(interceptor(merged))

        data = merged.data
        headers = dict(merged.headers)
        for transform in _as_list(merged.transform_request):
            data = transform(data, headers)
        merged = replace(merged, data=data, headers=headers)

        logger.debug("Client request", stage="CLIENT.REQUEST", queue=self._queue_name, method=merged.method)
        response = await self._manager.adapter(merged)

        for transform in _as_list(merged.transform_response):
            response.data = transform(response.data, response.headers)

        for interceptor in self._interceptors["response"]:
            response = await _maybe_await(interceptor(response))
        return response

    async def _without_body(self, method: str, url: str, config: ConfigLike) -> Response:
        return await self._send(self._defaults.merged_with(config).merged_with({"method": method, "url": url}))

    async def _with_body(self, method: str, url: str, data: Any, config: ConfigLike, form: bool = False) -> Response:
        overrides: dict[str, Any] = {"method": method, "url": url, "data": data}
        if form:
            overrides["data_encoding"] = "form"
        return await self._send(self._defaults.merged_with(config).merged_with(overrides))

    async def get(self, url: str, config: ConfigLike = None) -> Response:
        return await self._without_body("get", url, config)

    async def delete(self, url: str, config: ConfigLike = None) -> Response:
        return await self._without_body("delete", url, config)

    async def head(self, url: str, config: ConfigLike = None) -> Response:
        return await self._without_body("head", url, config)

    async def options(self, url: str, config: ConfigLike = None) -> Response:
        return await self._without_body("options", url, config)

    async def post(self, url: str, data: Any = None, config: ConfigLike = None) -> Response:
        return await self._with_body("post", url, data, config)

    async def put(self, url: str, data: Any = None, config: ConfigLike = None) -> Response:
        return await self._with_body("put", url, data, config)

    async def patch(self, url: str, data: Any = None, config: ConfigLike = None) -> Response:
        return await self._with_body("patch", url, data, config)

    async def post_form(self, url: str, data: Any = None, config: ConfigLike = None) -> Response:
        """POST with the body sent as application/x-www-form-urlencoded."""
        return await self._with_body("post", url, data, config, form=True)

    async def put_form(self, url: str, data: Any = None, config: ConfigLike = None) -> Response:
        return await self._with_body("put", url, data, config, form=True)

    async def patch_form(self, url: str, data: Any = None, config: ConfigLike = None) -> Response:
        return await self._with_body("patch", url, data, config, form=True)

    async def close(self) -> None:
        await self._manager.close()
