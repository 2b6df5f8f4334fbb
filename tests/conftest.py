"""
Pytest Configuration and Shared Test Fixtures

This module provides pytest configuration and reusable fixtures for all tests.
All fixtures defined here are automatically available to all test files.
"""

import asyncio
from collections import deque

import httpx
import orjson
import pytest

from queued_http.core.config.settings import Settings
from queued_http.infrastructure.broker.memory_broker import MemoryBroker
from queued_http.infrastructure.transport.http_transport import HttpTransport

# ============================================================================
# Pytest Configuration
# ============================================================================

# pytest-asyncio runs in auto mode (see pyproject.toml)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def fast_settings():
    """
    Settings with short teardown budgets.

    The worker's production budgets (10s) would only slow tests down.
    """
    return Settings(
        WORKER_DRAIN_TIMEOUT_SECONDS=1.0,
        WORKER_PAUSE_TIMEOUT_SECONDS=1.0,
        DISPATCH_DRAIN_TIMEOUT_SECONDS=0.5,
        DISPATCH_PAUSE_TIMEOUT_SECONDS=1.0,
        RATE_LIMIT_INTERVAL_SECONDS=10.0,
    )


# ============================================================================
# Broker Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def memory_broker():
    """
    Fresh process-wide in-memory broker for every test.

    Connections created from settings ({"BROKER_TYPE": "memory"}) attach to
    this broker too.
    """
    MemoryBroker.reset_default()
    broker = MemoryBroker.default()
    yield broker
    MemoryBroker.reset_default()


@pytest.fixture
async def connection(memory_broker):
    """Caller-side connection; closed after the test."""
    conn = memory_broker.connect()
    yield conn
    await conn.close()


@pytest.fixture
async def worker_connection(memory_broker):
    """Worker-side connection to the same broker; closed after the test."""
    conn = memory_broker.connect()
    yield conn
    await conn.close()


# ============================================================================
# HTTP Fixtures
# ============================================================================


def echo_handler(request: httpx.Request) -> httpx.Response:
    """
    Echo the request back as JSON.

    Path prefixes select special behaviour:
    - /status/<code>: respond with that status
    """
    status = 200
    if request.url.path.startswith("/status/"):
        status = int(request.url.path.rsplit("/", 1)[-1])

    body = request.content.decode("utf-8") if request.content else None
    return httpx.Response(
        status,
        json={
            "method": request.method,
            "url": str(request.url),
            "path": request.url.path,
            "query": request.url.query.decode("ascii"),
            "headers": {k.lower(): v for k, v in request.headers.items()},
            "body": body,
        },
    )


@pytest.fixture
async def echo_client():
    """httpx.AsyncClient answering every request with echo_handler."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(echo_handler))
    yield client
    await client.aclose()


@pytest.fixture
async def echo_transport(echo_client):
    """HttpTransport with base_url https://api.test over the echo client."""
    return HttpTransport({"base_url": "https://api.test"}, client=echo_client)


@pytest.fixture
async def slow_client():
    """httpx.AsyncClient whose responses take 5 seconds."""

    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, content=orjson.dumps({"slow": True}))

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    yield client
    await client.aclose()


# ============================================================================
# Redis Fixtures
# ============================================================================


@pytest.fixture
def in_memory_redis():
    """
    In-memory Redis stub covering the list commands the Redis broker issues.

    Mimics LPUSH/RPUSH/BRPOP/LTRIM/EXPIRE/DEL/LLEN, including Redis removing a
    list (and its expiry) once it is empty.
    """

    class InMemoryRedis:
        def __init__(self):
            self.lists: dict[str, deque] = {}
            self.ttl: dict[str, int] = {}

        async def ping(self):
            return True

        async def aclose(self):
            pass

        def keys(self) -> list[str]:
            return sorted(self.lists)

        def _drop_if_empty(self, key):
            if key in self.lists and not self.lists[key]:
                del self.lists[key]
                self.ttl.pop(key, None)

        def _lpush(self, key, *values):
            self.lists.setdefault(key, deque()).extendleft(values)
            return len(self.lists[key])

        def _ltrim(self, key, start, end):
            if key in self.lists:
                self.lists[key] = deque(list(self.lists[key])[start : end + 1])
                self._drop_if_empty(key)
            return True

        def _expire(self, key, seconds):
            if key not in self.lists:
                return False
            self.ttl[key] = seconds
            return True

        async def lpush(self, key, *values):
            return self._lpush(key, *values)

        async def rpush(self, key, *values):
            self.lists.setdefault(key, deque()).extend(values)
            return len(self.lists[key])

        async def brpop(self, keys, timeout=0):
            deadline = asyncio.get_running_loop().time() + timeout if timeout else None
            while True:
                for key in keys:
                    if self.lists.get(key):
                        value = self.lists[key].pop()
                        self._drop_if_empty(key)
                        return key.encode(), value
                if deadline is not None and asyncio.get_running_loop().time() >= deadline:
                    return None
                await asyncio.sleep(0.005)

        async def delete(self, *keys):
            removed = 0
            for key in keys:
                if self.lists.pop(key, None) is not None:
                    removed += 1
                self.ttl.pop(key, None)
            return removed

        async def llen(self, key):
            return len(self.lists.get(key, ()))

        def pipeline(self, transaction=True):
            redis = self

            class FakePipeline:
                def __init__(self):
                    self.commands = []

                async def __aenter__(self):
                    return self

                async def __aexit__(self, exc_type, exc, tb):
                    return False

                def lpush(self, key, *values):
                    self.commands.append(lambda: redis._lpush(key, *values))

                def ltrim(self, key, start, end):
                    self.commands.append(lambda: redis._ltrim(key, start, end))

                def expire(self, key, seconds):
                    self.commands.append(lambda: redis._expire(key, seconds))

                async def execute(self):
                    return [command() for command in self.commands]

            return FakePipeline()

    return InMemoryRedis()
