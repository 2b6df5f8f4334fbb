"""
Integration tests.

Dispatcher, worker, rate limiter and transport running together over the
in-memory broker, with HTTP served by httpx.MockTransport. No external
services are needed.
"""
