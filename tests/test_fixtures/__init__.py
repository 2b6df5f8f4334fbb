"""
Test Fixtures Package

Shared test utilities and helpers for consistent testing across all modules.
"""

from .request_factory import ErrorRequestFactory, RequestFactory
from .worker_factory import WorkerTestFactory

__all__ = ["RequestFactory", "ErrorRequestFactory", "WorkerTestFactory"]
