"""
Configuration Module

- **settings.py**: Pydantic-based configuration with environment variable loading
- **constants.py**: Protocol constants and enums shared by dispatcher and worker

Usage:
------
```python
from queued_http.core.config import get_settings
from queued_http.core.config.constants import QueueSuffix

settings = get_settings()
budget = settings.worker.WORKER_DRAIN_TIMEOUT_SECONDS
```
"""

from queued_http.core.config.settings import (
    BrokerSettings,
    DispatcherSettings,
    LoggingSettings,
    Settings,
    WorkerSettings,
    get_settings,
    reload_settings,
)

__all__ = [
    "BrokerSettings",
    "DispatcherSettings",
    "LoggingSettings",
    "Settings",
    "WorkerSettings",
    "get_settings",
    "reload_settings",
]
