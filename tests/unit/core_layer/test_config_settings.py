"""
Unit Tests for Configuration Settings

Tests the settings loading, validation, and default values.
"""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from queued_http.core.config.settings import (
    BrokerSettings,
    Settings,
    get_settings,
    reload_settings,
)


@pytest.mark.unit
class TestSettingsDefaults:
    """Test Settings defaults for every section."""

    def test_broker_defaults(self):
        """Test the broker section defaults to the in-memory broker."""
        settings = Settings()

        assert settings.broker.BROKER_TYPE == "memory"
        assert settings.broker.REDIS_PORT == 6379
        assert settings.broker.REDIS_QUEUE_PREFIX == "queue:"
        assert settings.broker.REDIS_REQUEST_QUEUE_TTL_SECONDS == 300

    def test_dispatcher_budgets(self):
        """Test the caller-side teardown budgets."""
        settings = Settings()

        assert settings.dispatcher.DISPATCH_DRAIN_TIMEOUT_SECONDS == 0.5
        assert settings.dispatcher.DISPATCH_PAUSE_TIMEOUT_SECONDS == 1.0

    def test_worker_defaults(self):
        """Test the worker budgets and rate limit defaults."""
        settings = Settings()

        assert settings.worker.WORKER_DRAIN_TIMEOUT_SECONDS == 10.0
        assert settings.worker.WORKER_PAUSE_TIMEOUT_SECONDS == 10.0
        assert settings.worker.RATE_LIMIT_INTERVAL_SECONDS == 1.0
        assert settings.worker.RATE_LIMIT_PER_INTERVAL == 10
        assert settings.worker.RATE_LIMIT_CONCURRENCY == 10
        assert settings.worker.RATE_LIMIT_AUTOSTART is True

    def test_section_views_follow_overrides(self):
        """Test that section views reflect values set on the root settings."""
        settings = Settings(REDIS_HOST="redis.internal", RATE_LIMIT_PER_INTERVAL=3, REDIS_REQUEST_QUEUE_TTL_SECONDS=30)

        assert settings.broker.REDIS_HOST == "redis.internal"
        assert settings.broker.REDIS_REQUEST_QUEUE_TTL_SECONDS == 30
        assert settings.worker.RATE_LIMIT_PER_INTERVAL == 3


@pytest.mark.unit
class TestSettingsValidation:
    """Test validation of settings values."""

    def test_log_level_is_normalized(self):
        """Test that LOG_LEVEL is upper-cased."""
        assert Settings(LOG_LEVEL="debug").logging.LOG_LEVEL == "DEBUG"

    def test_invalid_log_level_rejected(self):
        """Test that an unknown LOG_LEVEL fails fast."""
        with pytest.raises(ValidationError):
            Settings(LOG_LEVEL="CHATTY")

    def test_invalid_broker_type_rejected(self):
        """Test that BROKER_TYPE is restricted to known brokers."""
        with pytest.raises(ValidationError):
            BrokerSettings(BROKER_TYPE="carrier-pigeon")

    def test_environment_overrides(self):
        """Test that environment variables are picked up."""
        with patch.dict(os.environ, {"REDIS_PORT": "6380", "BROKER_TYPE": "redis"}):
            settings = Settings()

        assert settings.broker.REDIS_PORT == 6380
        assert settings.broker.BROKER_TYPE == "redis"


@pytest.mark.unit
class TestSettingsSingleton:
    """Test get_settings() / reload_settings()."""

    def test_get_settings_returns_same_instance(self):
        """Test that get_settings is a singleton."""
        assert get_settings() is get_settings()

    def test_reload_settings_replaces_instance(self):
        """Test that reload_settings builds a new instance."""
        before = get_settings()
        after = reload_settings()

        assert after is not before
        assert get_settings() is after
