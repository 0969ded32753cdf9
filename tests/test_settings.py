"""Tests for core/settings.py — environment parsing and validation."""

from __future__ import annotations

import logging

import pytest

from core.settings import DEV_JWT_SECRET, ServiceSettings


class TestDefaults:
    def test_defaults(self) -> None:
        s = ServiceSettings.from_env({})
        assert s.retry_attempts == 5
        assert s.retry_min_delay_seconds == 1.0
        assert s.retry_max_delay_seconds == 8.0
        assert s.breaker_failure_threshold == 5
        assert s.breaker_error_percentage == 50
        assert s.breaker_reset_timeout_seconds == 30.0
        assert s.breaker_call_timeout_seconds == 10.0
        assert s.breaker_rolling_window_seconds == 60.0
        assert s.cache_ttl_seconds == 300
        assert s.cache_default_ttl_seconds == 3600
        assert s.cache_key_prefix == "user-service"
        assert s.use_mock_db is False
        assert s.jwt_secret == DEV_JWT_SECRET
        assert s.log_level == "INFO"


class TestFromEnv:
    def test_reads_values(self) -> None:
        s = ServiceSettings.from_env(
            {
                "DB_RETRY_ATTEMPTS": "3",
                "DB_RETRY_MIN_DELAY_MS": "200",
                "DB_RETRY_MAX_DELAY_MS": "2000",
                "BREAKER_RESET_TIMEOUT_MS": "5000",
                "CACHE_KEY_PREFIX": "accounts",
                "REDIS_URL": "redis://cache:6379/1",
                "DATABASE_URL": "sqlite://",
                "USE_MOCK_DB": "true",
                "JWT_SECRET": "prod-secret",
                "LOG_LEVEL": "debug",
            }
        )
        assert s.retry_attempts == 3
        assert s.retry_min_delay_seconds == 0.2
        assert s.retry_max_delay_seconds == 2.0
        assert s.breaker_reset_timeout_seconds == 5.0
        assert s.cache_key_prefix == "accounts"
        assert s.redis_url == "redis://cache:6379/1"
        assert s.database_url == "sqlite://"
        assert s.use_mock_db is True
        assert s.jwt_secret == "prod-secret"
        assert s.log_level == "DEBUG"

    def test_blank_integer_uses_default(self) -> None:
        assert ServiceSettings.from_env({"DB_RETRY_ATTEMPTS": " "}).retry_attempts == 5

    @pytest.mark.parametrize("raw", ["1", "yes", "ON", "True"])
    def test_truthy_booleans(self, raw: str) -> None:
        assert ServiceSettings.from_env({"USE_MOCK_DB": raw}).use_mock_db is True

    def test_non_integer_names_variable(self) -> None:
        with pytest.raises(ValueError, match="DB_RETRY_ATTEMPTS"):
            ServiceSettings.from_env({"DB_RETRY_ATTEMPTS": "five"})

    def test_bad_boolean_names_variable(self) -> None:
        with pytest.raises(ValueError, match="USE_MOCK_DB"):
            ServiceSettings.from_env({"USE_MOCK_DB": "maybe"})

    def test_default_secret_in_production_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="core.settings"):
            ServiceSettings.from_env({"APP_ENV": "production"})
        assert "default JWT_SECRET" in caplog.text


class TestValidation:
    @pytest.mark.parametrize(
        ("env", "name"),
        [
            ({"DB_RETRY_ATTEMPTS": "0"}, "DB_RETRY_ATTEMPTS"),
            ({"DB_RETRY_MIN_DELAY_MS": "-1"}, "DB_RETRY_MIN_DELAY_MS"),
            ({"DB_RETRY_MAX_DELAY_MS": "10"}, "DB_RETRY_MAX_DELAY_MS"),
            ({"BREAKER_FAILURE_THRESHOLD": "0"}, "BREAKER_FAILURE_THRESHOLD"),
            ({"BREAKER_ERROR_PERCENTAGE": "100"}, "BREAKER_ERROR_PERCENTAGE"),
            ({"BREAKER_CALL_TIMEOUT_MS": "0"}, "BREAKER_CALL_TIMEOUT_MS"),
            ({"CACHE_TTL_SECONDS": "0"}, "CACHE_TTL_SECONDS"),
            ({"CACHE_KEY_PREFIX": ""}, "CACHE_KEY_PREFIX"),
            ({"JWT_SECRET": ""}, "JWT_SECRET"),
            ({"LOG_LEVEL": "loud"}, "LOG_LEVEL"),
        ],
    )
    def test_invalid_values_rejected(self, env: dict, name: str) -> None:
        with pytest.raises(ValueError, match=name):
            ServiceSettings.from_env(env)

    def test_settings_are_immutable(self) -> None:
        s = ServiceSettings()
        with pytest.raises(AttributeError):
            s.retry_attempts = 10  # type: ignore[misc]
