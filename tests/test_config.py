"""Tests for environment-driven settings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from convoflow.config import CircularNavigationPolicy, Settings, get_settings, reset_settings_cache


class TestSettings:
    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        for name in ("CIRCULAR_POLICY", "MAX_AUTO_ADVANCE_HOPS", "FLOW_CACHE_TTL_SECONDS"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.max_auto_advance_hops == 25
        assert settings.flow_cache_ttl_seconds == 300
        assert settings.circular_window == 10
        assert settings.circular_threshold == 2
        assert settings.circular_policy == CircularNavigationPolicy.REJECT
        assert settings.delegate_max_retries == 2

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("CIRCULAR_POLICY", " WARN ")
        monkeypatch.setenv("MAX_AUTO_ADVANCE_HOPS", "40")
        monkeypatch.setenv("USE_MEMORY_STORE", "false")

        settings = Settings.from_env()

        assert settings.circular_policy == CircularNavigationPolicy.WARN
        assert settings.max_auto_advance_hops == 40
        assert settings.use_memory_store is False

    def test_dotenv_file_is_a_fallback(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("SESSION_INACTIVITY_MINUTES", raising=False)
        monkeypatch.setenv("FLOW_CACHE_TTL_SECONDS", "60")
        (tmp_path / ".env").write_text(
            "SESSION_INACTIVITY_MINUTES=15\nFLOW_CACHE_TTL_SECONDS=999\n"
        )

        settings = Settings.from_env()

        assert settings.session_inactivity_minutes == 15
        assert settings.flow_cache_ttl_seconds == 60

    def test_invalid_values(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("MAX_AUTO_ADVANCE_HOPS", "0")

        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_settings_are_cached(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()

        monkeypatch.setenv("CIRCULAR_WINDOW", "20")
        assert get_settings() is first

        reset_settings_cache()
        assert get_settings().circular_window == 20
        reset_settings_cache()

    def test_log_settings(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("LOG_LEVEL", " debug ")
        monkeypatch.setenv("LOG_JSON", "false")

        settings = Settings.from_env()

        assert settings.log_level == "DEBUG"
        assert settings.log_json is False

        monkeypatch.setenv("LOG_LEVEL", "loud")
        with pytest.raises(ValidationError):
            Settings.from_env()
