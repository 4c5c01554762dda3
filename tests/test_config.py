import logging

import pytest

from realtime_chat.config import Settings
from realtime_chat.utils.logging_config import setup_logging


def test_settings_defaults():
    settings = Settings(_env_file=None)
    assert settings.presence_ttl_seconds == 60
    assert settings.typing_window_seconds == 3
    assert settings.fcm_project_id is None


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("PRESENCE_TTL_SECONDS", "15")
    monkeypatch.setenv("DEFAULT_TIMEZONE", "Europe/Berlin")
    settings = Settings(_env_file=None)
    assert settings.presence_ttl_seconds == 15
    assert settings.default_timezone == "Europe/Berlin"


def test_setup_logging_sets_package_level():
    setup_logging("debug")
    assert logging.getLogger("realtime_chat").level == logging.DEBUG
    setup_logging("INFO")
    assert logging.getLogger("realtime_chat.services.presence").getEffectiveLevel() == logging.INFO


def test_log_format_is_configurable(monkeypatch):
    monkeypatch.setenv("LOG_FORMAT", "json")
    assert Settings(_env_file=None).log_format == "json"

    setup_logging("INFO", "json")
    formats = [h.formatter._fmt for h in logging.getLogger().handlers if h.formatter is not None]
    assert any(f.startswith('{"ts":') for f in formats)

    with pytest.raises(ValueError):
        setup_logging("INFO", "xml")
    setup_logging("INFO")
