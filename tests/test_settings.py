# tests/test_settings.py
"""Tests for settings.py - defaults and config table overrides."""

import logging

from settings import LOCK_REMINDER_OFFSETS_MINUTES, MAX_ATTEMPTS, REQUEST_TIMEOUT, Settings


def test_defaults_when_config_empty(db):
    settings = Settings.from_storage(db)
    assert settings == Settings()
    assert settings.lock_reminder_offsets == LOCK_REMINDER_OFFSETS_MINUTES


def test_config_overrides(db):
    db.set_config("max_attempts", "3")
    db.set_config("lock_reminder_offsets", "120, 30")
    db.set_config("request_timeout", "2.5")

    settings = Settings.from_storage(db)
    assert settings.max_attempts == 3
    assert settings.lock_reminder_offsets == (120, 30)
    assert settings.request_timeout == 2.5


def test_malformed_values_fall_back_to_defaults(db, caplog):
    """A bad `config set` must not take the scheduler down."""
    db.set_config("max_attempts", "abc")
    db.set_config("lock_reminder_offsets", "60,soon")
    db.set_config("request_timeout", "fast")

    with caplog.at_level(logging.WARNING, logger="settings"):
        settings = Settings.from_storage(db)

    assert settings.max_attempts == MAX_ATTEMPTS
    assert settings.lock_reminder_offsets == LOCK_REMINDER_OFFSETS_MINUTES
    assert settings.request_timeout == REQUEST_TIMEOUT
    assert "max_attempts" in caplog.text
