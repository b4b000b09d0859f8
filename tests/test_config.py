"""Tests for src.config — Settings validation."""

import pytest
from pydantic import ValidationError

from src.config import Settings


def test_defaults():
    s = Settings()
    assert s.DATABASE_PATH == "data/alarms.db"
    assert s.LOG_LEVEL == "INFO"


def test_log_level_normalized():
    assert Settings(LOG_LEVEL=" warning ").LOG_LEVEL == "WARNING"


def test_invalid_log_level():
    with pytest.raises(ValidationError):
        Settings(LOG_LEVEL="LOUD")
