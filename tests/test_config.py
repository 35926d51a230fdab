"""Tests for engine settings."""

import pytest
from pydantic import ValidationError

from glycoview.config import Settings
from glycoview.enums import BgUnits


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self, settings):
        assert settings.log_format == "text"
        assert settings.default_bg_units == BgUnits.mgdl
        assert settings.default_timezone == "UTC"
        assert settings.cgm_sample_interval_minimum_ms == 300_000
        assert settings.max_suppressed_depth == 5

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("GLYCOVIEW_DEFAULT_BG_UNITS", "mmol/L")
        monkeypatch.setenv("GLYCOVIEW_LOG_FORMAT", "JSON")
        settings = Settings(_env_file=None)
        assert settings.default_bg_units == BgUnits.mmoll
        assert settings.log_format == "json"

    def test_invalid_log_format(self):
        with pytest.raises(ValidationError, match="log_format"):
            Settings(_env_file=None, log_format="xml")

    def test_invalid_timezone(self):
        with pytest.raises(ValidationError, match="unknown timezone"):
            Settings(_env_file=None, default_timezone="Nowhere/Special")

    def test_suppressed_depth_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, max_suppressed_depth=0)
