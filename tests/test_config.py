"""Tests for settings parsing."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from otpgate.config import Settings, get_settings, parse_duration, reset_settings_cache


class TestParseDuration:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("30s", timedelta(seconds=30)),
            ("15m", timedelta(minutes=15)),
            ("12h", timedelta(hours=12)),
            ("7d", timedelta(days=7)),
            ("900", timedelta(seconds=900)),
            (60, timedelta(seconds=60)),
        ],
    )
    def test_accepted_forms(self, raw, expected):
        assert parse_duration(raw) == expected

    @pytest.mark.parametrize("raw", ["", "fifteen", "15x", "0", "-5", True])
    def test_rejected_forms(self, raw):
        with pytest.raises(ValueError):
            parse_duration(raw)


class TestSettings:
    def test_defaults(self, settings):
        assert settings.otp_length == 6
        assert settings.otp_expiry_minutes == 10
        assert settings.max_otp_attempts == 3
        assert settings.access_token_ttl == timedelta(minutes=15)
        assert settings.refresh_token_ttl == timedelta(days=7)
        assert settings.master_otp_code is None

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("OTP_LENGTH", "8")
        monkeypatch.setenv("ACCESS_TOKEN_TTL", "5m")
        monkeypatch.setenv("MASTER_OTP_CODE", "   ")
        reset_settings_cache()

        settings = get_settings()

        assert settings.otp_length == 8
        assert settings.access_token_ttl == timedelta(minutes=5)
        assert settings.master_otp_code is None
        reset_settings_cache()

    def test_otp_length_bounds(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, otp_length=3)
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, otp_length=11)

    def test_generated_jwt_secret_is_persisted(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret
