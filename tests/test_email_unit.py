"""Unit tests for the mail sender's unconfigured-SMTP behaviour."""

import pytest

from otpgate.service import email as email_module
from otpgate.service import runtime as runtime_module
from otpgate.service.email import EmailService

EMAIL = "user@example.com"


class RecordingLogger:
    def __init__(self):
        self.events = []

    def _record(self, event, **kwargs):
        self.events.append((event, kwargs))

    info = warning = error = debug = _record


@pytest.fixture
def log(monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(email_module, "logger", recorder)
    return recorder


class TestUnconfiguredMail:
    def test_code_is_not_logged_outside_dev_mode(self, log):
        mailer = EmailService()

        delivered = mailer.send_otp(EMAIL, "482913", "login")

        assert delivered is False
        assert [event for event, _ in log.events] == ["email_not_configured"]
        assert "482913" not in repr(log.events)

    def test_dev_mode_logs_preview_and_reports_delivery(self, log):
        mailer = EmailService(dev_mode=True)

        delivered = mailer.send_otp(EMAIL, "482913", "login")

        assert delivered is True
        event, fields = log.events[-1]
        assert event == "email_dev_mode"
        assert "482913" in fields["body_preview"]
        assert fields["to"] == "us***@example.com"

    @pytest.mark.parametrize(
        "test_mode, flag, expected",
        [(True, False, True), (False, False, False), (False, True, True)],
    )
    def test_runtime_enables_dev_mode_only_in_test_or_flagged(
        self, monkeypatch, settings, test_mode, flag, expected
    ):
        configured = settings.model_copy(
            update={"test_mode": test_mode, "email_dev_mode": flag, "use_memory_store": True}
        )
        monkeypatch.setattr(runtime_module, "get_settings", lambda: configured)

        assert runtime_module.Runtime().email.dev_mode is expected
