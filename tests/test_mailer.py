"""Unit tests for auth/mailer.py -- message building and SMTP retry/backoff."""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from auth.errors import DeliveryError
from auth.mailer import SmtpOtpMailer, build_otp_message
from core.config import Settings


def _mailer(**kw) -> tuple[SmtpOtpMailer, MagicMock]:
    sleep = MagicMock()
    defaults = dict(host="smtp.example.com", from_address="AuthGate <no-reply@example.com>", sleep=sleep)
    defaults.update(kw)
    return SmtpOtpMailer(**defaults), sleep


class TestBuildMessage:
    def test_headers_and_code_in_both_parts(self):
        msg = build_otp_message(
            "a@x.com", "042917", from_address="AuthGate <no-reply@example.com>", expiry_minutes=15
        )
        assert msg["To"] == "a@x.com"
        assert msg["From"] == "AuthGate <no-reply@example.com>"
        assert "verification code" in msg["Subject"]

        text_part = msg.get_body(preferencelist=("plain",)).get_content()
        html_part = msg.get_body(preferencelist=("html",)).get_content()
        assert "042917" in text_part and "15 minutes" in text_part
        assert "042917" in html_part

    def test_verify_link_from_origin(self):
        msg = build_otp_message("a@x.com", "123456", from_address="x@example.com", origin="https://app.example.com/")
        assert "https://app.example.com/verify" in msg.get_body(preferencelist=("plain",)).get_content()

    def test_no_link_without_origin(self):
        msg = build_otp_message("a@x.com", "123456", from_address="x@example.com")
        assert "/verify" not in msg.get_body(preferencelist=("plain",)).get_content()


class TestSendOtp:
    def test_success_on_first_attempt(self):
        mailer, sleep = _mailer()
        with patch.object(SmtpOtpMailer, "_deliver") as deliver:
            mailer.send_otp("a@x.com", "123456")
        deliver.assert_called_once()
        sleep.assert_not_called()

    def test_retries_transient_failures_then_succeeds(self):
        mailer, sleep = _mailer(max_retries=3, retry_delay_ms=500)
        failures = [smtplib.SMTPServerDisconnected("gone"), OSError("reset"), None]
        with patch.object(SmtpOtpMailer, "_deliver", side_effect=failures) as deliver:
            mailer.send_otp("a@x.com", "123456")
        assert deliver.call_count == 3
        assert sleep.call_count == 2

        first, second = (c.args[0] for c in sleep.call_args_list)
        assert 0.5 <= first <= 0.6
        assert 1.0 <= second <= 1.1

    def test_raises_delivery_error_when_exhausted(self):
        mailer, sleep = _mailer(max_retries=3)
        with patch.object(SmtpOtpMailer, "_deliver", side_effect=smtplib.SMTPException("nope")) as deliver:
            with pytest.raises(DeliveryError) as exc_info:
                mailer.send_otp("a@x.com", "123456")
        assert deliver.call_count == 3
        # No sleep after the final attempt.
        assert sleep.call_count == 2
        assert isinstance(exc_info.value.__cause__, smtplib.SMTPException)

    def test_missing_host_fails_fast(self):
        mailer, sleep = _mailer(host="")
        with patch.object(SmtpOtpMailer, "_deliver") as deliver:
            with pytest.raises(DeliveryError):
                mailer.send_otp("a@x.com", "123456")
        deliver.assert_not_called()
        sleep.assert_not_called()

    def test_non_transient_error_propagates(self):
        mailer, _ = _mailer()
        with patch.object(SmtpOtpMailer, "_deliver", side_effect=RuntimeError("bug")):
            with pytest.raises(RuntimeError):
                mailer.send_otp("a@x.com", "123456")


class TestDeliver:
    def test_starttls_login_and_send(self):
        mailer, _ = _mailer(username="user", password="secret", use_tls=True)
        with patch("auth.mailer.smtplib.SMTP") as smtp_cls:
            mailer.send_otp("a@x.com", "123456")
        smtp_cls.assert_called_once_with("smtp.example.com", 587, timeout=10.0)
        conn = smtp_cls.return_value.__enter__.return_value
        conn.starttls.assert_called_once()
        conn.login.assert_called_once_with("user", "secret")
        conn.send_message.assert_called_once()

    def test_plain_relay_without_auth(self):
        mailer, _ = _mailer(port=25, use_tls=False)
        with patch("auth.mailer.smtplib.SMTP") as smtp_cls:
            mailer.send_otp("a@x.com", "123456")
        conn = smtp_cls.return_value.__enter__.return_value
        conn.starttls.assert_not_called()
        conn.login.assert_not_called()


def test_from_settings():
    settings = Settings(
        debug=True,
        smtp_host="mail.internal",
        smtp_port=2525,
        smtp_username="bot@example.com",
        smtp_max_retries=5,
        app_origin="https://app.example.com",
    )
    mailer = SmtpOtpMailer.from_settings(settings)
    assert (mailer.host, mailer.port, mailer.max_retries) == ("mail.internal", 2525, 5)
    assert mailer.from_address == "AuthGate <bot@example.com>"
    assert mailer.origin == "https://app.example.com"
