"""
auth/mailer.py -- Out-of-band OTP delivery over SMTP.

One SMTP session per attempt, bounded retries with exponential backoff and
jitter:  delay = retry_delay_ms * 2**(attempt - 1) + random(0..100) ms.
After the last failed attempt DeliveryError is raised; the lifecycle decides
whether that rolls back the just-created account (registration) or is merely
logged (login).

The plaintext code appears only in the message body. It is never logged.
"""

from __future__ import annotations

import html
import logging
import random
import smtplib
import time
from collections.abc import Callable
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import TYPE_CHECKING, Protocol

from auth.errors import DeliveryError

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("authgate.mailer")


class OtpMailer(Protocol):
    def send_otp(self, to_email: str, code: str, expiry_minutes: int = 60) -> None: ...


def build_otp_message(
    to_email: str,
    code: str,
    *,
    from_address: str,
    expiry_minutes: int = 60,
    origin: str = "",
) -> EmailMessage:
    """Build the verification email: plain-text body plus an HTML alternative."""
    origin = origin.rstrip("/")
    verify_url = f"{origin}/verify" if origin else ""

    msg = EmailMessage()
    msg["Subject"] = "Your AuthGate verification code"
    msg["From"] = from_address
    msg["To"] = to_email

    text_body = f"Your AuthGate verification code is: {code}\n\nIt expires in {expiry_minutes} minutes.\n"
    if verify_url:
        text_body += f"\nOpen: {verify_url}\n"
    msg.set_content(text_body)

    link = (
        f'<p><a href="{html.escape(verify_url, quote=True)}">Open verification page</a></p>' if verify_url else ""
    )
    msg.add_alternative(
        f"""\
<!doctype html>
<html lang="en">
  <body style="font-family: system-ui, sans-serif;">
    <h1 style="font-size:20px;">Your verification code</h1>
    <p>Use the code below to verify your account. It expires in <strong>{expiry_minutes} minutes</strong>.</p>
    <p style="font-family: monospace; font-size: 28px; letter-spacing: 4px;">{html.escape(code)}</p>
    {link}
    <p style="color:#777;font-size:13px;">If you didn't request this, ignore this email.</p>
    <p style="color:#999;font-size:12px;">&copy; {datetime.now(timezone.utc).year} AuthGate</p>
  </body>
</html>
""",
        subtype="html",
    )
    return msg


class SmtpOtpMailer:
    """Send OTP emails through an SMTP relay with retry/backoff.

    Usage:
        mailer = SmtpOtpMailer.from_settings(get_settings())
        mailer.send_otp("a@x.com", code, expiry_minutes=60)   # raises DeliveryError
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        timeout: float = 10.0,
        from_address: str = "",
        origin: str = "",
        max_retries: int = 3,
        retry_delay_ms: int = 500,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.from_address = from_address or (f"AuthGate <{username}>" if username else "AuthGate <no-reply@localhost>")
        self.origin = origin
        self.max_retries = max(1, max_retries)
        self.retry_delay_ms = retry_delay_ms
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> SmtpOtpMailer:
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            timeout=settings.smtp_timeout_seconds,
            from_address=settings.email_from,
            origin=settings.app_origin,
            max_retries=settings.smtp_max_retries,
            retry_delay_ms=settings.smtp_retry_delay_ms,
        )

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as conn:
            if self.use_tls:
                conn.starttls()
            if self.username:
                conn.login(self.username, self.password)
            conn.send_message(message)

    def send_otp(self, to_email: str, code: str, expiry_minutes: int = 60) -> None:
        """Deliver a code, retrying transient failures. Raises DeliveryError when exhausted."""
        if not self.host:
            # Misconfiguration is not transient; retrying would only add latency.
            logger.error("SMTP_HOST is not configured -- cannot deliver verification email")
            raise DeliveryError()

        message = build_otp_message(
            to_email,
            code,
            from_address=self.from_address,
            expiry_minutes=expiry_minutes,
            origin=self.origin,
        )

        last_exc: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                self._deliver(message)
                return
            except (smtplib.SMTPException, OSError) as exc:
                last_exc = exc
                if attempt >= self.max_retries:
                    break
                delay_ms = self.retry_delay_ms * 2 ** (attempt - 1) + random.randint(0, 100)
                logger.warning(
                    "OTP email attempt %d/%d failed (%s); retrying in %dms",
                    attempt,
                    self.max_retries,
                    exc,
                    delay_ms,
                )
                self._sleep(delay_ms / 1000)

        logger.error("OTP email delivery failed after %d attempts: %s", self.max_retries, last_exc)
        raise DeliveryError() from last_exc
