"""Transactional e-mail: SMTP for real delivery, a logging backend for development.

Dispatch failures raise DeliveryError; callers decide what to roll back.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from vidtube.config import settings
from vidtube.core.errors import DeliveryError

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    async def send(self, to: str, subject: str, html_body: str) -> None: ...


class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int,
        user: str = "",
        password: str = "",
        sender: str = "",
        use_tls: bool = True,
        timeout: float = 15.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.timeout = timeout

    def _build_message(self, to: str, subject: str, html_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"VidTube <{self.sender}>"
        msg["To"] = to
        msg.attach(MIMEText(html_body, "html", "utf-8"))
        return msg

    def _send_sync(self, to: str, subject: str, html_body: str) -> None:
        msg = self._build_message(to, subject, html_body)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as conn:
            conn.ehlo()
            if self.use_tls:
                conn.starttls()
                conn.ehlo()
            if self.user:
                conn.login(self.user, self.password)
            conn.sendmail(self.sender, [to], msg.as_string())

    async def send(self, to: str, subject: str, html_body: str) -> None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._send_sync, to, subject, html_body),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("[Email] Timed out sending '%s' to %s", subject, to)
            raise DeliveryError("Timed out while sending e-mail") from e
        except (smtplib.SMTPException, OSError) as e:
            logger.error("[Email] Failed to send '%s' to %s: %s", subject, to, e)
            raise DeliveryError() from e
        logger.info("[Email] Sent '%s' -> %s", subject, to)


class LogMailer:
    """Development backend: writes the message to the log instead of sending it."""

    async def send(self, to: str, subject: str, html_body: str) -> None:
        logger.info("[Email:log] message for %s not sent (log backend)", to)
        logger.debug("[Email:log] to=%s subject=%r body=%s", to, subject, html_body)


def build_mailer() -> Mailer:
    if settings.mail_backend == "log":
        return LogMailer()
    return SmtpMailer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        sender=settings.email_from,
        use_tls=settings.smtp_use_tls,
        timeout=settings.external_call_timeout_seconds,
    )


_mailer: Mailer | None = None


def get_mailer() -> Mailer:
    """FastAPI dependency; one mailer per process."""
    global _mailer
    if _mailer is None:
        _mailer = build_mailer()
    return _mailer


def render_otp_email(code: str, purpose: str, expires_minutes: int) -> tuple[str, str]:
    """Return (subject, html_body) for an OTP message."""
    action = "complete your registration" if purpose == "registration" else "sign in"
    subject = f"Your VidTube verification code: {code}"
    html_body = (
        f"<p>Use the code below to {action}.</p>"
        f"<p style=\"font-size:24px;letter-spacing:4px\"><strong>{code}</strong></p>"
        f"<p>The code expires in {expires_minutes} minutes. "
        "If you did not request it, you can ignore this e-mail.</p>"
    )
    return subject, html_body
