"""Confirmation notifier.

Delivers the single-use confirmation link to the user who initiated a
forget request. Unlike most notifications, delivery is NOT fire-and-forget:
the orchestrator reports a failed send to the user, so send_confirmation
raises NotificationError instead of swallowing the problem.

Channels:
- EmailNotifier: async SMTP via aiosmtplib, plain-text + HTML alternative
- LogNotifier: structured log entry, used when SMTP is not configured
"""

from __future__ import annotations

import email.utils
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Protocol

import aiosmtplib
import structlog

from rtbf.config import Settings, get_settings
from rtbf.errors import NotificationError
from rtbf.models.identity import UserIdentity
from rtbf.models.request import ForgetRequest

log = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def send_confirmation(self, user: UserIdentity, request: ForgetRequest) -> None: ...


def confirmation_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/{token}"


class EmailNotifier:
    """Sends confirmation emails over SMTP."""

    subject = "Confirm your request to be forgotten"

    def __init__(
        self,
        smtp_host: str,
        *,
        confirmation_base_url: str,
        smtp_port: int = 587,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
        smtp_from: str = "noreply@rtbf.local",
        smtp_use_tls: bool = False,
    ) -> None:
        """Initialise the notifier.

        Args:
            smtp_host: SMTP server hostname.
            confirmation_base_url: Base URL of the confirmation page.
            smtp_port: SMTP server port (587 = STARTTLS, 465 = SSL/TLS).
            smtp_user: SMTP login username.
            smtp_password: SMTP login password.
            smtp_from: Sender address used in the ``From`` header.
            smtp_use_tls: Use implicit TLS (port 465).
        """
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_from = smtp_from
        self.smtp_use_tls = smtp_use_tls
        self.confirmation_base_url = confirmation_base_url

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> EmailNotifier:
        cfg = settings or get_settings()
        if not cfg.smtp_host:
            raise ValueError("SMTP_HOST is required for EmailNotifier")
        return cls(
            cfg.smtp_host,
            confirmation_base_url=cfg.confirmation_base_url,
            smtp_port=cfg.smtp_port,
            smtp_user=cfg.smtp_user,
            smtp_password=(
                cfg.smtp_password.get_secret_value() if cfg.smtp_password else None
            ),
            smtp_from=cfg.smtp_from,
            smtp_use_tls=cfg.smtp_use_tls,
        )

    def build_message(self, user: UserIdentity, request: ForgetRequest) -> MIMEMultipart:
        if not request.token:
            raise ValueError(f"Request {request.id} has no confirmation token")
        url = confirmation_url(self.confirmation_base_url, request.token)
        expires = (
            request.token_expires_at.strftime("%Y-%m-%d %H:%M UTC")
            if request.token_expires_at
            else "soon"
        )

        plain = (
            f"Hello {user.name},\n\n"
            "We received a request to permanently anonymise your account.\n"
            f"Your account will be renamed to \"{request.target_name}\" on every wiki\n"
            "and your personal data will be removed. This cannot be undone.\n\n"
            f"To confirm, open this link while logged in (valid until {expires}):\n"
            f"{url}\n\n"
            "If you did not make this request, ignore this email.\n"
        )
        html = (
            f"<p>Hello {escape(user.name)},</p>"
            "<p>We received a request to permanently anonymise your account. "
            f"Your account will be renamed to <strong>{escape(request.target_name)}</strong> "
            "on every wiki and your personal data will be removed. "
            "<strong>This cannot be undone.</strong></p>"
            f'<p><a href="{escape(url)}">Confirm the request</a> '
            f"(valid until {escape(expires)}, you must be logged in).</p>"
            "<p>If you did not make this request, ignore this email.</p>"
        )

        message = MIMEMultipart("alternative")
        message["From"] = self.smtp_from
        message["To"] = user.email
        message["Subject"] = self.subject
        message["Date"] = email.utils.formatdate(localtime=True)
        message["Message-ID"] = email.utils.make_msgid()
        message.attach(MIMEText(plain, "plain", "utf-8"))
        message.attach(MIMEText(html, "html", "utf-8"))
        return message

    async def send_confirmation(self, user: UserIdentity, request: ForgetRequest) -> None:
        """Send the confirmation link.

        Raises:
            NotificationError: The user has no email or SMTP delivery failed.
        """
        if not user.email:
            raise NotificationError(f"User {user.id} has no email address")

        message = self.build_message(user, request)
        smtp_kwargs: dict[str, Any] = {
            "hostname": self.smtp_host,
            "port": self.smtp_port,
            "use_tls": self.smtp_use_tls,
        }
        if self.smtp_user:
            smtp_kwargs["username"] = self.smtp_user
        if self.smtp_password:
            smtp_kwargs["password"] = self.smtp_password

        try:
            await aiosmtplib.send(message, **smtp_kwargs)
        except aiosmtplib.SMTPException as exc:
            log.error(
                "notification.email_smtp_error",
                request_id=request.id,
                user_id=user.id,
                error=str(exc),
            )
            raise NotificationError(f"SMTP delivery failed: {exc}") from exc
        except OSError as exc:
            log.error(
                "notification.email_failed",
                request_id=request.id,
                user_id=user.id,
                error=str(exc),
            )
            raise NotificationError(f"SMTP connection failed: {exc}") from exc

        log.info(
            "notification.email_sent",
            request_id=request.id,
            user_id=user.id,
            smtp_host=self.smtp_host,
        )


class LogNotifier:
    """Logs the confirmation link instead of sending it (dev / no SMTP)."""

    def __init__(self, confirmation_base_url: str) -> None:
        self.confirmation_base_url = confirmation_base_url

    async def send_confirmation(self, user: UserIdentity, request: ForgetRequest) -> None:
        log.info(
            "notification.confirmation_logged",
            request_id=request.id,
            user_id=user.id,
            url=confirmation_url(self.confirmation_base_url, request.token or ""),
        )


def notifier_from_settings(settings: Settings) -> Notifier:
    if settings.smtp_host:
        return EmailNotifier.from_settings(settings)
    log.warning("notification.smtp_not_configured", fallback="log")
    return LogNotifier(settings.confirmation_base_url)
