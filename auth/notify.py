"""
auth/notify.py -- Outbound delivery of one-time codes.

The core only depends on the Notifier protocol: send(user, code, kind) returns
normally on success and raises NotificationError on any delivery failure. The
challenge code path calls it inside the transaction that stores the challenge,
so a raise rolls the challenge back.

Implementations:
  SmtpNotifier -- plain SMTP with optional STARTTLS (stdlib smtplib).
  LogNotifier  -- dev fallback when SMTP_HOST is empty. Logs that a code was
                  issued and succeeds. The code is logged only in DEBUG.

build_notifier(settings) picks one at startup.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from enum import Enum
from typing import Protocol

from auth.models import User
from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.notify")


class TemplateKind(str, Enum):
    TWO_FACTOR_LOGIN = "two_factor_login"
    EMAIL_LOGIN = "email_login"
    PASSWORD_RESET = "password_reset"


_SUBJECTS = {
    TemplateKind.TWO_FACTOR_LOGIN: "Two-factor login",
    TemplateKind.EMAIL_LOGIN: "Email login",
    TemplateKind.PASSWORD_RESET: "Password Reset Request",
}

_BODIES = {
    TemplateKind.TWO_FACTOR_LOGIN: "Hello {name},\n\nYour login verification code is {code}.\n",
    TemplateKind.EMAIL_LOGIN: "Hello {name},\n\nUse the code {code} to sign in.\n",
    TemplateKind.PASSWORD_RESET: "Hello {name},\n\nYour password reset code is {code}.\n",
}


class NotificationError(Exception):
    """Delivery of a one-time code failed."""


class Notifier(Protocol):
    def send(self, user: User, code: str, kind: TemplateKind) -> None: ...


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def render_message(user: User, code: str, kind: TemplateKind, sender: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = _SUBJECTS[kind]
    msg["From"] = sender
    msg["To"] = user.email
    msg.set_content(_BODIES[kind].format(name=user.username, code=code))
    return msg


class SmtpNotifier:
    """Send codes by email over SMTP."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str = "",
        use_tls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.use_tls = use_tls
        self.timeout = timeout

    def send(self, user: User, code: str, kind: TemplateKind) -> None:
        if not user.email:
            raise NotificationError(f"user {user.id} has no email address")
        msg = render_message(user, code, kind, self.sender)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"SMTP delivery to {_redact_email(user.email)} failed: {exc}") from exc
        logger.info("Sent %s mail to user_id=%s (%s)", kind.value, user.id, _redact_email(user.email))


class LogNotifier:
    """Dev-mode notifier: records the send in the log and always succeeds.

    With reveal_codes (DEBUG only) the code itself is logged so a developer
    can finish an email login without a mail server.
    """

    def __init__(self, reveal_codes: bool = False) -> None:
        self.reveal_codes = reveal_codes

    def send(self, user: User, code: str, kind: TemplateKind) -> None:
        shown = code if self.reveal_codes else "<hidden>"
        logger.info(
            "SMTP not configured; %s code %s for user_id=%s (%s) not delivered",
            kind.value,
            shown,
            user.id,
            _redact_email(user.email),
        )


def build_notifier(settings: Settings) -> Notifier:
    if not settings.smtp_host:
        logger.warning("SMTP_HOST is empty -- one-time codes will only be logged, not delivered")
        return LogNotifier(reveal_codes=settings.debug)
    return SmtpNotifier(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        sender=settings.smtp_from,
        use_tls=settings.smtp_use_tls,
    )
