"""
notify/sender.py -- Notification sender contract and the SMTP implementation.

Contract:
  send(to_address, kind, params) -> NotificationResult
  send() never raises. Delivery failures come back as success=False with an
  error string, and the caller decides whether that is fatal (it is only for
  password reset, which rolls back the issued code).

Templates live in notify/templates/<kind>.txt and <kind>.html and are
rendered with Jinja2 (HTML autoescaped). app_name is injected into every
template.

Dev mode: with no SMTP host configured, SmtpNotificationSender logs a
preview instead of sending and reports success, so the full flow works
locally without a mail server.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from core.config import Settings, get_settings

logger = logging.getLogger("authguard.notify")

_TEMPLATE_DIR = Path(__file__).parent / "templates"


class TemplateKind(str, Enum):
    verification = "verification"
    mfa_code = "mfa_code"
    password_reset = "password_reset"
    suspicious_login = "suspicious_login"


_SUBJECTS = {
    TemplateKind.verification: "Verify your email address",
    TemplateKind.mfa_code: "Your login verification code",
    TemplateKind.password_reset: "Your password reset code",
    TemplateKind.suspicious_login: "Unusual sign-in to your account",
}


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class NotificationSender(Protocol):
    def send(self, to_address: str, kind: TemplateKind, params: dict) -> NotificationResult: ...


def redact_email(email: str) -> str:
    """ada.lovelace@example.com -> ad***@example.com, for log lines."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATE_DIR)),
    autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)


def render(kind: TemplateKind, params: dict, app_name: str = "authguard") -> tuple[str, str, str]:
    """Return (subject, text_body, html_body) for a template kind."""
    kind = TemplateKind(kind)
    context = {"app_name": app_name, **params}
    text_body = _env.get_template(f"{kind.value}.txt").render(context)
    html_body = _env.get_template(f"{kind.value}.html").render(context)
    return f"{app_name}: {_SUBJECTS[kind]}", text_body, html_body


class SmtpNotificationSender:
    """Sends rendered templates over SMTP (STARTTLS or implicit TLS).

    Usage:
        sender = SmtpNotificationSender(get_settings())
        result = sender.send("ada@example.com", TemplateKind.mfa_code, {"username": "ada", "code": "123456", ...})
    """

    def __init__(self, settings: Optional[Settings] = None, timeout: float = 30.0) -> None:
        self.settings = settings or get_settings()
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.smtp_host and self._from_address)

    @property
    def _from_address(self) -> str:
        return self.settings.mail_from or self.settings.smtp_user

    def send(self, to_address: str, kind: TemplateKind, params: dict) -> NotificationResult:
        try:
            subject, text_body, html_body = render(kind, params, self.settings.app_name)
        except Exception as exc:
            logger.error("Could not render %s notification: %s", kind, exc)
            return NotificationResult(success=False, error=f"render failed: {exc}")

        message_id = make_msgid(domain=self._from_address.split("@")[-1] if self._from_address else None)

        if not self.is_configured:
            logger.info(
                "SMTP not configured, not sending %s to %s. Preview: %s",
                TemplateKind(kind).value,
                redact_email(to_address),
                text_body[:200].replace("\n", " "),
            )
            return NotificationResult(success=True, message_id=message_id)

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.settings.mail_from_name, self._from_address))
        msg["To"] = to_address
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        try:
            self._deliver(to_address, msg)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "Failed to send %s to %s via %s:%d: %s: %s",
                TemplateKind(kind).value,
                redact_email(to_address),
                self.settings.smtp_host,
                self.settings.smtp_port,
                type(exc).__name__,
                exc,
            )
            return NotificationResult(success=False, error=str(exc) or type(exc).__name__)

        logger.info("Sent %s to %s", TemplateKind(kind).value, redact_email(to_address))
        return NotificationResult(success=True, message_id=message_id)

    def _deliver(self, to_address: str, msg: MIMEMultipart) -> None:
        context = ssl.create_default_context()
        s = self.settings
        if s.smtp_use_tls:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if s.smtp_user and s.smtp_password:
                    server.login(s.smtp_user, s.smtp_password)
                server.sendmail(self._from_address, [to_address], msg.as_string())
        else:
            with smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, context=context, timeout=self.timeout) as server:
                if s.smtp_user and s.smtp_password:
                    server.login(s.smtp_user, s.smtp_password)
                server.sendmail(self._from_address, [to_address], msg.as_string())
