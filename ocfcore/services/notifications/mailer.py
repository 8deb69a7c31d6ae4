from __future__ import annotations

from dataclasses import dataclass
from email.message import EmailMessage as MimeMessage
from email.utils import formataddr
import asyncio
import logging
import re
import smtplib
from typing import Protocol

from ocfcore.core.config import Settings, get_settings
from ocfcore.core.errors import MailDeliveryError


logger = logging.getLogger(__name__)

TEMPLATE_EMAIL_VERIFICATION = "email_verification"
TEMPLATE_PASSWORD_RESET = "password_reset"
TEMPLATE_LICENSE_ASSIGNED = "license_assigned"

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

# Minimal built-in templates; richer bodies are owned by the template service.
_TEMPLATES: dict[str, tuple[str, str]] = {
    TEMPLATE_EMAIL_VERIFICATION: (
        "Verify your email address",
        "<p>Hello {{name}},</p>"
        "<p>Confirm your address by opening <a href=\"{{link}}\">{{link}}</a>.</p>"
        "<p>This link expires in {{expiry_hours}} hours.</p>",
    ),
    TEMPLATE_PASSWORD_RESET: (
        "Reset your password",
        "<p>Hello {{name}},</p>"
        "<p>Choose a new password at <a href=\"{{link}}\">{{link}}</a>.</p>"
        "<p>This link expires in {{expiry_hours}} hour(s).</p>",
    ),
    TEMPLATE_LICENSE_ASSIGNED: (
        "A licence has been assigned to you",
        "<p>Hello {{name}},</p><p>You now have access to the {{plan_name}} plan.</p>",
    ),
}


@dataclass(frozen=True)
class OutboundEmail:
    to: str
    subject: str
    html_body: str


class MailSender(Protocol):
    async def send(self, message: OutboundEmail) -> None: ...


def render_template(name: str, to: str, variables: dict[str, object]) -> OutboundEmail:
    # Substitute {{var}} placeholders; unknown placeholders render empty.
    if name not in _TEMPLATES:
        raise KeyError(f"Unknown email template: {name}")
    subject, body = _TEMPLATES[name]

    def _sub(match: re.Match[str]) -> str:
        return str(variables.get(match.group(1), ""))

    return OutboundEmail(to=to, subject=_PLACEHOLDER.sub(_sub, subject), html_body=_PLACEHOLDER.sub(_sub, body))


class SmtpMailer:
    """SMTP delivery run off the event loop.

    Port 465 uses implicit TLS; any other port upgrades with STARTTLS when
    credentials are configured.
    """

    def __init__(self, *, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    async def send(self, message: OutboundEmail) -> None:
        await asyncio.to_thread(self._send_sync, message)

    def _send_sync(self, message: OutboundEmail) -> None:
        settings = self._settings
        mime = MimeMessage()
        mime["From"] = formataddr((settings.smtp_from_name, settings.smtp_from_email))
        mime["To"] = message.to
        mime["Subject"] = message.subject
        mime.set_content("This message requires an HTML-capable mail client.")
        mime.add_alternative(message.html_body, subtype="html")
        timeout = settings.ext_call_timeout_ms / 1000
        try:
            if settings.smtp_port == 465:
                server: smtplib.SMTP = smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=timeout)
            else:
                server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=timeout)
            with server:
                if settings.smtp_port != 465 and settings.smtp_username:
                    server.starttls()
                if settings.smtp_username and settings.smtp_password:
                    server.login(settings.smtp_username, settings.smtp_password)
                server.send_message(mime)
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(f"SMTP delivery to {message.to} failed") from exc


async def send_template(
    mailer: MailSender,
    *,
    template: str,
    to: str,
    variables: dict[str, object],
) -> bool:
    # Delivery failures are logged only; callers never surface them.
    message = render_template(template, to, variables)
    try:
        await mailer.send(message)
    except MailDeliveryError as exc:
        logger.warning("email_delivery_failed template=%s", template, exc_info=exc)
        return False
    logger.info("email_sent template=%s", template)
    return True


_mailer: MailSender | None = None


def get_mailer() -> MailSender:
    global _mailer
    if _mailer is None:
        _mailer = SmtpMailer()
    return _mailer


def reset_mailer() -> None:
    global _mailer
    _mailer = None
