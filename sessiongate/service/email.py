from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr
from html import escape
from typing import Optional

from sessiongate.logging import get_logger
from sessiongate.storage.models import ChallengeFlow

logger = get_logger(__name__)


@dataclass(frozen=True)
class _ChallengeCopy:
    subject: str
    heading: str
    intro: str
    outro: str


_CHALLENGE_COPY: dict[ChallengeFlow, _ChallengeCopy] = {
    ChallengeFlow.EMAIL_VERIFICATION: _ChallengeCopy(
        subject="Verify your {app} email",
        heading="Verify your email",
        intro="Enter this code to confirm that this address belongs to you:",
        outro="If you didn't create an account, you can safely ignore this email.",
    ),
    ChallengeFlow.EMAIL_UPDATE: _ChallengeCopy(
        subject="Confirm your new {app} email",
        heading="Confirm your new email",
        intro="Enter this code to finish moving your account to this address:",
        outro="If you didn't ask to change your email, you can safely ignore this email.",
    ),
    ChallengeFlow.PASSWORD_RESET: _ChallengeCopy(
        subject="Reset your {app} password",
        heading="Reset your password",
        intro="We received a request to reset your password. Enter this code to continue:",
        outro="If you didn't request this, you can safely ignore this email.",
    ),
}

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ margin: 0; font-family: system-ui, sans-serif; color: #1f2933; line-height: 1.5; }}
        .container {{ max-width: 560px; margin: 0 auto; padding: 32px 16px; }}
        .code {{ display: inline-block; background: #f1f5f9; padding: 12px 24px; border-radius: 8px; font-family: monospace; font-size: 18px; letter-spacing: 1px; }}
        .footer {{ margin-top: 32px; color: #5b6470; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;"><span class="code">{code}</span></p>
        <p>This code will expire in {minutes} minutes.</p>
        <p>{outro}</p>
        <div class="footer">
            <p>{app}</p>
        </div>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

{code}

This code will expire in {minutes} minutes.

{outro}

---
{app}
"""


# Ordered most to least specific; the first match names the log event.
_SMTP_FAILURES: tuple[tuple[type[BaseException], str], ...] = (
    (smtplib.SMTPAuthenticationError, "email_auth_failed"),
    (smtplib.SMTPRecipientsRefused, "email_recipient_refused"),
    (smtplib.SMTPException, "email_smtp_error"),
    (ssl.SSLError, "email_connect_failed"),
    (OSError, "email_connect_failed"),
)


def mask_address(address: str) -> str:
    """``alice@example.com`` -> ``al***@example.com`` for log lines."""
    local, sep, domain = address.partition("@")
    if not sep:
        return "redacted"
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Delivers challenge codes by SMTP.

    Without an SMTP host and sender address the service runs in dev mode and
    only logs that a message would have been sent; the code itself is never
    logged.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Sessiongate",
        code_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.credentials = (smtp_user, smtp_password) if smtp_user and smtp_password else None
        # STARTTLS on a plain connection when True, implicit TLS otherwise
        self.starttls = smtp_use_tls
        self.sender = from_email or smtp_user
        self.from_name = from_name
        self.code_ttl_minutes = code_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.sender)

    def _compose(self, to_email: str, subject: str, html_body: str, text_body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, self.sender))
        msg["To"] = to_email
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")
        return msg

    def _open(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.starttls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
            try:
                server.starttls(context=context)
            except Exception:
                server.close()
                raise
            return server
        return smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message; True on success or in dev mode, False on any SMTP failure."""
        recipient = mask_address(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", to=recipient, subject=subject)
            return True

        msg = self._compose(to_email, subject, html_body, text_body)
        try:
            with self._open(ssl.create_default_context()) as server:
                if self.credentials:
                    server.login(*self.credentials)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            event = next(name for kind, name in _SMTP_FAILURES if isinstance(exc, kind))
            logger.error(
                event,
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def render_challenge(self, flow: ChallengeFlow, code: str) -> tuple[str, str, str]:
        """Return ``(subject, html_body, text_body)`` for a challenge message."""
        copy = _CHALLENGE_COPY[flow]
        fields = {
            "app": self.from_name,
            "heading": copy.heading,
            "intro": copy.intro,
            "outro": copy.outro,
            "minutes": self.code_ttl_minutes,
        }
        subject = copy.subject.format(app=self.from_name)
        html_body = _HTML_TEMPLATE.format(
            code=escape(code), **{k: escape(str(v)) for k, v in fields.items()}
        )
        text_body = _TEXT_TEMPLATE.format(code=code, **fields)
        return subject, html_body, text_body

    def send_challenge(self, flow: ChallengeFlow, to_email: str, code: str) -> bool:
        subject, html_body, text_body = self.render_challenge(flow, code)
        return self._send_email(to_email, subject, html_body, text_body)
