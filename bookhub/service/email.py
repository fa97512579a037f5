from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from bookhub.config import Settings
from bookhub.logging import get_logger

logger = get_logger(__name__)

_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Georgia, 'Times New Roman', serif; line-height: 1.6; color: #2d2a26; }}
        .container {{ max-width: 560px; margin: 0 auto; padding: 32px 20px; }}
        .code {{ font-family: monospace; font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 32px; font-size: 12px; color: #6b645c; }}
    </style>
</head>
<body>
    <div class="container">
        {content}
        <div class="footer"><p>BookHub</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """Sends transactional email (reset codes, verification links) over SMTP.

    When no SMTP host is configured the message is logged instead of sent so
    that local development works without a mail relay.
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
        from_name: str = "BookHub",
        base_url: Optional[str] = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _open(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.smtp_use_tls:
            return smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds)
        return smtplib.SMTP_SSL(
            self.smtp_host, self.smtp_port, context=context, timeout=self.timeout_seconds
        )

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send a multipart message. Returns True if sent (or logged in dev mode).

        Delivery failures are logged and reported as False; callers decide
        whether that is fatal.
        """
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", to=recipient, subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            context = ssl.create_default_context()
            with self._open(context) as server:
                if self.smtp_use_tls:
                    server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=recipient, host=self.smtp_host, error=str(exc))
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=recipient, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            # Connection refused, DNS and TLS failures and socket timeouts land here too
            logger.error(
                "email_transport_error",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_password_reset_code(self, to_email: str, code: str, *, ttl_minutes: int = 5) -> bool:
        """Mail a one-time password reset code."""
        subject = "Your BookHub password reset code"
        html_body = _LAYOUT.format(
            content=(
                "<h1>Reset your password</h1>"
                "<p>Use the code below to choose a new password:</p>"
                f'<p class="code">{code}</p>'
                f"<p>The code expires in {ttl_minutes} minutes and can only be used once.</p>"
                "<p>If you didn't request this, you can safely ignore this email.</p>"
            )
        )
        text_body = (
            "Reset your BookHub password\n\n"
            f"Your one-time code is: {code}\n\n"
            f"The code expires in {ttl_minutes} minutes and can only be used once.\n"
            "If you didn't request this, you can safely ignore this email.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        """Mail an email verification link."""
        verify_url = f"{self.base_url}/verify-email?token={token}"
        subject = "Verify your BookHub email"
        html_body = _LAYOUT.format(
            content=(
                "<h1>Verify your email</h1>"
                "<p>Please confirm your address by opening the link below:</p>"
                f'<p><a href="{verify_url}">Verify email</a></p>'
                f"<p>If the link doesn't work, copy this URL: {verify_url}</p>"
            )
        )
        text_body = f"Verify your BookHub email\n\nOpen this link to confirm your address:\n{verify_url}\n"
        return self._send_email(to_email, subject, html_body, text_body)
