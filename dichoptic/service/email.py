from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from dichoptic.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
    <h1>{heading}</h1>
    <p>{intro}</p>
    <p><a href="{url}">{url}</a></p>
    <p>{footer}</p>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

{url}

{footer}
"""


class EmailService:
    """Sends verification and password-reset links.

    Without an SMTP host the message is logged instead of sent, which is
    what development and test runs rely on.
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
        from_name: str = "Dichoptic Training",
        frontend_url: str = "http://localhost:3002",
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP; True on success, False on any delivery error."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            # Connection refused, DNS failure and timeouts all land here
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def _send_link(
        self, to_email: str, subject: str, heading: str, intro: str, url: str, footer: str
    ) -> bool:
        values = {"heading": heading, "intro": intro, "url": url, "footer": footer}
        return self._send_email(
            to_email,
            subject,
            _HTML_TEMPLATE.format(**values),
            _TEXT_TEMPLATE.format(**values),
        )

    def send_email_verification(self, to_email: str, token: str) -> bool:
        return self._send_link(
            to_email,
            "Verify your email address",
            "Verify your email",
            "Click the link below to verify your email address:",
            f"{self.frontend_url}/auth/verify-email?token={token}",
            "If you did not create an account, you can ignore this email.",
        )

    def send_password_reset(self, to_email: str, token: str) -> bool:
        return self._send_link(
            to_email,
            "Reset your password",
            "Reset your password",
            "Click the link below to choose a new password:",
            f"{self.frontend_url}/auth/reset-password?token={token}",
            f"This link expires in {self.reset_ttl_minutes} minutes. "
            "If you didn't request it, you can safely ignore this email.",
        )
