from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from interspace_auth.logging import get_logger

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

_CODE_TEXT = """Sign in to Interspace

Your verification code is: {code}

It expires in {ttl} minutes. If you did not ask for it, ignore this email.
"""

_CODE_HTML = """<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
  <div style="max-width: 560px; margin: 0 auto; padding: 32px 16px;">
    <h1>Sign in to Interspace</h1>
    <p>Enter this code to continue:</p>
    <p style="font-size: 32px; letter-spacing: 8px; font-weight: 700;">{code}</p>
    <p>It expires in {ttl} minutes. If you did not ask for it, ignore this email.</p>
  </div>
</body>
</html>
"""


def mask_recipient(email: str) -> str:
    local, sep, domain = email.partition("@")
    return f"{local[:2]}***@{domain}" if sep else "redacted"


class EmailService:
    """Delivers verification codes over SMTP.

    Without an SMTP host the message is only logged, which is how local
    development and tests run. Delivery failures are logged and reported as
    ``False``; callers decide what that means for the request.
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
        from_name: str = "Interspace",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        return server

    def deliver(self, message: EmailMessage) -> bool:
        recipient = mask_recipient(message["To"])
        if not self.is_configured:
            logger.info("email_dev_mode", recipient=recipient)
            return True
        message["From"] = f"{self.from_name} <{self.from_email}>"
        try:
            with self._open() as server:
                server.send_message(message)
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except OSError as exc:
            logger.error(
                "email_transport_error",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", recipient=recipient)
        return True

    def send_verification_code(self, to_email: str, code: str, ttl_minutes: int = 10) -> bool:
        message = EmailMessage()
        message["Subject"] = f"Your Interspace verification code: {code}"
        message["To"] = to_email
        message.set_content(_CODE_TEXT.format(code=code, ttl=ttl_minutes))
        message.add_alternative(_CODE_HTML.format(code=code, ttl=ttl_minutes), subtype="html")
        return self.deliver(message)
