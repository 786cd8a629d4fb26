from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from tokenlogin.logging import get_logger, redact_contact

logger = get_logger(__name__)


class EmailService:
    """SMTP sender for login tokens.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Login token messages

    Unlike a fire-and-forget notifier, failures are raised so the delivery
    dispatcher can report them to the caller.
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
        from_name: str = "Token Login",
        timeout_seconds: float = 30,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout_seconds = timeout_seconds

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _build_message(self, to_email: str, subject: str, text_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        return msg

    def _send_email(self, to_email: str, subject: str, text_body: str) -> None:
        """Send a plain-text email via SMTP, raising on any SMTP failure."""
        if not self.is_configured:
            raise RuntimeError("SMTP is not configured")

        msg = self._build_message(to_email, subject, text_body)
        context = ssl.create_default_context()

        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_contact(to_email),
        )

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout_seconds
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_contact(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            raise
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_contact(to_email),
                refused=len(getattr(e, "recipients", {}) or {}),
            )
            raise
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=redact_contact(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise

        logger.info("email_sent", to=redact_contact(to_email), subject=subject)

    def send_login_token(self, to_email: str, token: str) -> None:
        subject = f"Your {self.from_name} verification code"
        text_body = f"""Your verification code is: {token}

Enter this code to finish signing in. It expires in a few minutes.

If you did not try to sign in, someone may know your password. Change it.

---
{self.from_name}
"""
        self._send_email(to_email, subject, text_body)
