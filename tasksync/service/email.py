from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Union

from tasksync.logging import get_logger
from tasksync.service.otp import OTPPurpose

logger = get_logger(__name__)


_SUBJECTS = {
    OTPPurpose.EMAIL_VERIFICATION: "Verify your TaskSync email",
    OTPPurpose.PASSWORD_RESET: "Reset your TaskSync password",
    OTPPurpose.EMAIL_CHANGE: "Confirm your new TaskSync email",
}

_INTROS = {
    OTPPurpose.EMAIL_VERIFICATION: "Thanks for signing up. Enter this code to verify your email address:",
    OTPPurpose.PASSWORD_RESET: "We received a request to reset your password. Enter this code to continue:",
    OTPPurpose.EMAIL_CHANGE: "You asked to move your account to this address. Enter this code to confirm:",
}

_FOOTERS = {
    OTPPurpose.EMAIL_VERIFICATION: "If you didn't create an account, you can safely ignore this email.",
    OTPPurpose.PASSWORD_RESET: "If you didn't request a password reset, you can safely ignore this email. Your password will not change.",
    OTPPurpose.EMAIL_CHANGE: "If you didn't request this change, ignore this email and your address stays the same.",
}


class EmailService:
    """Email service for one-time code delivery.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Verification, password reset and email change codes
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "TaskSync",
        base_url: Optional[str] = None,
        expiry_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:3000"
        self.expiry_minutes = expiry_minutes

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
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
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: record the send without the body, which carries the code
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                recipient=self._redact_email(to_email),
            )

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

            logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                recipient=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # socket timeouts and refused connections
            logger.error(
                "email_network_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def render_otp(
        self, code: str, purpose: Union[OTPPurpose, str]
    ) -> tuple[str, str, str]:
        """Return ``(subject, html_body, text_body)`` for a code email."""

        resolved = OTPPurpose(purpose)
        subject = _SUBJECTS[resolved]
        intro = _INTROS[resolved]
        footer = _FOOTERS[resolved]

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 560px; margin: 0 auto; padding: 24px; }}
        .code {{ font-size: 32px; font-weight: 700; letter-spacing: 8px; padding: 16px; background: #f1f5f9; border-radius: 8px; text-align: center; }}
        .footer {{ margin-top: 32px; font-size: 13px; color: #64748b; }}
    </style>
</head>
<body>
    <div class="container">
        <h2>{subject}</h2>
        <p>{intro}</p>
        <div class="code">{code}</div>
        <p>This code expires in {self.expiry_minutes} minutes.</p>
        <p class="footer">{footer}<br>{self.from_name} &middot; {self.base_url}</p>
    </div>
</body>
</html>
"""

        text_body = f"""{subject}

{intro}

    {code}

This code expires in {self.expiry_minutes} minutes.

{footer}

{self.from_name}
"""
        return subject, html_body, text_body

    def send_otp(self, to_email: str, code: str, purpose: Union[OTPPurpose, str]) -> bool:
        """Deliver ``code`` for ``purpose``. Blocking; call via ``asyncio.to_thread``."""

        subject, html_body, text_body = self.render_otp(code, purpose)
        return self._send_email(to_email, subject, html_body, text_body)
