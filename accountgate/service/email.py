from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from accountgate.logging import get_logger

logger = get_logger(__name__)

_CODE_SUBJECTS = {
    "signup": "Verify Your {brand} Account",
    "signin": "Sign In Verification Code",
}

_LAYOUT = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; color: #1f2933;">
  <div style="background-color: #f0f9ff; padding: 20px; border-radius: 10px;">
    <h2 style="color: #3b82f6;">{title}</h2>
    {content}
  </div>
  <p style="font-size: 12px; color: #94a3b8; margin-top: 20px; text-align: center;">
    If you didn't request this, please ignore this email.
  </p>
</body>
</html>
"""


class CodeDelivery(Protocol):
    """Out-of-band channel for codes and reset links; returns False on failure."""

    def send_verification_code(self, to_email: str, code: str, purpose: str) -> bool: ...

    def send_password_reset(self, to_email: str, token: str) -> bool: ...

    def send_password_changed(self, to_email: str) -> bool: ...


class EmailService:
    """SMTP delivery for verification codes, reset links and change notices.

    When no SMTP host is configured the message is logged (without its body)
    and reported as sent, which is the development and test behavior.
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
        from_name: str = "Basha Lagbe",
        base_url: Optional[str] = None,
        code_ttl_minutes: int = 10,
        reset_ttl_minutes: int = 60,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.code_ttl_minutes = code_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes
        self.timeout = timeout

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
            # Dev mode: bodies carry secrets, so only the envelope is logged
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
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
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
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
        except (ssl.SSLError, OSError) as e:
            # covers TimeoutError and refused connections
            logger.error(
                "email_transport_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
        return True

    def send_verification_code(self, to_email: str, code: str, purpose: str) -> bool:
        """Send a one-time verification code for signup or signin."""
        subject = _CODE_SUBJECTS.get(purpose, "Your Verification Code").format(
            brand=self.from_name
        )
        intro = (
            f"Welcome to {self.from_name}! Your verification code is:"
            if purpose == "signup"
            else "Your sign in verification code is:"
        )
        content = f"""
    <p style="font-size: 16px; line-height: 1.5;">{intro}</p>
    <div style="background-color: #dbeafe; padding: 10px; border-radius: 5px; text-align: center;
                font-size: 24px; font-weight: bold; letter-spacing: 5px; margin: 20px 0;">{code}</div>
    <p style="font-size: 14px; color: #64748b;">This code will expire in {self.code_ttl_minutes} minutes.</p>"""
        text_body = (
            f"{intro} {code}\n\n"
            f"This code will expire in {self.code_ttl_minutes} minutes.\n"
            "If you didn't request this code, please ignore this email."
        )
        return self._send_email(
            to_email, subject, _LAYOUT.format(title=subject, content=content), text_body
        )

    def send_password_reset(self, to_email: str, token: str) -> bool:
        """Send password reset email with reset link."""
        reset_url = f"{self.base_url}/reset-password?token={token}"
        subject = f"Password Reset Request - {self.from_name}"
        content = f"""
    <p style="font-size: 16px;">We received a request to reset your password.</p>
    <p style="text-align: center; margin: 24px 0;">
      <a href="{reset_url}" style="background: #4f46e5; color: white; padding: 14px 28px;
         text-decoration: none; border-radius: 8px; font-weight: 600;">Reset Password</a>
    </p>
    <p style="font-size: 14px; color: #64748b;">This link expires in {self.reset_ttl_minutes} minutes and can be used once.</p>
    <p style="font-size: 12px; color: #64748b; word-break: break-all;">{reset_url}</p>"""
        text_body = (
            "We received a request to reset your password.\n\n"
            f"Open this link to choose a new password:\n{reset_url}\n\n"
            f"This link expires in {self.reset_ttl_minutes} minutes and can be used once."
        )
        return self._send_email(
            to_email, subject, _LAYOUT.format(title=subject, content=content), text_body
        )

    def send_password_changed(self, to_email: str) -> bool:
        """Notify the account owner that their password was replaced."""
        subject = "Password Changed Successfully"
        content = """
    <p style="font-size: 16px;">Your password was changed and your other signed-in devices were signed out.</p>
    <p style="font-size: 14px; color: #64748b;">If this wasn't you, reset your password immediately.</p>"""
        text_body = (
            "Your password was changed and your other signed-in devices were signed out.\n"
            "If this wasn't you, reset your password immediately."
        )
        return self._send_email(
            to_email, subject, _LAYOUT.format(title=subject, content=content), text_body
        )
