from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from teamcrm.logging import get_logger, hash_email

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{url}" class="button">{action}</a>
        </p>
        <p>{expiry_note}</p>
        <div class="footer">
            <p>{product}</p>
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

{url}

{expiry_note}

---
{product}
"""


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def _describe_minutes(minutes: int) -> str:
    if minutes % 60 == 0:
        return _plural(minutes // 60, "hour")
    return _plural(minutes, "minute")


class EmailService:
    """SMTP sink for auth notifications.

    Every ``send_*`` method is best-effort: delivery problems are logged and
    reported as ``False``, never raised. Without SMTP settings the message is
    logged instead of sent (development mode).
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
        from_name: str = "TeamCRM",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 60,
        verification_ttl_hours: int = 24,
        invite_ttl_days: int = 7,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:5173").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_hours = verification_ttl_hours
        self.invite_ttl_days = invite_ttl_days

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _deliver(self, to_email: str, msg: MIMEMultipart) -> None:
        context = ssl.create_default_context()
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

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to_hash=hash_email(to_email),
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

        try:
            self._deliver(to_email, msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to_hash=hash_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to_hash=hash_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to_hash=hash_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_connect_failed",
                to_hash=hash_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to_hash=hash_email(to_email), subject=subject)
        return True

    def _render(
        self, *, heading: str, intro: str, url: str, action: str, expiry_note: str
    ) -> tuple[str, str]:
        fields = {
            "heading": heading,
            "intro": intro,
            "url": url,
            "action": action,
            "expiry_note": expiry_note,
            "product": self.from_name,
        }
        escaped = {key: html.escape(value) for key, value in fields.items()}
        return _HTML_TEMPLATE.format(**escaped), _TEXT_TEMPLATE.format(**fields)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        """Send password reset email with reset link."""
        html_body, text_body = self._render(
            heading="Reset your password",
            intro="We received a request to reset your password. Use the link below to choose a new one.",
            url=f"{self.base_url}/reset-password?token={token}",
            action="Reset Password",
            expiry_note=(
                f"This link will expire in {_describe_minutes(self.reset_ttl_minutes)}. "
                "If you didn't request this, you can ignore this email."
            ),
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_email_verification(self, to_email: str, token: str) -> bool:
        """Send email verification link."""
        html_body, text_body = self._render(
            heading="Verify your email",
            intro="Please confirm your email address using the link below.",
            url=f"{self.base_url}/verify-email?token={token}",
            action="Verify Email",
            expiry_note=f"This link will expire in {_plural(self.verification_ttl_hours, 'hour')}.",
        )
        return self._send_email(
            to_email, f"Verify your {self.from_name} email", html_body, text_body
        )

    def send_team_invite(
        self, to_email: str, token: str, *, team_name: str, role: str
    ) -> bool:
        """Send a team invitation with the accept-invite link."""
        html_body, text_body = self._render(
            heading=f"Join {team_name}",
            intro=f"You've been invited to join {team_name} as a {role}.",
            url=f"{self.base_url}/invite/{token}",
            action="Accept Invite",
            expiry_note=f"This invite will expire in {_plural(self.invite_ttl_days, 'day')}.",
        )
        return self._send_email(
            to_email, f"You're invited to join {team_name}", html_body, text_body
        )
