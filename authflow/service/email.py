from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from authflow.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Sends the account activation, password reset and email change mails.

    When no SMTP host is configured the message is logged instead of sent,
    which is what local development and the test suite rely on.
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
        from_name: str = "Authflow",
        base_url: Optional[str] = None,
        default_locale: str = "en",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.default_locale = default_locale

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self,
        *,
        title: str,
        intro: str,
        url: str,
        action: str,
        footer_note: str,
        locale: Optional[str],
    ) -> tuple[str, str]:
        lang = locale or self.default_locale
        html_body = f"""
<!DOCTYPE html>
<html lang="{lang}">
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2f6fde; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{url}" class="button">{action}</a>
        </p>
        <p>{footer_note}</p>
        <div class="footer">
            <p>{self.from_name}</p>
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""
        text_body = f"""{title}

{intro}

{url}

{footer_note}

---
{self.from_name}
"""
        return html_body, text_body

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
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
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
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=self._redact_email(to_email),
        )
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_account_activation(
        self, to_email: str, token: str, locale: Optional[str] = None
    ) -> bool:
        activate_url = f"{self.base_url}/activate-account?token={token}"
        html_body, text_body = self._render(
            title="Activate your account",
            intro="Thanks for signing up! Please confirm your email address to activate your account.",
            url=activate_url,
            action="Activate account",
            footer_note="This link will expire in 24 hours.",
            locale=locale,
        )
        return self._send_email(
            to_email, f"Activate your {self.from_name} account", html_body, text_body
        )

    def send_password_reset(
        self, to_email: str, token: str, locale: Optional[str] = None
    ) -> bool:
        reset_url = f"{self.base_url}/password-reset?token={token}"
        html_body, text_body = self._render(
            title="Reset your password",
            intro="We received a request to reset your password. Use the link below to choose a new one.",
            url=reset_url,
            action="Reset password",
            footer_note="If you didn't request this, you can safely ignore this email.",
            locale=locale,
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_email_change_confirmation(
        self,
        new_email: str,
        old_email: str,
        token: str,
        locale: Optional[str] = None,
    ) -> bool:
        """Mail the confirmation link to the new address, naming the old one."""
        confirm_url = f"{self.base_url}/confirm-email-change?token={token}"
        html_body, text_body = self._render(
            title="Confirm your new email address",
            intro=(
                f"A change of the email address for the account registered as "
                f"{old_email} was requested. Confirm that this is your new address."
            ),
            url=confirm_url,
            action="Confirm email",
            footer_note="If you didn't request this, you can safely ignore this email.",
            locale=locale,
        )
        return self._send_email(
            new_email, "Confirm your new email address", html_body, text_body
        )

    def send_two_factor_code(
        self, to_email: str, code: str, locale: Optional[str] = None
    ) -> bool:
        """Mail a one-time login code; the message carries no link."""
        lang = locale or self.default_locale
        html_body = f"""
<!DOCTYPE html>
<html lang="{lang}">
<head><meta charset="utf-8"></head>
<body>
    <h1>Your login code</h1>
    <p>Enter this code to finish signing in:</p>
    <p style="font-size: 28px; font-weight: 600; letter-spacing: 4px;">{code}</p>
    <p>If you didn't try to sign in, change your password.</p>
    <p style="font-size: 12px; color: #5b6470;">{self.from_name}</p>
</body>
</html>
"""
        text_body = f"""Your login code

Enter this code to finish signing in: {code}

If you didn't try to sign in, change your password.

---
{self.from_name}
"""
        return self._send_email(
            to_email, f"Your {self.from_name} login code", html_body, text_body
        )
