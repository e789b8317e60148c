from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from discussionboard.logging import get_logger, mask_email

logger = get_logger(__name__)


class EmailService:
    """Delivers account activation links.

    Sends over SMTP (STARTTLS or implicit TLS) when a host and sender are
    configured. Otherwise the link is written to the log, with its token
    masked unless LOG_DEV_MODE is on, so a developer can activate by hand.
    Delivery is fire-and-forget: failures are logged and reported as
    ``False``, never raised.
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
        from_name: str = "Discussion Board",
        activation_ttl_hours: int = 72,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.activation_ttl_hours = activation_ttl_hours

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=mask_email(to_email),
                refused=len(e.recipients),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True

    def notify_activation(self, to_email: str, activation_link: str) -> bool:
        """Send the activation link for a freshly registered account."""
        if not self.is_configured:
            logger.info(
                "activation_required",
                to=mask_email(to_email),
                activation_link=activation_link,
                expires_in_hours=self.activation_ttl_hours,
            )
            return True

        subject = "Activate your Discussion Board account"
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body>
    <h1>Welcome!</h1>
    <p>Thanks for registering. Activate your account by following the link below:</p>
    <p><a href="{activation_link}">Activate account</a></p>
    <p>This link expires in {self.activation_ttl_hours} hours and can be used once.</p>
    <p>If the link doesn't work, copy and paste this URL: {activation_link}</p>
</body>
</html>
"""
        text_body = f"""Activate your Discussion Board account

Thanks for registering. Activate your account by visiting the link below:

{activation_link}

This link expires in {self.activation_ttl_hours} hours and can be used once.
"""
        try:
            return self._send_email(to_email, subject, html_body, text_body)
        except Exception as exc:
            logger.error(
                "activation_notify_failed",
                to=mask_email(to_email),
                error_type=type(exc).__name__,
            )
            return False
