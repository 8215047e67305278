from __future__ import annotations

import smtplib
import ssl
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional, Protocol

from otpgate.logging import get_logger
from otpgate.service.errors import DeliveryError, ValidationError

logger = get_logger(__name__)


class Mailer(Protocol):
    def send(
        self,
        to: str,
        subject: str,
        text: Optional[str] = None,
        html: Optional[str] = None,
    ) -> str: ...


class SMTPMailer:
    """Delivers messages over SMTP.

    When no host/sender is configured the message is logged instead of sent
    (development mode) and a synthetic delivery id is returned.
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
        from_name: str = "Sign-in",
        timeout: float = 30,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(
        self, to: str, subject: str, text: Optional[str], html: Optional[str]
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        msg["Message-ID"] = make_msgid()
        if text:
            msg.attach(MIMEText(text, "plain"))
        if html:
            msg.attach(MIMEText(html, "html"))
        return msg

    def send(
        self,
        to: str,
        subject: str,
        text: Optional[str] = None,
        html: Optional[str] = None,
    ) -> str:
        """Send one message and return its delivery id.

        Raises:
            ValidationError: neither a text nor an HTML body was given.
            DeliveryError: the SMTP exchange failed.
        """
        if not text and not html:
            raise ValidationError("Either text or html content is required")

        if not self.is_configured:
            delivery_id = f"dev-{uuid.uuid4()}"
            logger.info(
                "email_dev_mode",
                email=to,
                subject=subject,
                delivery_id=delivery_id,
                body_preview=(text or html or "")[:200],
            )
            return delivery_id

        msg = self._build_message(to, subject, text, html)
        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            email=to,
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                email=to,
                host=self.smtp_host,
                error=str(e),
                smtp_status=getattr(e, "smtp_code", None),
            )
            raise DeliveryError("SMTP authentication failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", email=to, error=str(e))
            raise DeliveryError("Recipient refused") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                email=to,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise DeliveryError("SMTP delivery failed") from e
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                email=to,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise DeliveryError("Could not reach SMTP server") from e

        delivery_id = msg["Message-ID"]
        logger.info("email_sent", email=to, subject=subject, delivery_id=delivery_id)
        return delivery_id


__all__ = ["Mailer", "SMTPMailer"]
