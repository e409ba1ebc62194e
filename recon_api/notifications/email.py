"""SMTP email sender used for one-shot payment notifications.

Sending never raises: transport failures are logged and reported as False so
a failed email cannot undo a status transition that is already committed.
"""

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

from recon_api.config.env import get_smtp_settings

logger = logging.getLogger(__name__)


class SMTPConfig(BaseModel):
    """SMTP transport configuration."""

    host: str = "smtp.gmail.com"
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = True
    use_ssl: bool = False
    timeout: int = 30
    from_email: str
    from_name: Optional[str] = None


class EmailMessage(BaseModel):
    """Outbound email."""

    to: list[str]
    subject: str
    body: str
    html_body: Optional[str] = None
    reply_to: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("to", mode="before")
    @classmethod
    def _normalize_recipients(cls, value: Union[str, list[str]]) -> list[str]:
        if isinstance(value, str):
            value = [value]
        recipients = [addr.strip() for addr in value if addr and addr.strip()]
        if not recipients:
            raise ValueError("at least one recipient is required")
        return recipients


class EmailService:
    """Blocking smtplib sender with an async wrapper."""

    def __init__(self, config: SMTPConfig):
        self.config = config

    def _create_message(self, message: EmailMessage) -> MIMEMultipart:
        mime = MIMEMultipart("alternative")
        sender = self.config.from_email
        if self.config.from_name:
            sender = f"{self.config.from_name} <{self.config.from_email}>"

        mime["From"] = sender
        mime["To"] = ", ".join(message.to)
        mime["Subject"] = message.subject
        if message.reply_to:
            mime["Reply-To"] = message.reply_to
        for name, value in message.headers.items():
            mime[name] = value

        mime.attach(MIMEText(message.body, "plain", "utf-8"))
        if message.html_body:
            mime.attach(MIMEText(message.html_body, "html", "utf-8"))
        return mime

    def send(self, message: EmailMessage) -> bool:
        """Send message over SMTP. Returns True on success."""
        mime = self._create_message(message)
        smtp_cls = smtplib.SMTP_SSL if self.config.use_ssl else smtplib.SMTP

        try:
            server = smtp_cls(self.config.host, self.config.port, timeout=self.config.timeout)
            try:
                if self.config.use_tls and not self.config.use_ssl:
                    server.starttls()
                if self.config.username and self.config.password:
                    server.login(self.config.username, self.config.password)
                server.send_message(mime, to_addrs=message.to)
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "EMAIL_SEND_FAILED",
                extra={
                    "error_type": type(exc).__name__,
                    "subject": message.subject,
                    "recipient_count": len(message.to),
                },
            )
            return False

        logger.info(
            "EMAIL_SENT",
            extra={"subject": message.subject, "recipient_count": len(message.to)},
        )
        return True

    async def send_async(self, message: EmailMessage) -> bool:
        """Send without blocking the event loop."""
        return await asyncio.to_thread(self.send, message)


class DisabledEmailService:
    """Stand-in used when SMTP credentials are not configured."""

    def send(self, message: EmailMessage) -> bool:
        logger.warning(
            "Skipping email send - SMTP not configured",
            extra={"event": "email.skipped", "subject": message.subject},
        )
        return False

    async def send_async(self, message: EmailMessage) -> bool:
        return self.send(message)


def build_email_service() -> Union[EmailService, DisabledEmailService]:
    """Build the email service from SMTP_* environment configuration."""
    settings = get_smtp_settings()
    if settings is None:
        return DisabledEmailService()
    return EmailService(SMTPConfig(**settings))
