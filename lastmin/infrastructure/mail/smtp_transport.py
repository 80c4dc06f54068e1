# lastmin/infrastructure/mail/smtp_transport.py

from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Sequence
import logging
import os
import smtplib

from lastmin.domain.exceptions import MailServiceUnavailableError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailAttachment:
    """Binary part of an email. With a content_id it is embedded inline."""

    filename: str
    content_type: str
    data: bytes
    content_id: str | None = None


@dataclass(frozen=True)
class OutgoingEmail:
    subject: str
    recipient: str
    html_body: str
    text_body: str | None = None
    attachments: Sequence[EmailAttachment] = field(default_factory=tuple)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class SmtpMailTransport:
    """Delivers OutgoingEmail messages through an SMTP relay configured from the environment."""

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        username: str | None = None,
        password: str | None = None,
        sender: str | None = None,
        use_tls: bool | None = None,
        use_ssl: bool | None = None,
        timeout: float | None = None,
    ):
        self.host = host if host is not None else os.getenv("SMTP_HOST")
        self.port = port if port is not None else int(os.getenv("SMTP_PORT", "587"))
        self.username = username if username is not None else os.getenv("SMTP_USERNAME")
        self.password = password if password is not None else os.getenv("SMTP_PASSWORD")
        self.sender = sender if sender is not None else os.getenv("MAIL_FROM")
        self.use_tls = use_tls if use_tls is not None else _env_flag("SMTP_USE_TLS", "true")
        self.use_ssl = use_ssl if use_ssl is not None else _env_flag("SMTP_USE_SSL", "false")
        self.timeout = timeout if timeout is not None else float(os.getenv("SMTP_TIMEOUT", "10"))

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.sender)

    def _build_message(self, email: OutgoingEmail) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = email.subject
        message["From"] = self.sender
        message["To"] = email.recipient

        message.set_content(email.text_body or "This email requires an HTML-capable client.")
        message.add_alternative(email.html_body, subtype="html")
        html_part = message.get_payload()[-1]

        for attachment in email.attachments:
            maintype, subtype = attachment.content_type.split("/", 1)
            if attachment.content_id:
                html_part.add_related(
                    attachment.data,
                    maintype=maintype,
                    subtype=subtype,
                    cid=f"<{attachment.content_id}>",
                    filename=attachment.filename,
                )
            else:
                message.add_attachment(
                    attachment.data,
                    maintype=maintype,
                    subtype=subtype,
                    filename=attachment.filename,
                )

        return message

    def _login(self, client: smtplib.SMTP) -> None:
        if self.username and self.password:
            client.login(self.username, self.password)

    def send(self, email: OutgoingEmail) -> None:
        if not self.is_configured:
            raise MailServiceUnavailableError(
                "Email service not configured. Set SMTP_HOST and MAIL_FROM."
            )

        message = self._build_message(email)

        try:
            if self.use_ssl:
                with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout) as client:
                    self._login(client)
                    client.send_message(message)
            else:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as client:
                    if self.use_tls:
                        client.starttls()
                    self._login(client)
                    client.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise MailServiceUnavailableError(f"Failed to deliver email: {exc}") from exc

        logger.info("Email '%s' delivered to %s", email.subject, email.recipient)
