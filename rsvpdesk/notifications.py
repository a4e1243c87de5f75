"""Invitation email delivery."""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from pathlib import Path
from typing import Protocol, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .config import Settings, settings
from .errors import NotificationError
from .models import Event

logger = logging.getLogger("uvicorn.error")

TEMPLATES_DIR = Path(__file__).parent / "templates"

email_templates = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)


@dataclass(frozen=True)
class Invitation:
    event_id: str
    title: str
    date: str
    time: str
    location: str
    description: str
    link: str

    @property
    def subject(self) -> str:
        return f"Invitation: {self.title}"

    @classmethod
    def for_event(cls, event: Event, *, app_url: str) -> "Invitation":
        return cls(
            event_id=event.id,
            title=event.title,
            date=f"{event.date:%B} {event.date.day}, {event.date.year}",
            time=event.time,
            location=event.location,
            description=event.description,
            link=f"{app_url.rstrip('/')}/events/{event.id}",
        )


class Notifier(Protocol):
    def send_invitation(self, invitation: Invitation, recipients: Sequence[str]) -> None:
        """Send one invitation to every recipient or raise NotificationError."""


def render_invitation(invitation: Invitation) -> tuple[str, str]:
    """Return the (html, text) bodies for an invitation."""
    html_body = email_templates.get_template("invitation.html").render(
        invitation=invitation
    )
    text_body = email_templates.get_template("invitation.txt").render(
        invitation=invitation
    )
    return html_body, text_body


class SmtpNotifier:
    """Send invitations through an SMTP relay as a single batched message."""

    def __init__(self, config: Settings):
        self.config = config

    def _build_message(
        self, invitation: Invitation, recipients: Sequence[str]
    ) -> EmailMessage:
        html_body, text_body = render_invitation(invitation)
        message = EmailMessage()
        message["From"] = self.config.mail_from
        # Undisclosed recipients; addresses travel in the envelope only.
        message["To"] = self.config.mail_from
        message["Subject"] = invitation.subject
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")
        return message

    def _connect(self) -> smtplib.SMTP:
        if self.config.smtp_use_ssl:
            return smtplib.SMTP_SSL(
                self.config.smtp_host,
                self.config.smtp_port,
                timeout=self.config.smtp_timeout_seconds,
            )
        client = smtplib.SMTP(
            self.config.smtp_host,
            self.config.smtp_port,
            timeout=self.config.smtp_timeout_seconds,
        )
        try:
            client.starttls()
        except Exception:
            client.close()
            raise
        return client

    def send_invitation(self, invitation: Invitation, recipients: Sequence[str]) -> None:
        if not recipients:
            return
        message = self._build_message(invitation, recipients)
        try:
            with self._connect() as client:
                if self.config.smtp_user:
                    client.login(self.config.smtp_user, self.config.smtp_password)
                client.send_message(message, to_addrs=list(recipients))
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "Failed to send invitation for event %s to %d recipient(s): %s",
                invitation.event_id,
                len(recipients),
                exc,
            )
            raise NotificationError() from exc
        logger.info(
            "Sent invitation for event %s to %d recipient(s)",
            invitation.event_id,
            len(recipients),
        )


class LoggingNotifier:
    """Fallback used when no SMTP relay is configured."""

    def send_invitation(self, invitation: Invitation, recipients: Sequence[str]) -> None:
        if not recipients:
            return
        logger.warning(
            "SMTP not configured; invitation for event %s to %d recipient(s) only logged",
            invitation.event_id,
            len(recipients),
        )


def build_notifier(config: Settings | None = None) -> Notifier:
    config = config or settings
    if config.smtp_configured:
        return SmtpNotifier(config)
    return LoggingNotifier()
