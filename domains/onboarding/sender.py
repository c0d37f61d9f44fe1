"""Reminder email sender.

Renders the onboarding reminder and hands it to an SMTP server. ``send``
returns True only when the server accepted the message for every recipient;
anything else is logged and returned as False so the scheduler leaves the
reminder due for the next cycle.
"""

import asyncio
import html
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Optional

import config as app_config
from logger import logger
from utils import mask_destination, sanitize_for_log
from . import config


@dataclass
class RenderedReminder:
    """A reminder ready to hand to the mail server."""
    subject: str
    text: str
    html: str


def resolve_url(path: str, base_url: Optional[str] = None) -> str:
    """Prefix relative paths with the site's base URL; absolute URLs pass through."""
    if path.startswith("http://") or path.startswith("https://"):
        return path
    base = (base_url or app_config.APP_BASE_URL).rstrip("/")
    return f"{base}/{path.lstrip('/')}"


def next_step_path(credit_report_completed: bool) -> str:
    """Page the client should go to next: credit report first, then documents."""
    return config.DOCUMENTS_PATH if credit_report_completed else config.CREDIT_REPORT_PATH


def render_reminder(params: dict) -> RenderedReminder:
    """Build subject, plain-text and HTML bodies from template parameters.

    Args:
        params: ``name``, ``next_step_url`` and ``threshold_label`` (all optional)
    """
    name = params.get("name") or "there"
    url = params.get("next_step_url") or resolve_url(config.CREDIT_REPORT_PATH)
    waited = params.get("threshold_label")

    lead = f"Hi {name}, please complete your onboarding to continue."
    if waited:
        lead = f"Hi {name}, you started onboarding {waited} ago. Please complete it to continue."

    text = (
        f"{lead}\n\n"
        "You're almost there! Please provide your credit report and sign the "
        "required documents to finish onboarding.\n\n"
        f"Continue onboarding: {url}\n\n"
        "If you have already completed this step, you can ignore this email.\n"
    )

    safe_lead = html.escape(lead)
    safe_url = html.escape(url, quote=True)
    body = f"""<!DOCTYPE html>
<html>
  <head><meta charset="UTF-8" /><title>Complete Your Onboarding</title></head>
  <body style="font-family: 'Segoe UI', Arial, sans-serif; background: #f6faff;">
    <h1 style="color: #2563eb;">What's your next step?</h1>
    <p>{safe_lead}</p>
    <p><b>You're almost there!</b> Please provide your credit report and sign the
    required documents to finish onboarding.</p>
    <p><a href="{safe_url}">Continue Onboarding &rarr;</a></p>
    <p style="color: #64748b;">If you have already completed this step, you can ignore this email.</p>
  </body>
</html>
"""
    return RenderedReminder(subject=config.REMINDER_SUBJECT, text=text, html=body)


class SmtpReminderSender:
    """Sends onboarding reminders through an SMTP relay (STARTTLS + login)."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_name: Optional[str] = None,
        use_tls: Optional[bool] = None,
        timeout: float = config.SMTP_TIMEOUT_SECONDS,
    ):
        self.host = host or app_config.SMTP_HOST
        self.port = port or app_config.SMTP_PORT
        self.username = username or app_config.SMTP_USER
        self.password = password or app_config.SMTP_PASS
        self.from_name = from_name or app_config.SMTP_FROM_NAME
        self.use_tls = app_config.SMTP_USE_TLS if use_tls is None else use_tls
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.host and self.username)

    def build_message(self, destination: str, threshold_id: str, params: dict) -> EmailMessage:
        """Compose the MIME message (plain text with an HTML alternative)."""
        rendered = render_reminder(params)
        message = EmailMessage()
        message["Subject"] = rendered.subject
        message["From"] = formataddr((self.from_name, self.username))
        message["To"] = destination
        message["Message-ID"] = make_msgid(domain=self.username.split("@")[-1] if self.username else None)
        message["X-Onboarding-Reminder"] = threshold_id
        message.set_content(rendered.text)
        message.add_alternative(rendered.html, subtype="html")
        return message

    async def send(self, destination: str, threshold_id: str, params: dict) -> bool:
        """Send one reminder.

        Args:
            destination: Recipient email address
            threshold_id: Which reminder this is (``"24h"``, ``"3d"``...)
            params: Template parameters (see ``render_reminder``)

        Returns:
            True if the SMTP server accepted the message
        """
        if not self.configured:
            logger.warning(f"SMTP not configured, reminder {threshold_id} to {mask_destination(destination)} not sent")
            return False

        message = self.build_message(destination, threshold_id, params)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send of reminder {threshold_id} to {mask_destination(destination)} failed: {sanitize_for_log(str(e))}")
            return False

        logger.info(f"Reminder {threshold_id} accepted for {mask_destination(destination)}")
        return True

    def _deliver(self, message: EmailMessage) -> None:
        """Blocking SMTP conversation, run in a worker thread."""
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username and self.password:
                smtp.login(self.username, self.password)
            refused = smtp.send_message(message)
        if refused:
            raise smtplib.SMTPRecipientsRefused(refused)
