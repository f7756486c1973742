"""Notification dispatch for MedLove reminders.

This module renders reminder emails and hands them to an email transport.

Transports:
- SmtpEmailTransport: SMTP with STARTTLS (e.g. Gmail + app password)
- HttpEmailTransport: JSON POST to an email relay API via httpx
- LogEmailTransport: development transport that only logs

Every transport raises DeliveryError when a message is not accepted; the
dispatcher never swallows it, the scheduler decides what a failure means
for the escalation chain.
"""

import asyncio
import html
import logging
import smtplib
import uuid
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Optional, Tuple

import httpx

from errors import DeliveryError, StoreError
from schemas import DeliveryReceipt, MedicationEntry, UserProfile

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ordinal(n: int) -> str:
    """1 -> '1st', 2 -> '2nd', 11 -> '11th'."""
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

_REMINDER_HTML = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <div style="background: linear-gradient(135deg, #f24ff0, #ff6b6b); padding: 30px; border-radius: 15px; text-align: center; color: white; margin-bottom: 20px;">
    <h1 style="margin: 0; font-size: 28px;">&#128138; Medication Reminder</h1>
    <p style="margin: 10px 0 0 0; opacity: 0.9;">Hi {user_name}! It's time to take your medication</p>
  </div>
  <div style="background: #f8f9fa; padding: 25px; border-radius: 15px; margin-bottom: 20px;">
    <h2 style="color: #333; margin-top: 0;">{medication_name}</h2>
    <p style="color: #666; font-size: 18px; margin: 10px 0;"><strong>Dosage:</strong> {dosage}</p>
    <p style="color: #666; font-size: 18px; margin: 10px 0;"><strong>Scheduled Time:</strong> {time}</p>
  </div>
  <div style="text-align: center; margin: 30px 0;">
    <a href="{mark_taken_url}" style="background: linear-gradient(135deg, #f24ff0, #ff6b6b); color: white; padding: 15px 30px; text-decoration: none; border-radius: 25px; font-weight: bold; display: inline-block;">&#9989; Mark as Taken</a>
  </div>
  <div style="background: #e3f2fd; padding: 20px; border-radius: 10px; margin-top: 20px;">
    <p style="color: #1976d2; margin: 0; text-align: center; font-size: 14px;">&#128149; Remember: Taking your medication on time helps you stay healthy and strong!</p>
  </div>
  <div style="text-align: center; margin-top: 30px; color: #999; font-size: 12px;">
    <p>This reminder was sent by MedLove - Your caring medication companion</p>
    <p>If you've already taken this medication, please click "Mark as Taken" above</p>
  </div>
</div>
"""

_FOLLOW_UP_HTML = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <div style="background: linear-gradient(135deg, #ff9500, #ff6b6b); padding: 30px; border-radius: 15px; text-align: center; color: white; margin-bottom: 20px;">
    <h1 style="margin: 0; font-size: 28px;">&#9200; Gentle Reminder</h1>
    <p style="margin: 10px 0 0 0; opacity: 0.9;">Hi {user_name}! Just checking in about your medication</p>
  </div>
  <div style="background: #fff3cd; padding: 25px; border-radius: 15px; margin-bottom: 20px; border-left: 4px solid #ffc107;">
    <h2 style="color: #856404; margin-top: 0;">{medication_name}</h2>
    <p style="color: #856404; font-size: 18px; margin: 10px 0;"><strong>Dosage:</strong> {dosage}</p>
    <p style="color: #856404; font-size: 18px; margin: 10px 0;"><strong>Scheduled Time:</strong> {time}</p>
    <p style="color: #856404; font-size: 16px; margin: 10px 0;"><strong>This is your {attempt} reminder</strong></p>
  </div>
  <div style="text-align: center; margin: 30px 0;">
    <a href="{mark_taken_url}" style="background: linear-gradient(135deg, #ff9500, #ff6b6b); color: white; padding: 15px 30px; text-decoration: none; border-radius: 25px; font-weight: bold; display: inline-block;">&#9989; Mark as Taken</a>
  </div>
  <div style="background: #fff3cd; padding: 20px; border-radius: 10px; margin-top: 20px;">
    <p style="color: #856404; margin: 0; text-align: center; font-size: 14px;">&#128149; No worries if you're running late! Your health journey is important to us.</p>
  </div>
  <div style="text-align: center; margin-top: 30px; color: #999; font-size: 12px;">
    <p>This follow-up reminder was sent by MedLove</p>
    <p>If you've already taken this medication, please click "Mark as Taken" above</p>
  </div>
</div>
"""


def _template_fields(user_name, medication, scheduled_time, app_url):
    return {
        "user_name": html.escape(user_name),
        "medication_name": html.escape(medication.name),
        "dosage": html.escape(medication.dosage),
        "time": html.escape(scheduled_time),
        "mark_taken_url": html.escape(f"{app_url}?markTaken={medication.id}", quote=True),
    }


def render_reminder(user_name: str, medication: MedicationEntry, scheduled_time: str, app_url: str) -> Tuple[str, str]:
    """Subject line and HTML body for the primary reminder."""
    subject = f"\U0001F48A Time for {medication.name}!"
    body = _REMINDER_HTML.format(**_template_fields(user_name, medication, scheduled_time, app_url))
    return subject, body


def render_follow_up(
    user_name: str,
    medication: MedicationEntry,
    scheduled_time: str,
    attempt_number: int,
    app_url: str
) -> Tuple[str, str]:
    """Subject line and HTML body for follow-up number `attempt_number` (2..N)."""
    attempt = ordinal(attempt_number)
    subject = f"⏰ Gentle Reminder: {medication.name} ({attempt} reminder)"
    body = _FOLLOW_UP_HTML.format(
        attempt=attempt,
        **_template_fields(user_name, medication, scheduled_time, app_url)
    )
    return subject, body


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------

class SmtpEmailTransport:
    """Send through an SMTP server with STARTTLS.

    smtplib is blocking, so each send runs in a worker thread.
    """

    def __init__(self, host: str, port: int, username: str, password: str,
                 sender_name: str = "MedLove Reminders", timeout: float = 30.0):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = formataddr((sender_name, username))
        self.timeout = timeout

    def _send_sync(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            server.starttls()
            if self.username:
                server.login(self.username, self.password)
            server.send_message(message)

    async def send(self, to_address: str, subject: str, body_html: str) -> DeliveryReceipt:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to_address
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(domain="medlove")
        message.set_content("Please view this email in an HTML capable client.")
        message.add_alternative(body_html, subtype="html")

        try:
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"SMTP delivery to {to_address} failed: {e}", to_address) from e

        return DeliveryReceipt(
            message_id=message["Message-ID"],
            to_address=to_address,
            accepted_at=_utcnow(),
        )


class HttpEmailTransport:
    """POST the message as JSON to an email relay endpoint."""

    def __init__(self, api_url: str, api_key: str = "", sender: str = "",
                 timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self._client = client

    async def _post(self, client: httpx.AsyncClient, payload: dict) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        return await client.post(self.api_url, json=payload, headers=headers)

    async def send(self, to_address: str, subject: str, body_html: str) -> DeliveryReceipt:
        payload = {
            "from": self.sender,
            "to": to_address,
            "subject": subject,
            "html": body_html,
        }

        try:
            if self._client is not None:
                response = await self._post(self._client, payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await self._post(client, payload)
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Timeout sending email to {to_address}", to_address) from e
        except httpx.RequestError as e:
            raise DeliveryError(f"Network error sending email to {to_address}: {e}", to_address) from e

        if response.status_code not in (200, 201, 202):
            raise DeliveryError(
                f"Email relay rejected message to {to_address}. "
                f"Status: {response.status_code}, Response: {response.text}",
                to_address,
            )

        # The message is accepted at this point; a missing or odd id is not an error
        try:
            data = response.json()
        except ValueError:
            data = None
        message_id = data.get("id") if isinstance(data, dict) else None

        return DeliveryReceipt(
            message_id=message_id or str(uuid.uuid4()),
            to_address=to_address,
            accepted_at=_utcnow(),
        )


class LogEmailTransport:
    """Development transport: log the message instead of sending it."""

    async def send(self, to_address: str, subject: str, body_html: str) -> DeliveryReceipt:
        logger.info(f"[email] to={to_address} subject={subject!r} ({len(body_html)} bytes)")
        return DeliveryReceipt(
            message_id=f"log-{uuid.uuid4()}",
            to_address=to_address,
            accepted_at=_utcnow(),
        )


def build_transport(settings):
    """Pick the transport named by settings.EMAIL_TRANSPORT."""
    kind = settings.EMAIL_TRANSPORT.lower()
    if kind == "smtp":
        return SmtpEmailTransport(
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            settings.EMAIL_USER,
            settings.EMAIL_PASS,
            sender_name=settings.EMAIL_SENDER_NAME,
        )
    if kind == "http":
        return HttpEmailTransport(
            settings.EMAIL_API_URL,
            settings.EMAIL_API_KEY,
            sender=formataddr((settings.EMAIL_SENDER_NAME, settings.EMAIL_USER)),
        )
    if kind == "log":
        return LogEmailTransport()
    raise ValueError(f"Unknown EMAIL_TRANSPORT '{settings.EMAIL_TRANSPORT}'")


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class NotificationDispatcher:
    """Render and send primary reminders and follow-ups.

    Args:
        transport: Object with `async send(to_address, subject, body_html)`
        store: Store used to bump the subject's notification counter
        app_url: Front end URL for the "Mark as Taken" link
        max_attempts: Total notifications allowed per occurrence
    """

    def __init__(self, transport, store, app_url: str, max_attempts: int = 4):
        self.transport = transport
        self.store = store
        self.app_url = app_url
        self.max_attempts = max_attempts

    async def send_reminder(self, subject: UserProfile, medication: MedicationEntry,
                            scheduled_time: str) -> DeliveryReceipt:
        """Send the primary reminder for an occurrence.

        On success the subject's lifetime notification count is incremented.

        Raises:
            DeliveryError: If the subject has no address or the transport rejects
        """
        if not subject.email:
            raise DeliveryError(f"No email found for user {subject.id}")

        subject_line, body = render_reminder(subject.greeting_name, medication, scheduled_time, self.app_url)
        receipt = await self.transport.send(subject.email, subject_line, body)
        logger.info(
            f"Reminder sent to user {subject.id} for {medication.name} at {scheduled_time}: "
            f"{receipt.message_id}"
        )

        try:
            await self.store.increment_notification_count(subject.id, receipt.accepted_at)
        except StoreError as e:
            logger.error(f"Sent reminder but could not update notification count for {subject.id}: {e}")

        return receipt

    async def send_follow_up(self, subject: UserProfile, medication: MedicationEntry,
                             scheduled_time: str, attempt_number: int) -> Optional[DeliveryReceipt]:
        """Send follow-up `attempt_number` (2..max_attempts).

        Returns:
            Optional[DeliveryReceipt]: None when the attempt is past the bound

        Raises:
            DeliveryError: If the transport rejects the message
        """
        if attempt_number < 2:
            raise ValueError("follow-up attempts start at 2")
        if attempt_number > self.max_attempts:
            logger.info(f"Max reminders reached for user {subject.id} ({medication.name})")
            return None
        if not subject.email:
            raise DeliveryError(f"No email found for user {subject.id}")

        subject_line, body = render_follow_up(
            subject.greeting_name, medication, scheduled_time, attempt_number, self.app_url
        )
        receipt = await self.transport.send(subject.email, subject_line, body)
        logger.info(
            f"Follow-up email sent to user {subject.id} (reminder {attempt_number}): {receipt.message_id}"
        )
        return receipt
