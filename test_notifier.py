"""Tests for email rendering, transports and the notification dispatcher."""

import asyncio
import json
from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import pytest

from errors import DeliveryError, StoreError
from notifier import (
    HttpEmailTransport, LogEmailTransport, NotificationDispatcher, SmtpEmailTransport,
    build_transport, ordinal, render_follow_up, render_reminder,
)
from schemas import MedicationEntry, UserProfile

APP_URL = "https://medlove.test"

medication = MedicationEntry(id="med-1", user_id="user-1", name="Vitamin D",
                             dosage="1 tablet", times=["08:00"])
jane = UserProfile(id="user-1", email="jane@example.com", display_name="Jane")


def test_ordinal():
    assert [ordinal(n) for n in (1, 2, 3, 4, 11, 12, 13, 21, 22, 101)] == [
        "1st", "2nd", "3rd", "4th", "11th", "12th", "13th", "21st", "22nd", "101st",
    ]


def test_render_reminder():
    subject, body = render_reminder("Jane", medication, "08:00", APP_URL)

    assert subject == "\U0001F48A Time for Vitamin D!"
    assert "Hi Jane!" in body
    assert "1 tablet" in body
    assert "08:00" in body
    assert "https://medlove.test?markTaken=med-1" in body


def test_render_escapes_user_content():
    risky = medication.model_copy(update={"name": "<script>x</script>"})
    _, body = render_reminder("Jane & co", risky, "08:00", APP_URL)

    assert "<script>" not in body
    assert "&lt;script&gt;" in body
    assert "Jane &amp; co" in body


def test_render_follow_up():
    subject, body = render_follow_up("Jane", medication, "08:00", 3, APP_URL)

    assert subject == "⏰ Gentle Reminder: Vitamin D (3rd reminder)"
    assert "This is your 3rd reminder" in body


def test_greeting_falls_back_to_mailbox_name():
    assert UserProfile(id="u", email="sam@example.com").greeting_name == "sam"
    assert jane.greeting_name == "Jane"


# ---------------------------------------------------------------------------
# HTTP transport
# ---------------------------------------------------------------------------

def http_transport(handler, api_key="secret"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpEmailTransport("https://relay.test/send", api_key, sender="MedLove <noreply@medlove.test>",
                              client=client)


def test_http_transport_posts_message():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(202, json={"id": "relay-123"})

    receipt = asyncio.run(http_transport(handler).send("jane@example.com", "Hello", "<p>hi</p>"))

    assert receipt.message_id == "relay-123"
    assert receipt.to_address == "jane@example.com"
    [request] = requests
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content) == {
        "from": "MedLove <noreply@medlove.test>",
        "to": "jane@example.com",
        "subject": "Hello",
        "html": "<p>hi</p>",
    }


def test_http_transport_generates_id_when_relay_has_none():
    receipt = asyncio.run(http_transport(lambda request: httpx.Response(200, text="OK")).send(
        "jane@example.com", "Hello", "<p>hi</p>"
    ))
    assert receipt.message_id


def test_http_transport_rejection_raises_delivery_error():
    transport = http_transport(lambda request: httpx.Response(500, text="relay down"))

    with pytest.raises(DeliveryError) as exc_info:
        asyncio.run(transport.send("jane@example.com", "Hello", "<p>hi</p>"))
    assert exc_info.value.to_address == "jane@example.com"
    assert "500" in str(exc_info.value)


def test_http_transport_network_error_raises_delivery_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(DeliveryError):
        asyncio.run(http_transport(handler).send("jane@example.com", "Hello", "<p>hi</p>"))


def test_http_transport_timeout_raises_delivery_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(DeliveryError, match="Timeout"):
        asyncio.run(http_transport(handler).send("jane@example.com", "Hello", "<p>hi</p>"))


def test_build_transport():
    settings = SimpleNamespace(
        EMAIL_TRANSPORT="smtp", SMTP_HOST="smtp.test", SMTP_PORT=587,
        EMAIL_USER="noreply@medlove.test", EMAIL_PASS="pw", EMAIL_API_URL="https://relay.test/send",
        EMAIL_API_KEY="key", EMAIL_SENDER_NAME="MedLove Reminders",
    )
    assert isinstance(build_transport(settings), SmtpEmailTransport)

    settings.EMAIL_TRANSPORT = "HTTP"
    assert isinstance(build_transport(settings), HttpEmailTransport)

    settings.EMAIL_TRANSPORT = "log"
    assert isinstance(build_transport(settings), LogEmailTransport)

    settings.EMAIL_TRANSPORT = "pigeon"
    with pytest.raises(ValueError):
        build_transport(settings)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class CountingStore:
    def __init__(self, fail=False):
        self.increments = []
        self.fail = fail

    async def increment_notification_count(self, user_id, when):
        if self.fail:
            raise StoreError("read-only replica")
        self.increments.append(user_id)


def test_send_reminder_counts_notification(transport):
    store = CountingStore()
    dispatcher = NotificationDispatcher(transport, store, APP_URL)

    receipt = asyncio.run(dispatcher.send_reminder(jane, medication, "08:00"))

    assert receipt.to_address == "jane@example.com"
    assert store.increments == ["user-1"]


def test_counter_failure_does_not_fail_the_send(transport):
    dispatcher = NotificationDispatcher(transport, CountingStore(fail=True), APP_URL)

    asyncio.run(dispatcher.send_reminder(jane, medication, "08:00"))
    assert len(transport.sent) == 1


def test_missing_address_is_a_delivery_error(transport):
    store = CountingStore()
    dispatcher = NotificationDispatcher(transport, store, APP_URL)
    nobody = UserProfile(id="user-9", email="")

    with pytest.raises(DeliveryError):
        asyncio.run(dispatcher.send_reminder(nobody, medication, "08:00"))
    assert transport.sent == []
    assert store.increments == []


def test_transport_failure_is_not_counted(transport):
    store = CountingStore()
    dispatcher = NotificationDispatcher(transport, store, APP_URL)
    transport.fail_all = True

    with pytest.raises(DeliveryError):
        asyncio.run(dispatcher.send_reminder(jane, medication, "08:00"))
    assert store.increments == []


def test_follow_up_bounds(transport):
    store = CountingStore()
    dispatcher = NotificationDispatcher(transport, store, APP_URL, max_attempts=4)

    assert asyncio.run(dispatcher.send_follow_up(jane, medication, "08:00", 4)) is not None
    assert asyncio.run(dispatcher.send_follow_up(jane, medication, "08:00", 5)) is None
    with pytest.raises(ValueError):
        asyncio.run(dispatcher.send_follow_up(jane, medication, "08:00", 1))

    assert transport.subjects() == ["⏰ Gentle Reminder: Vitamin D (4th reminder)"]
    # Follow-ups do not touch the lifetime counter
    assert store.increments == []


def test_log_transport_accepts_everything():
    receipt = asyncio.run(LogEmailTransport().send("jane@example.com", "Hello", "<p>hi</p>"))
    assert receipt.message_id.startswith("log-")
    assert receipt.accepted_at <= datetime.now(timezone.utc)


def test_http_transport_tolerates_non_object_json():
    for payload in (["queued"], "queued", None):
        transport = http_transport(lambda request, payload=payload: httpx.Response(202, json=payload))
        receipt = asyncio.run(transport.send("jane@example.com", "Hello", "<p>hi</p>"))
        assert receipt.message_id
        assert receipt.to_address == "jane@example.com"
