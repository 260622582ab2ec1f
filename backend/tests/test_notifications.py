"""
Tests for post-commit notification delivery.
"""

import pytest

from gatepass.db.session import run_in_transaction
from gatepass.services.notification_service import (
    MessageBody,
    Notification,
    NotificationDispatcher,
    NotificationKind,
    queue_notification,
    render_message,
)


class FailingSender:
    def __init__(self):
        self.attempts = 0

    async def send(self, to_address: str, subject: str, body: MessageBody) -> None:
        self.attempts += 1
        raise ConnectionError("smtp down")


def test_admission_message_carries_serial_and_qr():
    subject, body = render_message(Notification(
        kind=NotificationKind.ADMISSION_CONFIRMED,
        email="a@example.com",
        name="Ada",
        serial="FREE-0001",
        ticket_class="free",
        plus_one=True,
        token="dG9rZW4",
    ))

    assert subject == "Your ticket for LocalHost Festival: FREE-0001"
    assert "Hi Ada," in body.text
    assert "+1" in body.text
    assert "data:image/png;base64," in body.html


def test_lottery_messages():
    won, _ = render_message(Notification(kind=NotificationKind.LOTTERY_WON, email="a@example.com"))
    lost, body = render_message(Notification(kind=NotificationKind.LOTTERY_LOST, email="a@example.com"))

    assert won == "You won the LocalHost Festival Lucky Draw!"
    assert lost == "LocalHost Festival Draw Result"
    assert "Hi there," in body.text
    assert body.html is None


@pytest.mark.asyncio
async def test_admission_is_sent_after_commit(register, dispatcher, sender):
    await register("mail@example.com", name="Mail")
    await dispatcher.drain()

    assert sender.subjects_for("mail@example.com") == ["Your ticket for LocalHost Festival: FREE-0001"]


@pytest.mark.asyncio
async def test_rejected_request_sends_nothing(register, dispatcher, sender):
    await register("once@example.com")
    await register("once@example.com")
    await dispatcher.drain()

    assert len(sender.subjects_for("once@example.com")) == 1


@pytest.mark.asyncio
async def test_rolled_back_transaction_sends_nothing(session_factory, dispatcher, sender):
    async def queue_then_fail(db):
        queue_notification(db, Notification(kind=NotificationKind.LOTTERY_WON, email="ghost@example.com"))
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await run_in_transaction(queue_then_fail, session_factory=session_factory)
    await dispatcher.drain()

    assert sender.sent == []


@pytest.mark.asyncio
async def test_delivery_failure_is_swallowed():
    failing = FailingSender()
    dispatcher = NotificationDispatcher(sender=failing, maxsize=10)

    dispatcher.submit(Notification(kind=NotificationKind.LOTTERY_LOST, email="a@example.com"))
    await dispatcher.drain()

    assert failing.attempts == 1


@pytest.mark.asyncio
async def test_full_queue_drops_instead_of_blocking(sender):
    dispatcher = NotificationDispatcher(sender=sender, maxsize=1)

    dispatcher.submit(Notification(kind=NotificationKind.LOTTERY_LOST, email="first@example.com"))
    dispatcher.submit(Notification(kind=NotificationKind.LOTTERY_LOST, email="second@example.com"))
    await dispatcher.drain()

    assert [to for to, _, _ in sender.sent] == ["first@example.com"]


@pytest.mark.asyncio
async def test_worker_delivers_in_the_background(sender):
    dispatcher = NotificationDispatcher(sender=sender, maxsize=10)
    dispatcher.start()
    assert dispatcher.running

    dispatcher.submit(Notification(kind=NotificationKind.WAITLIST_PROMOTION, email="bg@example.com"))
    await dispatcher.drain()
    await dispatcher.stop()

    assert not dispatcher.running
    assert sender.subjects_for("bg@example.com") == ["A spot opened up at LocalHost Festival"]
