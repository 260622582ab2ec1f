"""
Outbound notifications, decoupled from the transactions that trigger them.

Flow:
1. A service calls queue_notification(db, ...) while deciding an outcome.
   The intent is parked in the session's outbox (`session.info`).
2. run_in_transaction() commits, then pops the outbox and submits it to the
   NotificationDispatcher. A rolled-back attempt never reaches step 2.
3. The dispatcher's worker renders each message and calls the EmailSender.
   Failures are logged and counted; they are never retried into the database.
"""

import asyncio
import enum
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterable, List, Optional, Protocol, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from gatepass.core.config import Settings, get_settings
from gatepass.core.logging import get_logger
from gatepass.core.metrics import record_notification
from gatepass.core.qr import render_token_image
from gatepass.models.registration import CHANNEL_LABELS

logger = get_logger(__name__)

_OUTBOX_KEY = "pending_notifications"

TICKET_LABELS = {ticket_class.value: label for ticket_class, label in CHANNEL_LABELS.items()}


class NotificationKind(str, enum.Enum):
    ADMISSION_CONFIRMED = "admission_confirmed"
    LOTTERY_WON = "lottery_won"
    LOTTERY_LOST = "lottery_lost"
    WAITLIST_PROMOTION = "waitlist_promotion"


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    email: str
    name: str = ""
    event_name: str = "LocalHost Festival"
    serial: Optional[str] = None
    ticket_class: Optional[str] = None
    plus_one: bool = False
    token: Optional[str] = None


@dataclass(frozen=True)
class MessageBody:
    text: str
    html: Optional[str] = None


class EmailSender(Protocol):
    async def send(self, to_address: str, subject: str, body: MessageBody) -> None:
        ...


def queue_notification(db: AsyncSession, notification: Notification) -> None:
    """Park a notification until the surrounding transaction commits."""
    db.info.setdefault(_OUTBOX_KEY, []).append(notification)


def pop_pending_notifications(db: AsyncSession) -> List[Notification]:
    return db.info.pop(_OUTBOX_KEY, [])


def discard_pending_notifications(db: AsyncSession) -> None:
    db.info.pop(_OUTBOX_KEY, None)


def render_message(notification: Notification) -> Tuple[str, MessageBody]:
    """Build subject and body for a notification intent."""
    greeting = f"Hi {notification.name or 'there'},"
    event = notification.event_name

    if notification.kind == NotificationKind.ADMISSION_CONFIRMED:
        label = TICKET_LABELS.get(notification.ticket_class or "", notification.ticket_class or "")
        lines = [
            greeting,
            "",
            f"Your ticket is confirmed! Serial: {notification.serial}",
            f"Type: {label}",
        ]
        if notification.plus_one:
            lines.append("You have a +1. Your companion must arrive with you.")
        lines += [
            "",
            "Show the QR code at the gate. Do not share it, it is single-use.",
            "",
            "See you there!",
        ]
        text = "\n".join(lines)
        html = None
        if notification.token:
            image = render_token_image(notification.token)
            html = (
                f"<p>{greeting}</p>"
                f"<p>Your ticket is confirmed! Serial: <strong>{notification.serial}</strong></p>"
                f"<p>Type: {label}</p>"
                f'<p><img src="{image}" alt="Admission QR code" width="240" height="240"></p>'
                "<p>Show the QR code at the gate. Do not share it, it is single-use.</p>"
            )
        return f"Your ticket for {event}: {notification.serial}", MessageBody(text=text, html=html)

    if notification.kind == NotificationKind.LOTTERY_WON:
        text = (
            f"{greeting}\n\nGreat news, you have been selected in the lucky draw!\n"
            "Your ticket will follow in a separate email with your QR code."
        )
        return f"You won the {event} Lucky Draw!", MessageBody(text=text)

    if notification.kind == NotificationKind.LOTTERY_LOST:
        text = (
            f"{greeting}\n\nThank you for entering the draw. Unfortunately, you were not "
            "selected this time.\nKeep an eye on our socials for future events."
        )
        return f"{event} Draw Result", MessageBody(text=text)

    text = (
        f"{greeting}\n\nA spot has just opened up at {event}.\n"
        "Keep an eye on your inbox, you are next in line."
    )
    return f"A spot opened up at {event}", MessageBody(text=text)


class LoggingEmailSender:
    """Used when no SMTP server is configured."""

    async def send(self, to_address: str, subject: str, body: MessageBody) -> None:
        logger.info("email_mock_sent", to=to_address, subject=subject, body=body.text)


class SmtpEmailSender:
    def __init__(self, settings: Settings):
        self.host = settings.SMTP_HOST
        self.port = settings.SMTP_PORT
        self.username = settings.SMTP_USER
        self.password = settings.SMTP_PASSWORD
        self.from_address = settings.EMAIL_FROM

    def _build(self, to_address: str, subject: str, body: MessageBody) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to_address
        msg.attach(MIMEText(body.text, "plain"))
        if body.html:
            msg.attach(MIMEText(body.html, "html"))
        return msg

    def _deliver(self, msg: MIMEMultipart) -> None:
        if self.port == 465:
            with smtplib.SMTP_SSL(self.host, self.port) as server:
                server.login(self.username, self.password)
                server.send_message(msg)
            return

        with smtplib.SMTP(self.host, self.port) as server:
            server.starttls()
            if self.username:
                server.login(self.username, self.password)
            server.send_message(msg)

    async def send(self, to_address: str, subject: str, body: MessageBody) -> None:
        msg = self._build(to_address, subject, body)
        # smtplib blocks
        await asyncio.to_thread(self._deliver, msg)


def build_email_sender(settings: Optional[Settings] = None) -> EmailSender:
    settings = settings or get_settings()
    if settings.SMTP_HOST:
        return SmtpEmailSender(settings)
    return LoggingEmailSender()


class NotificationDispatcher:
    """
    Bounded in-process queue drained by a single worker task.
    submit() never blocks and never raises; a full queue drops the message.
    """

    def __init__(self, sender: Optional[EmailSender] = None, maxsize: Optional[int] = None):
        self.sender = sender or build_email_sender()
        self._queue: asyncio.Queue = asyncio.Queue(
            maxsize=maxsize if maxsize is not None else get_settings().NOTIFICATION_QUEUE_SIZE
        )
        self._worker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if not self.running:
            self._worker = asyncio.create_task(self._run())
            logger.info("notification_dispatcher_started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        await self.drain()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("notification_dispatcher_stopped")

    def submit(self, notification: Notification) -> None:
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            record_notification(notification.kind.value, "dropped")
            logger.warning(
                "notification_dropped",
                kind=notification.kind.value,
                email=notification.email,
            )

    def submit_many(self, notifications: Iterable[Notification]) -> None:
        for notification in notifications:
            self.submit(notification)

    async def drain(self) -> None:
        """Wait until everything submitted so far has been handled."""
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            notification = self._queue.get_nowait()
            try:
                await self._deliver(notification)
            finally:
                self._queue.task_done()

    async def _run(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self._deliver(notification)
            finally:
                self._queue.task_done()

    async def _deliver(self, notification: Notification) -> None:
        try:
            subject, body = render_message(notification)
            await self.sender.send(notification.email, subject, body)
        except Exception as exc:
            record_notification(notification.kind.value, "failed")
            logger.error(
                "notification_failed",
                kind=notification.kind.value,
                email=notification.email,
                error=str(exc),
            )
            return
        record_notification(notification.kind.value, "sent")
        logger.info("notification_sent", kind=notification.kind.value, email=notification.email)


_dispatcher: Optional[NotificationDispatcher] = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


def set_dispatcher(dispatcher: Optional[NotificationDispatcher]) -> None:
    global _dispatcher
    _dispatcher = dispatcher
