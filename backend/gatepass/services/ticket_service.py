"""
Ticket materialization and lookups.

issue_ticket() is the single path from `approved` to `confirmed`: it assigns
the serial, signs the token and inserts the ticket in the caller's
transaction. Whoever calls it owns that transaction.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gatepass.core.clock import utcnow
from gatepass.core.errors import InvalidTransition, RecordNotFound, RejectionCode
from gatepass.core.logging import get_logger
from gatepass.core.security import sign_admission_token
from gatepass.models.access_code import GuestListCode
from gatepass.models.registration import Registration, RegistrationStatus
from gatepass.models.ticket import Ticket
from gatepass.services.audit_service import write_audit
from gatepass.services.notification_service import Notification, NotificationKind, queue_notification
from gatepass.services.policy_service import PolicySettings, load_policy
from gatepass.services.serial_service import next_serial

logger = get_logger(__name__)

# Statuses whose tickets the gate will accept
SCANNABLE_STATUSES = (
    RegistrationStatus.APPROVED.value,
    RegistrationStatus.CONFIRMED.value,
    RegistrationStatus.CHECKED_IN.value,
)


@dataclass
class IssuedTicket:
    registration: Registration
    ticket: Optional[Ticket]


def _admission_notification(reg: Registration, ticket: Ticket, policy: PolicySettings) -> Notification:
    return Notification(
        kind=NotificationKind.ADMISSION_CONFIRMED,
        email=reg.email,
        name=reg.name,
        event_name=policy.event_name,
        serial=reg.serial,
        ticket_class=reg.ticket_class,
        plus_one=reg.plus_one,
        token=ticket.token,
    )


async def get_ticket(db: AsyncSession, registration_id: str) -> Optional[Ticket]:
    result = await db.execute(select(Ticket).where(Ticket.registration_id == registration_id))
    return result.scalar_one_or_none()


async def issue_ticket(
    db: AsyncSession,
    reg: Registration,
    now: Optional[datetime] = None,
    policy: Optional[PolicySettings] = None,
) -> Ticket:
    """Materialize the ticket for an approved registration and confirm it."""
    if reg.status != RegistrationStatus.APPROVED.value:
        raise InvalidTransition(f"Cannot issue a ticket for a registration in status '{reg.status}'")
    if await get_ticket(db, reg.id) is not None:
        raise InvalidTransition("Registration already has a ticket")

    now = now or utcnow()
    policy = policy or await load_policy(db)

    if not reg.serial:
        reg.serial = await next_serial(db, reg.ticket_class)

    ticket = Ticket(
        id=str(uuid.uuid4()),
        registration_id=reg.id,
        token=sign_admission_token(reg.id, issued_at=now),
        used=False,
        generated_at=now,
        guest_code_id=reg.guest_code_id,
    )
    db.add(ticket)
    reg.status = RegistrationStatus.CONFIRMED.value
    await db.flush()

    queue_notification(db, _admission_notification(reg, ticket, policy))
    logger.info("ticket_issued", registration_id=reg.id, serial=reg.serial, channel=reg.channel)
    return ticket


async def reissue_ticket(
    db: AsyncSession,
    registration_id: str,
    actor: str,
    now: Optional[datetime] = None,
) -> Ticket:
    """
    Replace the token of an unused ticket. The old token stops resolving;
    the serial is kept.
    """
    reg = await db.get(Registration, registration_id)
    if reg is None:
        raise RecordNotFound("Registration not found")
    if reg.status != RegistrationStatus.CONFIRMED.value:
        raise InvalidTransition(f"Only confirmed registrations can be reissued (status '{reg.status}')")

    ticket = await get_ticket(db, reg.id)
    if ticket is None:
        raise InvalidTransition("Registration has no ticket to reissue")
    if ticket.used:
        raise InvalidTransition("Ticket has already been used")

    now = now or utcnow()
    token = sign_admission_token(reg.id, issued_at=now)
    if token == ticket.token:
        # Same millisecond as the previous issue
        token = sign_admission_token(reg.id, issued_at=now + timedelta(milliseconds=1))

    ticket.token = token
    ticket.generated_at = now
    await db.flush()

    policy = await load_policy(db)
    queue_notification(db, _admission_notification(reg, ticket, policy))
    await write_audit(db, actor, "reissue", target_id=reg.id, details={"serial": reg.serial})
    logger.info("ticket_reissued", registration_id=reg.id, actor=actor)
    return ticket


async def ticket_for_registration(db: AsyncSession, registration_id: str) -> IssuedTicket:
    reg = await db.get(Registration, registration_id)
    if reg is None:
        raise RecordNotFound("Registration not found")
    return IssuedTicket(registration=reg, ticket=await get_ticket(db, reg.id))


async def tickets_for_order(db: AsyncSession, order_id: str) -> List[IssuedTicket]:
    result = await db.execute(
        select(Registration, Ticket)
        .outerjoin(Ticket, Ticket.registration_id == Registration.id)
        .where(Registration.order_id == order_id)
        .order_by(Registration.created_at, Registration.id)
    )
    rows = result.all()
    if not rows:
        raise RecordNotFound("Order not found", code=RejectionCode.ORDER_NOT_FOUND)
    return [IssuedTicket(registration=reg, ticket=ticket) for reg, ticket in rows]


async def scanner_manifest(db: AsyncSession) -> List[dict]:
    """Tokens a gate device may cache for offline checks."""
    result = await db.execute(
        select(Registration, Ticket, GuestListCode.revoked)
        .join(Ticket, Ticket.registration_id == Registration.id)
        .outerjoin(GuestListCode, GuestListCode.id == Ticket.guest_code_id)
        .where(Registration.status.in_(SCANNABLE_STATUSES))
        .order_by(Registration.serial)
    )

    manifest = []
    for reg, ticket, code_revoked in result.all():
        if code_revoked:
            continue
        manifest.append({
            "token": ticket.token,
            "serial": reg.serial,
            "name": reg.name,
            "ticket_class": reg.ticket_class,
            "type": reg.channel_label,
            "plus_one": reg.plus_one,
            "status": reg.status,
            "used": ticket.used,
            "used_at": ticket.used_at,
        })
    return manifest
