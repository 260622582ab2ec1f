"""
Allocation engine: turns a registration request into a registration row.

CONCURRENCY STRATEGY: Count-then-insert inside one serialized transaction
==========================================================================

Problem:
  Two requests both read "1 free slot left" and both insert.
  Result: the channel cap is exceeded.

Solution:
  Every function here runs inside run_in_transaction(), so the capacity
  COUNT, the decision and the INSERT share one transaction that the store
  serializes against other writers (see gatepass.db.session). The loser of a
  race either waits for the write lock (SQLite) or is replayed from scratch
  with fresh counts (PostgreSQL SERIALIZABLE).

  Access codes are consumed by a conditional UPDATE in that same transaction,
  and the unique key on email is the final guard against duplicate identities.

Outcomes:
  Business rejections are raised internally as AllocationError subclasses and
  converted to a Rejection value before leaving this module. Nothing is
  written when a request is rejected.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gatepass.core.clock import as_utc, utcnow
from gatepass.core.errors import (
    AllocationError,
    CapacityExhausted,
    ChannelClosed,
    DuplicateIdentity,
    InvalidRequest,
    InvalidTransition,
    RecordNotFound,
    Rejection,
    RejectionCode,
    ReservationExpired,
)
from gatepass.core.logging import get_logger
from gatepass.core.metrics import allocation_latency, record_allocation
from gatepass.models.registration import (
    ADMITTED_STATUSES,
    FREE_POOL,
    RELEASED_STATUSES,
    Channel,
    Registration,
    RegistrationStatus,
    TicketClass,
)
from gatepass.models.ticket import Ticket
from gatepass.services import access_code_service
from gatepass.services.audit_service import write_audit
from gatepass.services.notification_service import discard_pending_notifications
from gatepass.services.policy_service import PolicySettings, load_policy
from gatepass.services.ticket_service import issue_ticket

logger = get_logger(__name__)

# Admin revoke is refused from these states
NOT_REVOCABLE = (
    RegistrationStatus.REVOKED.value,
    RegistrationStatus.EXPIRED.value,
    RegistrationStatus.DRAW_LOST.value,
    RegistrationStatus.CHECKED_IN.value,
)

# Admin approve is accepted from these states
APPROVABLE = (
    RegistrationStatus.PENDING.value,
    RegistrationStatus.PENDING_DRAW.value,
    RegistrationStatus.APPROVED.value,
)


@dataclass(frozen=True)
class Registrant:
    email: str
    name: str = ""
    phone: str = ""

    @classmethod
    def clean(cls, email: Optional[str], name: Optional[str] = "", phone: Optional[str] = "") -> "Registrant":
        normalized = (email or "").strip().lower()
        if not normalized or "@" not in normalized:
            raise InvalidRequest("A valid email is required")
        return cls(email=normalized, name=(name or "").strip(), phone=(phone or "").strip())


@dataclass
class AllocationOutcome:
    registration: Optional[Registration] = None
    ticket: Optional[Ticket] = None
    rejection: Optional[Rejection] = None

    @property
    def ok(self) -> bool:
        return self.rejection is None

    @property
    def status(self) -> Optional[str]:
        return self.registration.status if self.registration is not None else None


@dataclass
class CheckoutOutcome:
    order_id: Optional[str] = None
    registrations: List[Registration] = field(default_factory=list)
    tickets: List[Ticket] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    timeout_mins: Optional[int] = None
    rejection: Optional[Rejection] = None

    @property
    def ok(self) -> bool:
        return self.rejection is None


async def _reject(db: AsyncSession, exc: AllocationError, channel: str) -> Rejection:
    # Nothing of a rejected request may reach the commit
    await db.rollback()
    discard_pending_notifications(db)
    record_allocation(channel, exc.code.value)
    logger.info("allocation_rejected", channel=channel, code=exc.code.value, reason=exc.message)
    return exc.to_rejection()


# ---------------------------------------------------------------------------
# Capacity reads
# ---------------------------------------------------------------------------

def _values(statuses: Iterable) -> List[str]:
    return [getattr(s, "value", s) for s in statuses]


async def count_registrations(
    db: AsyncSession,
    channels: Sequence[Channel],
    statuses: Optional[Iterable] = None,
    exclude_statuses: Optional[Iterable] = None,
) -> int:
    stmt = select(func.count(Registration.id)).where(Registration.channel.in_(_values(channels)))
    if statuses is not None:
        stmt = stmt.where(Registration.status.in_(_values(statuses)))
    if exclude_statuses is not None:
        stmt = stmt.where(Registration.status.not_in(_values(exclude_statuses)))
    result = await db.execute(stmt)
    return result.scalar_one()


async def free_pool_held(db: AsyncSession) -> int:
    """Rows holding a free-pool slot, including lottery entries still waiting."""
    return await count_registrations(db, FREE_POOL, exclude_statuses=RELEASED_STATUSES)


async def free_pool_admitted(db: AsyncSession) -> int:
    return await count_registrations(db, FREE_POOL, statuses=ADMITTED_STATUSES)


async def paid_held(db: AsyncSession) -> int:
    return await count_registrations(db, (Channel.PAID,), exclude_statuses=RELEASED_STATUSES)


async def _ensure_identity_free(db: AsyncSession, email: str) -> None:
    result = await db.execute(select(Registration.status).where(Registration.email == email))
    existing = result.scalar_one_or_none()
    if existing is not None:
        raise DuplicateIdentity(
            f"{email} is already registered",
            existing_status=existing,
        )


def _new_registration(
    registrant: Registrant,
    channel: Channel,
    ticket_class: TicketClass,
    status: RegistrationStatus,
    **extra,
) -> Registration:
    return Registration(
        id=str(uuid.uuid4()),
        email=registrant.email,
        name=registrant.name,
        phone=registrant.phone,
        channel=channel.value,
        ticket_class=ticket_class.value,
        status=status.value,
        **extra,
    )


# ---------------------------------------------------------------------------
# Free pool: FCFS threshold, then lottery
# ---------------------------------------------------------------------------

async def _allocate_free(db: AsyncSession, registrant: Registrant, now: datetime) -> AllocationOutcome:
    policy = await load_policy(db)
    if not policy.free_enabled:
        raise ChannelClosed("Free registration is closed", code=RejectionCode.FREE_CLOSED)

    await _ensure_identity_free(db, registrant.email)

    held = await free_pool_held(db)
    if held >= policy.total_free_cap:
        raise CapacityExhausted("Event is fully booked", code=RejectionCode.FULL)

    admitted = await free_pool_admitted(db)
    if admitted < policy.fcfs_limit:
        reg = _new_registration(registrant, Channel.FCFS, TicketClass.FREE, RegistrationStatus.APPROVED)
        db.add(reg)
        await db.flush()
        ticket = await issue_ticket(db, reg, now=now, policy=policy)
        logger.info("registration_created", registration_id=reg.id, channel=reg.channel, status=reg.status)
        return AllocationOutcome(registration=reg, ticket=ticket)

    if not (policy.draw_enabled and policy.draw_accepting) or policy.draw_has_run:
        raise ChannelClosed("Lucky draw is closed", code=RejectionCode.DRAW_CLOSED)

    reg = _new_registration(
        registrant,
        Channel.LOTTERY,
        TicketClass.DRAW,
        RegistrationStatus.PENDING_DRAW,
        draw_entry=True,
    )
    db.add(reg)
    await db.flush()
    logger.info("registration_created", registration_id=reg.id, channel=reg.channel, status=reg.status)
    return AllocationOutcome(registration=reg)


async def register_free(
    db: AsyncSession,
    email: str,
    name: str = "",
    phone: str = "",
    now: Optional[datetime] = None,
) -> AllocationOutcome:
    """
    Free registration: admitted directly while the FCFS threshold holds,
    otherwise entered into the lottery, otherwise rejected.
    """
    now = now or utcnow()
    with allocation_latency.time():
        try:
            registrant = Registrant.clean(email, name, phone)
            outcome = await _allocate_free(db, registrant, now)
        except AllocationError as exc:
            return AllocationOutcome(rejection=await _reject(db, exc, Channel.FCFS.value))

    record_allocation(outcome.registration.channel, outcome.registration.status)
    return outcome


# ---------------------------------------------------------------------------
# Priced checkout (paid and VIP invite)
# ---------------------------------------------------------------------------

async def _allocate_checkout(
    db: AsyncSession,
    channel: Channel,
    attendees: Sequence[Registrant],
    now: datetime,
) -> CheckoutOutcome:
    policy = await load_policy(db)

    if channel == Channel.PAID:
        if not policy.paid_enabled:
            raise ChannelClosed("Paid registration is closed", code=RejectionCode.PAID_CLOSED)
        ticket_class = TicketClass.PAID
    elif channel == Channel.INVITE:
        if not policy.vip_enabled:
            raise ChannelClosed("VIP registration is closed", code=RejectionCode.VIP_CLOSED)
        ticket_class = TicketClass.VIP
    else:
        raise InvalidRequest(f"Channel '{channel.value}' has no checkout")

    if not attendees:
        raise InvalidRequest("At least one attendee is required")
    if len(attendees) > policy.max_paid_per_person:
        raise InvalidRequest(
            f"Max {policy.max_paid_per_person} tickets per purchase",
            code=RejectionCode.TOO_MANY_TICKETS,
        )
    emails = [a.email for a in attendees]
    if len(set(emails)) != len(emails):
        raise InvalidRequest("Each ticket must have a unique email address")

    if channel == Channel.PAID:
        held = await paid_held(db)
        if held + len(attendees) > policy.total_paid_cap:
            raise CapacityExhausted("Paid tickets sold out", code=RejectionCode.PAID_FULL)

    for email in emails:
        await _ensure_identity_free(db, email)

    order_id = str(uuid.uuid4())
    expires_at = now + timedelta(minutes=policy.checkout_timeout_mins)
    registrations = [
        _new_registration(
            attendee,
            channel,
            ticket_class,
            RegistrationStatus.PENDING_PAYMENT,
            order_id=order_id,
            payment_expires_at=expires_at,
        )
        for attendee in attendees
    ]
    db.add_all(registrations)
    await db.flush()

    logger.info(
        "checkout_started",
        order_id=order_id,
        channel=channel.value,
        tickets=len(registrations),
        expires_at=expires_at.isoformat(),
    )
    return CheckoutOutcome(
        order_id=order_id,
        registrations=registrations,
        expires_at=expires_at,
        timeout_mins=policy.checkout_timeout_mins,
    )


async def start_checkout(
    db: AsyncSession,
    attendees: Sequence[dict],
    channel: Channel = Channel.PAID,
    now: Optional[datetime] = None,
) -> CheckoutOutcome:
    """
    Reserve slots for a priced order. Every attendee gets a pending_payment
    row that expires after `checkout_timeout_mins`.
    """
    now = now or utcnow()
    channel = Channel(channel)
    with allocation_latency.time():
        try:
            cleaned = [
                Registrant.clean(a.get("email"), a.get("name", ""), a.get("phone", ""))
                for a in attendees
            ]
            outcome = await _allocate_checkout(db, channel, cleaned, now)
        except AllocationError as exc:
            return CheckoutOutcome(rejection=await _reject(db, exc, channel.value))

    record_allocation(channel.value, RegistrationStatus.PENDING_PAYMENT.value)
    return outcome


async def confirm_payment(
    db: AsyncSession,
    order_id: str,
    now: Optional[datetime] = None,
) -> CheckoutOutcome:
    """
    External payment signal for an order.
    Inside the window: every reservation gets its ticket.
    Past the window: the whole order expires and TIMEOUT is returned.
    """
    now = now or utcnow()
    result = await db.execute(
        select(Registration)
        .where(Registration.order_id == order_id)
        .order_by(Registration.created_at, Registration.id)
    )
    rows = list(result.scalars().all())
    pending = [r for r in rows if r.status == RegistrationStatus.PENDING_PAYMENT.value]

    if not pending:
        if any(r.status == RegistrationStatus.EXPIRED.value for r in rows):
            exc = ReservationExpired("Payment window expired, seats released", code=RejectionCode.TIMEOUT)
        else:
            exc = RecordNotFound("Order not found or already processed", code=RejectionCode.ORDER_NOT_FOUND)
        return CheckoutOutcome(order_id=order_id, rejection=await _reject(db, exc, "payment"))

    if any(as_utc(r.payment_expires_at) < now for r in pending):
        for reg in pending:
            reg.status = RegistrationStatus.EXPIRED.value
        await db.flush()
        record_allocation("payment", RejectionCode.TIMEOUT.value)
        logger.info("payment_window_expired", order_id=order_id, released=len(pending))
        # The expiry is committed; only the confirmation is rejected
        return CheckoutOutcome(
            order_id=order_id,
            rejection=ReservationExpired(
                "Payment window expired, seats released",
                code=RejectionCode.TIMEOUT,
            ).to_rejection(),
        )

    policy = await load_policy(db)
    tickets = []
    for reg in pending:
        reg.status = RegistrationStatus.APPROVED.value
        tickets.append(await issue_ticket(db, reg, now=now, policy=policy))

    record_allocation("payment", RegistrationStatus.CONFIRMED.value)
    logger.info("payment_confirmed", order_id=order_id, tickets=len(tickets))
    return CheckoutOutcome(order_id=order_id, registrations=pending, tickets=tickets)


# ---------------------------------------------------------------------------
# Invite channels: guest list and volunteers
# ---------------------------------------------------------------------------

async def _allocate_guest(
    db: AsyncSession,
    code: str,
    registrant: Registrant,
    plus_one: bool,
    now: datetime,
) -> AllocationOutcome:
    policy = await load_policy(db)
    if not policy.vip_enabled:
        raise ChannelClosed("Special guest registration is closed", code=RejectionCode.VIP_CLOSED)
    if not registrant.name:
        raise InvalidRequest("Name and email are required")

    guest_code = await access_code_service.check_guest_code(db, code, now)
    await _ensure_identity_free(db, registrant.email)

    wants_plus_one = bool(plus_one) and policy.plus_one_vip_enabled and guest_code.plus_one_allowed
    status = RegistrationStatus.APPROVED if guest_code.auto_approve else RegistrationStatus.PENDING

    await access_code_service.consume_guest_code(db, guest_code)
    reg = _new_registration(
        registrant,
        Channel.INVITE,
        TicketClass.GUEST,
        status,
        guest_code_id=guest_code.id,
        plus_one=wants_plus_one,
    )
    db.add(reg)
    await db.flush()

    ticket = None
    if status == RegistrationStatus.APPROVED:
        ticket = await issue_ticket(db, reg, now=now, policy=policy)

    logger.info(
        "registration_created",
        registration_id=reg.id,
        channel=reg.channel,
        status=reg.status,
        guest_code=guest_code.code,
    )
    return AllocationOutcome(registration=reg, ticket=ticket)


async def register_guest(
    db: AsyncSession,
    code: str,
    email: str,
    name: str = "",
    phone: str = "",
    plus_one: bool = False,
    now: Optional[datetime] = None,
) -> AllocationOutcome:
    """Register through a guest-list code; auto-approve codes issue a ticket at once."""
    now = now or utcnow()
    with allocation_latency.time():
        try:
            registrant = Registrant.clean(email, name, phone)
            outcome = await _allocate_guest(db, code, registrant, plus_one, now)
        except AllocationError as exc:
            return AllocationOutcome(rejection=await _reject(db, exc, Channel.INVITE.value))

    record_allocation(Channel.INVITE.value, outcome.registration.status)
    return outcome


async def _allocate_volunteer(
    db: AsyncSession,
    code: str,
    registrant: Registrant,
    plus_one: bool,
    now: datetime,
) -> AllocationOutcome:
    policy = await load_policy(db)
    if not policy.volunteer_enabled:
        raise ChannelClosed("Volunteer registration is closed", code=RejectionCode.VOL_CLOSED)

    volunteer_code = await access_code_service.check_volunteer_code(db, code, registrant.email, now)
    await _ensure_identity_free(db, registrant.email)

    await access_code_service.consume_volunteer_code(db, volunteer_code)
    reg = _new_registration(
        registrant,
        Channel.VOLUNTEER,
        TicketClass.VOLUNTEER,
        RegistrationStatus.APPROVED,
        volunteer_code_id=volunteer_code.id,
        plus_one=bool(plus_one) and policy.plus_one_volunteer_enabled,
    )
    db.add(reg)
    await db.flush()
    ticket = await issue_ticket(db, reg, now=now, policy=policy)

    logger.info("registration_created", registration_id=reg.id, channel=reg.channel, status=reg.status)
    return AllocationOutcome(registration=reg, ticket=ticket)


async def register_volunteer(
    db: AsyncSession,
    code: str,
    email: str,
    name: str = "",
    phone: str = "",
    plus_one: bool = False,
    now: Optional[datetime] = None,
) -> AllocationOutcome:
    now = now or utcnow()
    with allocation_latency.time():
        try:
            registrant = Registrant.clean(email, name, phone)
            outcome = await _allocate_volunteer(db, code, registrant, plus_one, now)
        except AllocationError as exc:
            return AllocationOutcome(rejection=await _reject(db, exc, Channel.VOLUNTEER.value))

    record_allocation(Channel.VOLUNTEER.value, outcome.registration.status)
    return outcome


# ---------------------------------------------------------------------------
# Administrative transitions
# ---------------------------------------------------------------------------

async def approve_registration(
    db: AsyncSession,
    registration_id: str,
    actor: str,
    now: Optional[datetime] = None,
    policy: Optional[PolicySettings] = None,
) -> AllocationOutcome:
    """
    Route a waiting registration through approved -> confirmed.
    Used for manual guest approvals, admin overrides and draw winners.
    """
    now = now or utcnow()
    try:
        reg = await db.get(Registration, registration_id)
        if reg is None:
            raise RecordNotFound("Registration not found")
        if reg.status not in APPROVABLE:
            raise InvalidTransition(f"Cannot approve a registration in status '{reg.status}'")

        previous = reg.status
        reg.status = RegistrationStatus.APPROVED.value
        ticket = await issue_ticket(db, reg, now=now, policy=policy)
        await write_audit(db, actor, "approve", target_id=reg.id, details={"previous_status": previous})
    except AllocationError as exc:
        return AllocationOutcome(rejection=await _reject(db, exc, "admin"))

    logger.info("registration_approved", registration_id=reg.id, previous_status=previous, actor=actor)
    return AllocationOutcome(registration=reg, ticket=ticket)


async def revoke_registration(
    db: AsyncSession,
    registration_id: str,
    actor: str,
    reason: str = "",
) -> AllocationOutcome:
    """The ticket row stays; the revoked status makes the gate refuse it."""
    try:
        reg = await db.get(Registration, registration_id)
        if reg is None:
            raise RecordNotFound("Registration not found")
        if reg.status in NOT_REVOCABLE:
            raise InvalidTransition(f"Cannot revoke a registration in status '{reg.status}'")

        previous = reg.status
        reg.status = RegistrationStatus.REVOKED.value
        await db.flush()
        await write_audit(
            db,
            actor,
            "revoke",
            target_id=reg.id,
            details={"previous_status": previous, "reason": reason},
        )
    except AllocationError as exc:
        return AllocationOutcome(rejection=await _reject(db, exc, "admin"))

    logger.info("registration_revoked", registration_id=reg.id, previous_status=previous, actor=actor)
    return AllocationOutcome(registration=reg)
