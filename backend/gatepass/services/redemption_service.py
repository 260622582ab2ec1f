"""
Gate-side check-in pipeline.

Stages run in a fixed order and stop at the first failure:

  1. signature        -> INVALID  (tampered or unknown)
  2. ticket lookup    -> INVALID  (not found)
  3. registration     -> INVALID  (registration missing)
  4. cascade revoke   -> INVALID  (originating guest-list code revoked)
  5. status gate      -> INVALID  (status-specific reason)
  6. already used     -> ALREADY_USED (with the first scan time)
  7. late cutoff      -> INVALID  (entry window closed, minutes late)
  8. consume          -> VALID

Stage 8 is a conditional UPDATE ... WHERE used = false inside the same
transaction. If two scans of one token race, exactly one UPDATE matches a
row; the other scan reports ALREADY_USED.

Results are values, never exceptions.
"""

import enum
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gatepass.core.clock import as_utc, utcnow
from gatepass.core.logging import get_logger
from gatepass.core.metrics import record_redemption
from gatepass.core.security import verify_admission_token
from gatepass.models.access_code import GuestListCode
from gatepass.models.registration import NON_ADMITTING_STATUSES, Registration, RegistrationStatus
from gatepass.models.ticket import Ticket
from gatepass.services.policy_service import load_policy

logger = get_logger(__name__)

_NON_ADMITTING = {status.value for status in NON_ADMITTING_STATUSES}

STATUS_REASONS = {
    RegistrationStatus.REVOKED.value: "Ticket revoked by admin",
    RegistrationStatus.EXPIRED.value: "Ticket expired",
    RegistrationStatus.PENDING_PAYMENT.value: "Payment not completed",
    RegistrationStatus.PENDING_DRAW.value: "Lucky draw entry has not been selected",
    RegistrationStatus.PENDING.value: "Registration awaiting approval",
    RegistrationStatus.DRAW_LOST.value: "Not selected in the lucky draw",
}


class RedemptionResult(str, enum.Enum):
    VALID = "VALID"
    ALREADY_USED = "ALREADY_USED"
    INVALID = "INVALID"


@dataclass(frozen=True)
class AttendeeCard:
    name: str
    email: str
    serial: Optional[str]
    type: str
    ticket_class: str
    channel: str
    plus_one: bool
    guest_list_label: Optional[str]
    status: str
    checked_in_at: Optional[datetime]


@dataclass(frozen=True)
class Redemption:
    result: RedemptionResult
    reason: str
    attendee: Optional[AttendeeCard] = None
    first_scan_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    minutes_late: Optional[int] = None

    def as_dict(self) -> dict:
        body = asdict(self)
        body["result"] = self.result.value
        return body


def _card(reg: Registration, ticket: Ticket, code: Optional[GuestListCode]) -> AttendeeCard:
    return AttendeeCard(
        name=reg.name,
        email=reg.email,
        serial=reg.serial,
        type=reg.channel_label,
        ticket_class=reg.ticket_class,
        channel=reg.channel,
        plus_one=bool(reg.plus_one),
        guest_list_label=code.label if code is not None else None,
        status=reg.status,
        checked_in_at=as_utc(ticket.used_at),
    )


def _finish(redemption: Redemption, **context) -> Redemption:
    record_redemption(redemption.result.value)
    logger.info(
        "redemption_result",
        result=redemption.result.value,
        reason=redemption.reason,
        **context,
    )
    return redemption


async def _load_code(db: AsyncSession, code_id: Optional[str]) -> Optional[GuestListCode]:
    if not code_id:
        return None
    return await db.get(GuestListCode, code_id)


async def redeem_token(db: AsyncSession, token: str, now: Optional[datetime] = None) -> Redemption:
    """Run a scanned token through the check-in pipeline."""
    now = now or utcnow()

    # 1. Signature
    verification = verify_admission_token((token or "").strip())
    if not verification.valid:
        return _finish(
            Redemption(RedemptionResult.INVALID, "Tampered or unknown QR code"),
            stage="signature",
            detail=verification.reason,
        )
    token = token.strip()

    # 2. Ticket
    result = await db.execute(select(Ticket).where(Ticket.token == token))
    ticket = result.scalar_one_or_none()
    if ticket is None or ticket.registration_id != verification.registration_id:
        return _finish(
            Redemption(RedemptionResult.INVALID, "QR code not found in system"),
            stage="lookup",
        )

    # 3. Registration
    reg = await db.get(Registration, ticket.registration_id)
    if reg is None:
        return _finish(
            Redemption(RedemptionResult.INVALID, "Registration not found"),
            stage="registration",
            ticket_id=ticket.id,
        )

    code = await _load_code(db, ticket.guest_code_id or reg.guest_code_id)
    card = _card(reg, ticket, code)

    # 4. Cascade from a revoked guest-list code
    if code is not None and code.revoked:
        return _finish(
            Redemption(RedemptionResult.INVALID, "Revoked by admin (guest list revoked)", attendee=card),
            stage="cascade",
            serial=reg.serial,
        )

    # 5. Status gate
    if reg.status in _NON_ADMITTING:
        reason = STATUS_REASONS.get(reg.status, f"Status: {reg.status}")
        return _finish(
            Redemption(RedemptionResult.INVALID, reason, attendee=card),
            stage="status",
            serial=reg.serial,
            status=reg.status,
        )

    # 6. Already used
    if ticket.used:
        return _finish(
            Redemption(
                RedemptionResult.ALREADY_USED,
                "Already scanned",
                attendee=card,
                first_scan_at=as_utc(ticket.used_at),
            ),
            stage="used",
            serial=reg.serial,
        )

    # 7. Late cutoff
    policy = await load_policy(db)
    if policy.event_start_at is not None:
        cutoff = policy.event_start_at + timedelta(minutes=policy.late_cutoff_mins)
        if now > cutoff:
            minutes_late = math.floor((now - policy.event_start_at).total_seconds() / 60)
            return _finish(
                Redemption(
                    RedemptionResult.INVALID,
                    f"Entry window closed, event started {minutes_late} min ago "
                    f"(cutoff: {policy.late_cutoff_mins} min)",
                    attendee=card,
                    minutes_late=minutes_late,
                ),
                stage="cutoff",
                serial=reg.serial,
            )

    # 8. Consume; the WHERE clause is the in-transaction re-check
    consumed = await db.execute(
        update(Ticket)
        .where(Ticket.id == ticket.id, Ticket.used.is_(False))
        .values(used=True, used_at=now)
        .execution_options(synchronize_session=False)
    )
    if consumed.rowcount != 1:
        fresh = await db.execute(select(Ticket.used_at).where(Ticket.id == ticket.id))
        first_scan_at = as_utc(fresh.scalar_one_or_none())
        return _finish(
            Redemption(
                RedemptionResult.ALREADY_USED,
                "Already scanned",
                attendee=card,
                first_scan_at=first_scan_at,
            ),
            stage="consume",
            serial=reg.serial,
        )

    reg.status = RegistrationStatus.CHECKED_IN.value
    await db.flush()

    return _finish(
        Redemption(
            RedemptionResult.VALID,
            "Welcome",
            attendee=_checked_in_card(card, now),
            checked_in_at=now,
        ),
        stage="consume",
        serial=reg.serial,
    )


def _checked_in_card(card: AttendeeCard, now: datetime) -> AttendeeCard:
    values = asdict(card)
    values.update(status=RegistrationStatus.CHECKED_IN.value, checked_in_at=now)
    return AttendeeCard(**values)
