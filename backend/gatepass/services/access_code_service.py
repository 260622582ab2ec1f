"""
Guest-list and volunteer invitation codes.

Validation (`check_*`) and consumption (`consume_*`) are separate so the
allocation engine can validate everything before its first write, then
consume the code in the same transaction that inserts the registration.
Consumption is a conditional UPDATE; the row count decides who got the slot.
"""

import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gatepass.core.clock import as_utc, utcnow
from gatepass.core.errors import InvalidAccessCode, InvalidRequest, RecordNotFound, RejectionCode
from gatepass.core.logging import get_logger
from gatepass.models.access_code import GuestListCode, VolunteerCode
from gatepass.services.audit_service import write_audit

logger = get_logger(__name__)

# No 0/O or 1/I
GUEST_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
GUEST_CODE_LENGTH = 8
CODE_PATTERN = re.compile(r"^[A-Z0-9]{4,16}$")
EDITABLE_GUEST_FIELDS = {"label", "max_registrations", "plus_one_allowed", "auto_approve", "expires_at"}


@dataclass(frozen=True)
class GuestCodePreview:
    code: str
    label: str
    slots_left: int
    plus_one_allowed: bool
    auto_approve: bool


def generate_guest_code() -> str:
    return "".join(secrets.choice(GUEST_CODE_ALPHABET) for _ in range(GUEST_CODE_LENGTH))


def generate_volunteer_code() -> str:
    return uuid.uuid4().hex[:12].upper()


def normalize_code(code: Optional[str]) -> str:
    normalized = (code or "").strip().upper()
    if not CODE_PATTERN.match(normalized):
        raise InvalidAccessCode("Invalid code format", code=RejectionCode.INVALID)
    return normalized


def _is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    return expires_at is not None and as_utc(expires_at) < now


# ---------------------------------------------------------------------------
# Guest-list codes
# ---------------------------------------------------------------------------

async def check_guest_code(db: AsyncSession, code: str, now: Optional[datetime] = None) -> GuestListCode:
    """Validate a guest-list code without consuming it."""
    now = now or utcnow()
    normalized = normalize_code(code)

    result = await db.execute(select(GuestListCode).where(GuestListCode.code == normalized))
    row = result.scalar_one_or_none()
    if row is None:
        raise InvalidAccessCode("Guest code not found", code=RejectionCode.INVALID)
    if row.revoked:
        raise InvalidAccessCode("This invite has been revoked", code=RejectionCode.REVOKED)
    if _is_expired(row.expires_at, now):
        raise InvalidAccessCode("This invite has expired", code=RejectionCode.EXPIRED)
    if row.used_count >= row.max_registrations:
        raise InvalidAccessCode("This invite has no slots left", code=RejectionCode.CODE_FULL)
    return row


async def consume_guest_code(db: AsyncSession, row: GuestListCode) -> None:
    """Take one slot from the code, or fail with CODE_FULL if none is left."""
    result = await db.execute(
        update(GuestListCode)
        .where(
            GuestListCode.id == row.id,
            GuestListCode.revoked.is_(False),
            GuestListCode.used_count < GuestListCode.max_registrations,
        )
        .values(used_count=GuestListCode.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidAccessCode("This invite has no slots left", code=RejectionCode.CODE_FULL)


async def preview_guest_code(db: AsyncSession, code: str):
    """Returns a GuestCodePreview, or a Rejection explaining why the code is unusable."""
    try:
        row = await check_guest_code(db, code)
    except InvalidAccessCode as exc:
        return exc.to_rejection()
    return GuestCodePreview(
        code=row.code,
        label=row.label,
        slots_left=row.slots_left,
        plus_one_allowed=row.plus_one_allowed,
        auto_approve=row.auto_approve,
    )


async def create_guest_code(
    db: AsyncSession,
    label: str,
    actor: str,
    max_registrations: int = 10,
    plus_one_allowed: bool = False,
    auto_approve: bool = True,
    expires_at: Optional[datetime] = None,
    code: Optional[str] = None,
) -> GuestListCode:
    if not label or not label.strip():
        raise InvalidRequest("label is required")
    if max_registrations < 1:
        raise InvalidRequest("max_registrations must be at least 1")

    if code:
        normalized = normalize_code(code)
        taken = await db.execute(select(GuestListCode.id).where(GuestListCode.code == normalized))
        if taken.scalar_one_or_none() is not None:
            raise InvalidRequest(f"Code {normalized} already exists")
    else:
        normalized = generate_guest_code()
        while (
            await db.execute(select(GuestListCode.id).where(GuestListCode.code == normalized))
        ).scalar_one_or_none() is not None:
            normalized = generate_guest_code()

    row = GuestListCode(
        id=str(uuid.uuid4()),
        code=normalized,
        label=label.strip(),
        created_by=actor,
        max_registrations=max_registrations,
        used_count=0,
        plus_one_allowed=plus_one_allowed,
        auto_approve=auto_approve,
        expires_at=as_utc(expires_at),
        revoked=False,
    )
    db.add(row)
    await db.flush()

    await write_audit(db, actor, "guest_code_create", target_id=row.id, details={"code": row.code})
    logger.info("guest_code_created", code=row.code, max_registrations=max_registrations)
    return row


async def _get_guest_code(db: AsyncSession, code_id: str) -> GuestListCode:
    row = await db.get(GuestListCode, code_id)
    if row is None:
        raise RecordNotFound("Guest code not found")
    return row


async def update_guest_code(
    db: AsyncSession,
    code_id: str,
    changes: Dict[str, Any],
    actor: str,
) -> GuestListCode:
    unknown = set(changes) - EDITABLE_GUEST_FIELDS
    if unknown:
        raise InvalidRequest(f"Cannot edit: {', '.join(sorted(unknown))}")

    # A null clears expires_at; for every other field it means "unchanged"
    changes = {k: v for k, v in changes.items() if v is not None or k == "expires_at"}

    row = await _get_guest_code(db, code_id)
    if "max_registrations" in changes and changes["max_registrations"] < max(1, row.used_count):
        raise InvalidRequest("max_registrations cannot drop below the number of slots already used")
    if "label" in changes and not (changes["label"] or "").strip():
        raise InvalidRequest("label is required")

    for field, value in changes.items():
        setattr(row, field, as_utc(value) if field == "expires_at" else value)
    await db.flush()

    await write_audit(db, actor, "guest_code_update", target_id=row.id, details=changes)
    return row


async def revoke_guest_code(db: AsyncSession, code_id: str, actor: str) -> GuestListCode:
    """Tickets issued under the code stop scanning from now on."""
    row = await _get_guest_code(db, code_id)
    row.revoked = True
    await db.flush()

    await write_audit(db, actor, "guest_code_revoke", target_id=row.id, details={"code": row.code})
    logger.info("guest_code_revoked", code=row.code, used=row.used_count)
    return row


async def list_guest_codes(db: AsyncSession) -> List[GuestListCode]:
    result = await db.execute(select(GuestListCode).order_by(GuestListCode.created_at.desc()))
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Volunteer codes
# ---------------------------------------------------------------------------

async def check_volunteer_code(
    db: AsyncSession,
    code: str,
    email: str,
    now: Optional[datetime] = None,
) -> VolunteerCode:
    now = now or utcnow()
    normalized = normalize_code(code)

    result = await db.execute(select(VolunteerCode).where(VolunteerCode.code == normalized))
    row = result.scalar_one_or_none()
    if row is None:
        raise InvalidAccessCode("Volunteer code not found", code=RejectionCode.INVALID)
    if row.revoked:
        raise InvalidAccessCode("This volunteer code has been revoked", code=RejectionCode.REVOKED)
    if _is_expired(row.expires_at, now):
        raise InvalidAccessCode("This volunteer code has expired", code=RejectionCode.EXPIRED)
    if row.used:
        raise InvalidAccessCode("This volunteer code has already been used", code=RejectionCode.CODE_USED)
    if row.linked_email.lower() != email.strip().lower():
        raise InvalidAccessCode(
            "This code is linked to a different email",
            code=RejectionCode.EMAIL_MISMATCH,
        )
    return row


async def consume_volunteer_code(db: AsyncSession, row: VolunteerCode) -> None:
    result = await db.execute(
        update(VolunteerCode)
        .where(VolunteerCode.id == row.id, VolunteerCode.used.is_(False), VolunteerCode.revoked.is_(False))
        .values(used=True)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidAccessCode("This volunteer code has already been used", code=RejectionCode.CODE_USED)


async def create_volunteer_code(
    db: AsyncSession,
    email: str,
    actor: str,
    expires_at: Optional[datetime] = None,
) -> VolunteerCode:
    email = (email or "").strip().lower()
    if not email:
        raise InvalidRequest("email is required")

    code = generate_volunteer_code()
    while (
        await db.execute(select(VolunteerCode.id).where(VolunteerCode.code == code))
    ).scalar_one_or_none() is not None:
        code = generate_volunteer_code()

    row = VolunteerCode(
        id=str(uuid.uuid4()),
        code=code,
        linked_email=email,
        created_by=actor,
        expires_at=as_utc(expires_at),
        revoked=False,
        used=False,
    )
    db.add(row)
    await db.flush()

    await write_audit(db, actor, "volunteer_code_create", target_id=row.id, details={"email": email})
    logger.info("volunteer_code_created", code=row.code)
    return row


async def revoke_volunteer_code(db: AsyncSession, code_id: str, actor: str) -> VolunteerCode:
    row = await db.get(VolunteerCode, code_id)
    if row is None:
        raise RecordNotFound("Volunteer code not found")
    row.revoked = True
    await db.flush()

    await write_audit(db, actor, "volunteer_code_revoke", target_id=row.id, details={"code": row.code})
    return row


async def list_volunteer_codes(db: AsyncSession) -> List[VolunteerCode]:
    result = await db.execute(select(VolunteerCode).order_by(VolunteerCode.created_at.desc()))
    return list(result.scalars().all())
