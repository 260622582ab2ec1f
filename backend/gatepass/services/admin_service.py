"""
Read-only admin views: occupancy per channel, registration listing, export.
"""

from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from gatepass.core.clock import as_utc
from gatepass.models.registration import (
    ADMITTED_STATUSES,
    FREE_POOL,
    RELEASED_STATUSES,
    Channel,
    Registration,
    RegistrationStatus,
)
from gatepass.models.ticket import Ticket
from gatepass.services.policy_service import load_policy


async def _status_counts(db: AsyncSession) -> Dict[Tuple[str, str], int]:
    result = await db.execute(
        select(Registration.channel, Registration.status, func.count(Registration.id))
        .group_by(Registration.channel, Registration.status)
    )
    return {(channel, status): count for channel, status, count in result.all()}


def _sum(counts: Dict[Tuple[str, str], int], channels, statuses=None, exclude=None) -> int:
    channel_values = {c.value for c in channels}
    status_values = {s.value for s in statuses} if statuses is not None else None
    excluded = {s.value for s in exclude} if exclude is not None else set()
    total = 0
    for (channel, status), count in counts.items():
        if channel not in channel_values or status in excluded:
            continue
        if status_values is not None and status not in status_values:
            continue
        total += count
    return total


async def occupancy_stats(db: AsyncSession) -> Dict[str, Any]:
    """Counts per channel against the configured caps."""
    policy = await load_policy(db)
    counts = await _status_counts(db)

    def by_status(channels) -> Dict[str, int]:
        return {
            status.value: _sum(counts, channels, statuses=(status,))
            for status in RegistrationStatus
        }

    free_held = _sum(counts, FREE_POOL, exclude=RELEASED_STATUSES)
    paid_held = _sum(counts, (Channel.PAID,), exclude=RELEASED_STATUSES)

    return {
        "free": {
            "cap": policy.total_free_cap,
            "fcfs_limit": policy.fcfs_limit,
            "held": free_held,
            "admitted": _sum(counts, FREE_POOL, statuses=ADMITTED_STATUSES),
            "remaining": max(0, policy.total_free_cap - free_held),
            "by_status": by_status(FREE_POOL),
        },
        "paid": {
            "cap": policy.total_paid_cap,
            "held": paid_held,
            "remaining": max(0, policy.total_paid_cap - paid_held),
            "by_status": by_status((Channel.PAID,)),
        },
        "invite": {"by_status": by_status((Channel.INVITE,))},
        "volunteer": {"by_status": by_status((Channel.VOLUNTEER,))},
        "total": {
            "confirmed": _sum(
                counts,
                Channel,
                statuses=(RegistrationStatus.CONFIRMED, RegistrationStatus.CHECKED_IN),
            ),
            "checked_in": _sum(counts, Channel, statuses=(RegistrationStatus.CHECKED_IN,)),
        },
        "draw_has_run": policy.draw_has_run,
    }


async def list_registrations(
    db: AsyncSession,
    status: Optional[str] = None,
    channel: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Tuple[List[Tuple[Registration, Optional[Ticket]]], int]:
    stmt = select(Registration, Ticket).outerjoin(Ticket, Ticket.registration_id == Registration.id)
    count_stmt = select(func.count(Registration.id))

    filters = []
    if status:
        filters.append(Registration.status == status)
    if channel:
        filters.append(Registration.channel == channel)
    if search:
        pattern = f"%{search.strip()}%"
        filters.append(or_(
            Registration.name.ilike(pattern),
            Registration.email.ilike(pattern),
            Registration.serial.ilike(pattern),
        ))
    if filters:
        stmt = stmt.where(*filters)
        count_stmt = count_stmt.where(*filters)

    page = max(1, page)
    stmt = (
        stmt.order_by(Registration.created_at.desc(), Registration.id)
        .limit(limit)
        .offset((page - 1) * limit)
    )
    rows = (await db.execute(stmt)).all()
    total = (await db.execute(count_stmt)).scalar_one()
    return [(reg, ticket) for reg, ticket in rows], total


EXPORT_COLUMNS = [
    "registration_id", "serial", "email", "name", "phone", "channel", "ticket_class",
    "status", "plus_one", "order_id", "created_at", "ticket_id", "used", "used_at",
]


async def export_snapshot(db: AsyncSession) -> List[Dict[str, Any]]:
    """Flat registrations + tickets rows for CSV export."""
    result = await db.execute(
        select(Registration, Ticket)
        .outerjoin(Ticket, Ticket.registration_id == Registration.id)
        .order_by(Registration.created_at, Registration.id)
    )
    rows = []
    for reg, ticket in result.all():
        rows.append({
            "registration_id": reg.id,
            "serial": reg.serial,
            "email": reg.email,
            "name": reg.name,
            "phone": reg.phone,
            "channel": reg.channel,
            "ticket_class": reg.ticket_class,
            "status": reg.status,
            "plus_one": reg.plus_one,
            "order_id": reg.order_id,
            "created_at": as_utc(reg.created_at),
            "ticket_id": ticket.id if ticket else None,
            "used": ticket.used if ticket else None,
            "used_at": as_utc(ticket.used_at) if ticket else None,
        })
    return rows
