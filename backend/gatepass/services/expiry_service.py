"""
Reservation expiry sweep: releases pending_payment rows whose window passed.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gatepass.core.clock import utcnow
from gatepass.core.logging import get_logger
from gatepass.core.metrics import reservations_expired
from gatepass.models.registration import Registration, RegistrationStatus
from gatepass.services.notification_service import Notification, NotificationKind, queue_notification
from gatepass.services.policy_service import load_policy

logger = get_logger(__name__)


@dataclass
class SweepResult:
    expired_ids: List[str]
    promoted_id: Optional[str] = None

    @property
    def expired(self) -> int:
        return len(self.expired_ids)


async def _overdue_ids(db: AsyncSession, now: datetime) -> List[str]:
    result = await db.execute(
        select(Registration.id).where(
            Registration.status == RegistrationStatus.PENDING_PAYMENT.value,
            Registration.payment_expires_at < now,
        )
    )
    return list(result.scalars().all())


async def expire_reservations(db: AsyncSession, now: Optional[datetime] = None) -> SweepResult:
    """
    Expire every overdue reservation in one statement, then signal the oldest
    lottery entry that a slot opened. Statuses of waitlisted rows are not
    touched. A second run right after finds nothing and sends nothing.
    """
    now = now or utcnow()

    candidates = await _overdue_ids(db, now)
    if not candidates:
        return SweepResult(expired_ids=[])

    # Re-check the status in the UPDATE itself; a payment may have landed
    result = await db.execute(
        update(Registration)
        .where(
            Registration.id.in_(candidates),
            Registration.status == RegistrationStatus.PENDING_PAYMENT.value,
        )
        .values(status=RegistrationStatus.EXPIRED.value, updated_at=now)
        .returning(Registration.id)
        .execution_options(synchronize_session="fetch")
    )
    expired_ids = sorted(result.scalars().all(), key=candidates.index)
    if not expired_ids:
        return SweepResult(expired_ids=[])
    reservations_expired.inc(len(expired_ids))

    waiting = await db.execute(
        select(Registration)
        .where(Registration.status == RegistrationStatus.PENDING_DRAW.value)
        .order_by(Registration.created_at, Registration.id)
        .limit(1)
    )
    oldest = waiting.scalar_one_or_none()

    promoted_id = None
    if oldest is not None:
        policy = await load_policy(db)
        queue_notification(db, Notification(
            kind=NotificationKind.WAITLIST_PROMOTION,
            email=oldest.email,
            name=oldest.name,
            event_name=policy.event_name,
        ))
        promoted_id = oldest.id

    logger.info("reservation_sweep_expired", expired=len(expired_ids), promoted=promoted_id)
    return SweepResult(expired_ids=expired_ids, promoted_id=promoted_id)
