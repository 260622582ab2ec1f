"""
Lucky draw over the free-pool waitlist.

The draw is one transaction: winners -> approved, everyone else still
waiting -> draw_lost, and the one-shot `draw_has_run` flag flipped, all
committed together. A second run finds the flag set and is skipped.
Ticket issuance for winners happens afterwards, one transaction per
winner (see gatepass.tasks.jobs.execute_draw).
"""

import random
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gatepass.core.errors import InvalidRequest
from gatepass.core.logging import get_logger
from gatepass.core.metrics import record_draw_run
from gatepass.models.registration import Registration, RegistrationStatus
from gatepass.services.allocation_service import free_pool_admitted
from gatepass.services.audit_service import write_audit
from gatepass.services.notification_service import Notification, NotificationKind, queue_notification
from gatepass.services.policy_service import load_policy, mark_draw_has_run

logger = get_logger(__name__)


@dataclass
class DrawResult:
    skipped: bool = False
    reason: Optional[str] = None
    available_seats: int = 0
    winner_ids: List[str] = field(default_factory=list)
    loser_ids: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "skipped": self.skipped,
            "reason": self.reason,
            "available_seats": self.available_seats,
            "winners": len(self.winner_ids),
            "losers": len(self.loser_ids),
            "winner_ids": self.winner_ids,
        }


async def run_draw(
    db: AsyncSession,
    count: Optional[int] = None,
    actor: str = "SYSTEM",
    rng: Optional[random.Random] = None,
) -> DrawResult:
    """
    Pick min(count, available seats) winners uniformly at random from the
    pending_draw rows. With no seats available nothing changes and the flag
    stays unset, so the draw can be retried once capacity frees up.
    """
    if count is not None and count < 0:
        raise InvalidRequest("count must not be negative")

    policy = await load_policy(db)
    if policy.draw_has_run:
        record_draw_run("skipped")
        logger.info("draw_skipped", actor=actor, reason="already_run")
        return DrawResult(skipped=True, reason="Draw already run")

    admitted = await free_pool_admitted(db)
    available = max(0, policy.total_free_cap - admitted)
    winners_wanted = available if count is None else min(count, available)

    if winners_wanted == 0:
        record_draw_run("no_seats")
        logger.info("draw_no_seats", actor=actor, admitted=admitted, cap=policy.total_free_cap)
        return DrawResult(reason="No seats available", available_seats=available)

    result = await db.execute(
        select(Registration)
        .where(Registration.status == RegistrationStatus.PENDING_DRAW.value)
        .order_by(Registration.created_at, Registration.id)
    )
    pool = list(result.scalars().all())

    rng = rng or random.SystemRandom()
    winners = rng.sample(pool, min(winners_wanted, len(pool)))
    winner_ids = {reg.id for reg in winners}
    losers = [reg for reg in pool if reg.id not in winner_ids]

    for reg in winners:
        reg.status = RegistrationStatus.APPROVED.value
    for reg in losers:
        reg.status = RegistrationStatus.DRAW_LOST.value
    await db.flush()

    await mark_draw_has_run(db)
    await write_audit(
        db,
        actor,
        "draw_run",
        details={"winners": len(winners), "losers": len(losers), "available_seats": available},
    )

    for reg in winners:
        queue_notification(db, Notification(
            kind=NotificationKind.LOTTERY_WON,
            email=reg.email,
            name=reg.name,
            event_name=policy.event_name,
        ))
    for reg in losers:
        queue_notification(db, Notification(
            kind=NotificationKind.LOTTERY_LOST,
            email=reg.email,
            name=reg.name,
            event_name=policy.event_name,
        ))

    record_draw_run("completed")
    logger.info(
        "draw_completed",
        actor=actor,
        winners=len(winners),
        losers=len(losers),
        available_seats=available,
    )
    return DrawResult(
        available_seats=available,
        winner_ids=[reg.id for reg in winners],
        loser_ids=[reg.id for reg in losers],
    )
