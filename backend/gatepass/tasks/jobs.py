"""
Background units of work. Each tick runs in its own transaction(s) and
swallows its own failures so the scheduler keeps firing.
"""

import random
from datetime import datetime
from functools import partial
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from gatepass.core.clock import utcnow
from gatepass.core.logging import get_logger
from gatepass.core.metrics import record_background_failure
from gatepass.db.session import get_session_factory, run_in_transaction
from gatepass.models.registration import Registration, RegistrationStatus
from gatepass.services.draw_service import DrawResult, run_draw
from gatepass.services.expiry_service import SweepResult, expire_reservations
from gatepass.services.policy_service import load_policy
from gatepass.services.ticket_service import issue_ticket

logger = get_logger(__name__)


async def _issue_for_winner(db, registration_id: str, now: datetime):
    reg = await db.get(Registration, registration_id)
    # Revoked or otherwise moved on since the draw committed
    if reg is None or reg.status != RegistrationStatus.APPROVED.value:
        return None
    return await issue_ticket(db, reg, now=now)


async def execute_draw(
    count: Optional[int] = None,
    actor: str = "SYSTEM",
    rng: Optional[random.Random] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> DrawResult:
    """Run the draw, then give each winner a ticket in its own transaction."""
    factory = session_factory or get_session_factory()
    result = await run_in_transaction(
        partial(run_draw, count=count, actor=actor, rng=rng),
        session_factory=factory,
    )

    for registration_id in result.winner_ids:
        try:
            await run_in_transaction(
                partial(_issue_for_winner, registration_id=registration_id, now=utcnow()),
                session_factory=factory,
            )
        except Exception as exc:
            # The winner stays approved; an admin approve finishes issuance
            record_background_failure("draw_ticket_issue")
            logger.error("draw_ticket_issue_failed", registration_id=registration_id, error=str(exc))

    return result


async def sweep_tick(session_factory: Optional[async_sessionmaker] = None) -> Optional[SweepResult]:
    try:
        return await run_in_transaction(expire_reservations, session_factory=session_factory)
    except Exception as exc:
        record_background_failure("expiry_sweep")
        logger.error("background_task_failed", task="expiry_sweep", error=str(exc))
        return None


async def draw_due(session_factory: Optional[async_sessionmaker] = None, now: Optional[datetime] = None) -> bool:
    """True when the automatic draw should run now."""
    now = now or utcnow()
    factory = session_factory or get_session_factory()
    async with factory() as db:
        policy = await load_policy(db)

    if not policy.draw_auto_run or policy.draw_has_run:
        return False
    trigger_at = policy.draw_trigger_at()
    return trigger_at is not None and now >= trigger_at


async def draw_tick(session_factory: Optional[async_sessionmaker] = None) -> Optional[DrawResult]:
    try:
        if not await draw_due(session_factory):
            return None
        logger.info("draw_auto_triggered")
        return await execute_draw(actor="SCHEDULER", session_factory=session_factory)
    except Exception as exc:
        record_background_failure("draw_check")
        logger.error("background_task_failed", task="draw_check", error=str(exc))
        return None
