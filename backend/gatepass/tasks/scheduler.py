from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from gatepass.core.config import Settings, get_settings
from gatepass.core.logging import get_logger
from gatepass.tasks.jobs import draw_tick, sweep_tick

logger = get_logger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


def build_scheduler(settings: Optional[Settings] = None) -> AsyncIOScheduler:
    """Interval jobs for the reservation sweep and the automatic draw check."""
    settings = settings or get_settings()
    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        sweep_tick,
        trigger=IntervalTrigger(seconds=settings.EXPIRY_SWEEP_INTERVAL_SECONDS),
        id="reservation_expiry_sweep",
        name="Expire overdue payment reservations",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        draw_tick,
        trigger=IntervalTrigger(seconds=settings.DRAW_CHECK_INTERVAL_SECONDS),
        id="draw_trigger_check",
        name="Run the lucky draw when it is due",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


def start_scheduler() -> AsyncIOScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = build_scheduler()
    if not _scheduler.running:
        _scheduler.start()
        logger.info("scheduler_started", jobs=[job.id for job in _scheduler.get_jobs()])
    return _scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")
    _scheduler = None
