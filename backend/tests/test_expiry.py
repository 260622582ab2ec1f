"""
Tests for the reservation expiry sweep and the background schedule.
"""

from datetime import timedelta

import pytest

from gatepass.core.clock import utcnow
from gatepass.core.config import Settings
from gatepass.core.errors import RejectionCode
from gatepass.models.registration import Registration
from gatepass.services import expiry_service
from gatepass.services.allocation_service import confirm_payment, start_checkout
from gatepass.services.expiry_service import expire_reservations
from gatepass.tasks.jobs import sweep_tick
from gatepass.tasks.scheduler import build_scheduler


@pytest.mark.asyncio
async def test_only_overdue_reservations_expire(tx, fetch):
    t0 = utcnow() - timedelta(minutes=8)
    stale = await tx(start_checkout, attendees=[{"email": "stale@example.com"}], now=t0)
    fresh = await tx(start_checkout, attendees=[{"email": "fresh@example.com"}], now=t0 + timedelta(minutes=6))

    result = await tx(expire_reservations)
    assert result.expired_ids == [stale.registrations[0].id]

    assert (await fetch(Registration, stale.registrations[0].id)).status == "expired"
    assert (await fetch(Registration, fresh.registrations[0].id)).status == "pending_payment"


@pytest.mark.asyncio
async def test_sweep_is_reentrant(tx):
    t0 = utcnow() - timedelta(minutes=10)
    await tx(start_checkout, attendees=[{"email": "a@example.com"}, {"email": "b@example.com"}], now=t0)

    first = await tx(expire_reservations)
    second = await tx(expire_reservations)
    assert first.expired == 2
    assert second.expired == 0


@pytest.mark.asyncio
async def test_expired_reservation_can_never_be_confirmed(tx):
    t0 = utcnow() - timedelta(minutes=10)
    order = await tx(start_checkout, attendees=[{"email": "late@example.com"}], now=t0)
    await tx(expire_reservations)

    outcome = await tx(confirm_payment, order_id=order.order_id)
    assert outcome.rejection.code == RejectionCode.TIMEOUT


@pytest.mark.asyncio
async def test_oldest_lottery_entry_is_told_once(configure, register, tx, fetch, dispatcher, sender):
    await configure(total_free_cap=5, fcfs_limit=1)
    await register("admitted@example.com")
    oldest = await register("oldest@example.com")
    await register("younger@example.com")

    t0 = utcnow() - timedelta(minutes=10)
    await tx(start_checkout, attendees=[{"email": "buyer@example.com"}], now=t0)

    result = await tx(expire_reservations)
    assert result.promoted_id == oldest.registration.id
    # Promotion is a signal only
    assert (await fetch(Registration, oldest.registration.id)).status == "pending_draw"

    await tx(expire_reservations)
    await dispatcher.drain()

    assert sender.subjects_for("oldest@example.com") == ["A spot opened up at LocalHost Festival"]
    assert sender.subjects_for("younger@example.com") == []


@pytest.mark.asyncio
async def test_sweep_counts_only_rows_it_actually_expired(
    configure, register, tx, fetch, monkeypatch, dispatcher, sender
):
    """A payment that lands between the overdue scan and the UPDATE keeps its seat."""
    await configure(total_free_cap=5, fcfs_limit=1)
    await register("admitted@example.com")
    await register("waiting@example.com")

    t0 = utcnow() - timedelta(minutes=10)
    stale = await tx(start_checkout, attendees=[{"email": "stale@example.com"}], now=t0)
    paid = await tx(start_checkout, attendees=[{"email": "paid@example.com"}], now=t0)
    assert (await tx(confirm_payment, order_id=paid.order_id, now=t0)).ok

    stale_id = stale.registrations[0].id
    paid_id = paid.registrations[0].id

    async def overdue_including_paid(db, now):
        return [stale_id, paid_id]

    monkeypatch.setattr(expiry_service, "_overdue_ids", overdue_including_paid)
    result = await tx(expire_reservations)
    assert result.expired_ids == [stale_id]
    assert (await fetch(Registration, paid_id)).status == "confirmed"

    # Only the already-paid row is left over: nothing expires, nobody is told
    async def overdue_paid_only(db, now):
        return [paid_id]

    monkeypatch.setattr(expiry_service, "_overdue_ids", overdue_paid_only)
    await dispatcher.drain()
    sender.sent.clear()
    idle = await tx(expire_reservations)
    await dispatcher.drain()

    assert idle.expired == 0
    assert idle.promoted_id is None
    assert sender.subjects_for("waiting@example.com") == []


@pytest.mark.asyncio
async def test_sweep_tick_reports_and_survives_failures(tx, session_factory):
    t0 = utcnow() - timedelta(minutes=10)
    await tx(start_checkout, attendees=[{"email": "tick@example.com"}], now=t0)

    result = await sweep_tick(session_factory)
    assert result.expired == 1

    def broken_factory():
        raise RuntimeError("database unreachable")

    assert await sweep_tick(broken_factory) is None


def test_scheduler_registers_both_jobs():
    scheduler = build_scheduler(Settings(EXPIRY_SWEEP_INTERVAL_SECONDS=5, DRAW_CHECK_INTERVAL_SECONDS=10))
    jobs = {job.id: job for job in scheduler.get_jobs()}

    assert set(jobs) == {"reservation_expiry_sweep", "draw_trigger_check"}
    assert jobs["reservation_expiry_sweep"].trigger.interval.total_seconds() == 5
    assert jobs["draw_trigger_check"].max_instances == 1
