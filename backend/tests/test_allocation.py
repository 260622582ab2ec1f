"""
Tests for the allocation engine: free pool, priced checkout, invite channels
and administrative transitions, including concurrent races.
"""

import asyncio
from datetime import timedelta
from functools import partial

import pytest
from sqlalchemy import func, select

from gatepass.core.clock import utcnow
from gatepass.core.errors import RejectionCode, RejectionKind
from gatepass.db.session import run_in_transaction
from gatepass.models.access_code import GuestListCode
from gatepass.models.registration import Registration, RegistrationStatus
from gatepass.services import access_code_service
from gatepass.services.allocation_service import (
    approve_registration,
    confirm_payment,
    register_free,
    register_guest,
    register_volunteer,
    revoke_registration,
    start_checkout,
)
from gatepass.services.expiry_service import expire_reservations
from gatepass.services.policy_service import load_policy
from gatepass.services.ticket_service import get_ticket
from gatepass.tasks.jobs import execute_draw


async def count_by_status(session_factory, status):
    async with session_factory() as db:
        result = await db.execute(
            select(func.count(Registration.id)).where(Registration.status == status)
        )
        return result.scalar_one()


# ---------------------------------------------------------------------------
# Free pool
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fcfs_then_draw_then_full(configure, register, session_factory, fetch):
    """Cap 2, FCFS threshold 1: A admitted, B waits for the draw and wins, C is turned away."""
    await configure(total_free_cap=2, fcfs_limit=1)

    a = await register("a@example.com")
    assert a.ok
    assert a.status == "confirmed"
    assert a.registration.serial == "FREE-0001"
    assert a.ticket is not None

    b = await register("b@example.com")
    assert b.status == "pending_draw"
    assert b.registration.serial is None
    assert b.ticket is None

    result = await execute_draw(session_factory=session_factory)
    assert result.winner_ids == [b.registration.id]
    assert result.available_seats == 1

    winner = await fetch(Registration, b.registration.id)
    assert winner.status == "confirmed"
    assert winner.serial == "DRAW-0001"

    async with session_factory() as db:
        assert (await load_policy(db)).draw_has_run is True

    c = await register("c@example.com")
    assert not c.ok
    assert c.rejection.kind == RejectionKind.CAPACITY_EXHAUSTED
    assert c.rejection.code == RejectionCode.FULL


@pytest.mark.asyncio
async def test_duplicate_email_reports_existing_status(register):
    await register("dup@example.com")
    again = await register("  DUP@Example.com ")

    assert again.rejection.code == RejectionCode.DUPLICATE_EMAIL
    assert again.rejection.existing_status == "confirmed"


@pytest.mark.asyncio
async def test_free_channel_closed(configure, register, session_factory):
    await configure(free_enabled=False)
    outcome = await register("closed@example.com")

    assert outcome.rejection.code == RejectionCode.FREE_CLOSED
    assert outcome.rejection.kind == RejectionKind.CHANNEL_CLOSED
    assert await count_by_status(session_factory, "confirmed") == 0


@pytest.mark.asyncio
async def test_draw_closed_once_draw_has_run(configure, register, session_factory):
    await configure(total_free_cap=5, fcfs_limit=1)
    await register("first@example.com")
    await register("waiting@example.com")
    await execute_draw(session_factory=session_factory)

    late = await register("late@example.com")
    assert late.rejection.code == RejectionCode.DRAW_CLOSED


@pytest.mark.asyncio
async def test_draw_disabled_rejects_past_threshold(configure, register):
    await configure(total_free_cap=5, fcfs_limit=1, draw_enabled=False)
    await register("first@example.com")

    second = await register("second@example.com")
    assert second.rejection.code == RejectionCode.DRAW_CLOSED


@pytest.mark.asyncio
async def test_invalid_email_is_rejected(register):
    outcome = await register("not-an-email")
    assert outcome.rejection.code == RejectionCode.INVALID_REQUEST


@pytest.mark.asyncio
async def test_concurrent_fcfs_admits_exactly_the_remaining_slots(configure, session_factory):
    """20 racing requests for 3 FCFS slots and 5 lottery places."""
    await configure(total_free_cap=8, fcfs_limit=3)

    outcomes = await asyncio.gather(*(
        run_in_transaction(
            partial(register_free, email=f"racer{i}@example.com", name=f"Racer {i}"),
            session_factory=session_factory,
        )
        for i in range(20)
    ))

    confirmed = [o for o in outcomes if o.ok and o.status == "confirmed"]
    waiting = [o for o in outcomes if o.ok and o.status == "pending_draw"]
    rejected = [o for o in outcomes if not o.ok]

    assert len(confirmed) == 3
    assert len(waiting) == 5
    assert len(rejected) == 12
    assert all(o.rejection.code == RejectionCode.FULL for o in rejected)
    assert sorted(o.registration.serial for o in confirmed) == ["FREE-0001", "FREE-0002", "FREE-0003"]

    assert await count_by_status(session_factory, "confirmed") == 3
    assert await count_by_status(session_factory, "pending_draw") == 5


# ---------------------------------------------------------------------------
# Priced checkout
# ---------------------------------------------------------------------------

def attendees(*emails):
    return [{"email": email, "name": email.split("@")[0]} for email in emails]


@pytest.mark.asyncio
async def test_paid_checkout_then_confirm(configure, tx, fetch):
    await configure(total_paid_cap=3, max_paid_per_person=2)

    order = await tx(start_checkout, attendees=attendees("p1@example.com", "p2@example.com"))
    assert order.ok
    assert order.timeout_mins == 5
    assert [r.status for r in order.registrations] == ["pending_payment", "pending_payment"]
    assert all(r.order_id == order.order_id for r in order.registrations)

    confirmed = await tx(confirm_payment, order_id=order.order_id)
    assert confirmed.ok
    assert sorted(r.serial for r in confirmed.registrations) == ["PAID-0001", "PAID-0002"]
    assert len(confirmed.tickets) == 2

    row = await fetch(Registration, order.registrations[0].id)
    assert row.status == "confirmed"

    again = await tx(confirm_payment, order_id=order.order_id)
    assert again.rejection.code == RejectionCode.ORDER_NOT_FOUND


@pytest.mark.asyncio
async def test_paid_cap_counts_open_reservations(configure, tx):
    await configure(total_paid_cap=3, max_paid_per_person=2)

    assert (await tx(start_checkout, attendees=attendees("a@example.com", "b@example.com"))).ok
    full = await tx(start_checkout, attendees=attendees("c@example.com", "d@example.com"))
    assert full.rejection.code == RejectionCode.PAID_FULL
    assert (await tx(start_checkout, attendees=attendees("c@example.com"))).ok


@pytest.mark.asyncio
async def test_concurrent_checkouts_never_exceed_the_paid_cap(configure, session_factory):
    """12 racing single-seat checkouts for 3 paid seats."""
    await configure(total_paid_cap=3)

    outcomes = await asyncio.gather(*(
        run_in_transaction(
            partial(start_checkout, attendees=attendees(f"buyer{i}@example.com")),
            session_factory=session_factory,
        )
        for i in range(12)
    ))

    reserved = [o for o in outcomes if o.ok]
    rejected = [o for o in outcomes if not o.ok]

    assert len(reserved) == 3
    assert len(rejected) == 9
    assert all(o.rejection.code == RejectionCode.PAID_FULL for o in rejected)
    assert await count_by_status(session_factory, "pending_payment") == 3


@pytest.mark.asyncio
async def test_checkout_validation(configure, tx):
    await configure(max_paid_per_person=2)

    too_many = await tx(start_checkout, attendees=attendees("a@x.com", "b@x.com", "c@x.com"))
    assert too_many.rejection.code == RejectionCode.TOO_MANY_TICKETS

    same_email = await tx(start_checkout, attendees=attendees("a@x.com", "A@x.com"))
    assert same_email.rejection.code == RejectionCode.INVALID_REQUEST

    await configure(paid_enabled=False)
    closed = await tx(start_checkout, attendees=attendees("a@x.com"))
    assert closed.rejection.code == RejectionCode.PAID_CLOSED


@pytest.mark.asyncio
async def test_late_confirmation_expires_the_order(tx, fetch):
    started = utcnow() - timedelta(minutes=10)
    order = await tx(start_checkout, attendees=attendees("slow@example.com"), now=started)

    late = await tx(confirm_payment, order_id=order.order_id)
    assert late.rejection.code == RejectionCode.TIMEOUT
    assert late.rejection.kind == RejectionKind.RESERVATION_EXPIRED

    # The expiry itself is committed
    row = await fetch(Registration, order.registrations[0].id)
    assert row.status == "expired"
    assert row.serial is None

    retry = await tx(confirm_payment, order_id=order.order_id)
    assert retry.rejection.code == RejectionCode.TIMEOUT


@pytest.mark.asyncio
async def test_confirmation_at_the_deadline_is_still_accepted(tx):
    order = await tx(start_checkout, attendees=attendees("ontime@example.com"))
    deadline = order.expires_at

    # The sweep leaves the reservation alone at the exact deadline, and so does confirmation
    swept = await tx(expire_reservations, now=deadline)
    assert swept.expired == 0

    confirmed = await tx(confirm_payment, order_id=order.order_id, now=deadline)
    assert confirmed.ok
    assert confirmed.registrations[0].serial == "PAID-0001"


@pytest.mark.asyncio
async def test_expired_reservation_frees_paid_capacity(configure, tx):
    await configure(total_paid_cap=1)
    started = utcnow() - timedelta(minutes=10)
    assert (await tx(start_checkout, attendees=attendees("first@example.com"), now=started)).ok

    blocked = await tx(start_checkout, attendees=attendees("second@example.com"))
    assert blocked.rejection.code == RejectionCode.PAID_FULL

    await tx(expire_reservations)
    assert (await tx(start_checkout, attendees=attendees("second@example.com"))).ok


@pytest.mark.asyncio
async def test_vip_checkout_uses_vip_serials(tx):
    order = await tx(start_checkout, attendees=attendees("vip@example.com"), channel="invite")
    confirmed = await tx(confirm_payment, order_id=order.order_id)

    assert confirmed.registrations[0].serial == "VIP-0001"
    assert confirmed.registrations[0].channel == "invite"


@pytest.mark.asyncio
async def test_unknown_order(tx):
    outcome = await tx(confirm_payment, order_id="no-such-order")
    assert outcome.rejection.code == RejectionCode.ORDER_NOT_FOUND


# ---------------------------------------------------------------------------
# Guest list and volunteers
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_guest_code_single_slot(tx, guest_code, fetch):
    first = await tx(register_guest, code=guest_code.code, email="g1@example.com", name="Guest One")
    assert first.status == "confirmed"
    assert first.registration.serial == "GST-0001"
    assert (await fetch(GuestListCode, guest_code.id)).used_count == 1

    second = await tx(register_guest, code=guest_code.code, email="g2@example.com", name="Guest Two")
    assert second.rejection.code == RejectionCode.CODE_FULL
    assert second.rejection.kind == RejectionKind.INVALID_ACCESS_CODE


@pytest.mark.asyncio
async def test_concurrent_guest_registrations_never_overbook_a_code(guest_code, session_factory, fetch):
    outcomes = await asyncio.gather(*(
        run_in_transaction(
            partial(register_guest, code=guest_code.code, email=f"guest{i}@example.com", name=f"Guest {i}"),
            session_factory=session_factory,
        )
        for i in range(2)
    ))

    assert sum(1 for o in outcomes if o.ok) == 1
    assert [o.rejection.code for o in outcomes if not o.ok] == [RejectionCode.CODE_FULL]
    assert (await fetch(GuestListCode, guest_code.id)).used_count == 1


@pytest.mark.asyncio
async def test_guest_code_is_case_insensitive_and_needs_a_name(tx, guest_code):
    nameless = await tx(register_guest, code=guest_code.code, email="g@example.com", name="")
    assert nameless.rejection.code == RejectionCode.INVALID_REQUEST

    lower = await tx(register_guest, code=guest_code.code.lower(), email="g@example.com", name="Guest")
    assert lower.ok


@pytest.mark.asyncio
async def test_unknown_and_revoked_guest_codes(tx, guest_code):
    unknown = await tx(register_guest, code="NOPE2345", email="g@example.com", name="Guest")
    assert unknown.rejection.code == RejectionCode.INVALID

    malformed = await tx(register_guest, code="no!", email="g@example.com", name="Guest")
    assert malformed.rejection.code == RejectionCode.INVALID

    await tx(access_code_service.revoke_guest_code, code_id=guest_code.id, actor="tester")
    revoked = await tx(register_guest, code=guest_code.code, email="g@example.com", name="Guest")
    assert revoked.rejection.code == RejectionCode.REVOKED


@pytest.mark.asyncio
async def test_expired_guest_code(tx):
    code = await tx(
        access_code_service.create_guest_code,
        label="Yesterday",
        actor="tester",
        expires_at=utcnow() - timedelta(days=1),
    )
    outcome = await tx(register_guest, code=code.code, email="g@example.com", name="Guest")
    assert outcome.rejection.code == RejectionCode.EXPIRED


@pytest.mark.asyncio
async def test_guest_plus_one_needs_code_and_policy(configure, tx):
    with_plus = await tx(
        access_code_service.create_guest_code,
        label="Press",
        actor="tester",
        plus_one_allowed=True,
    )
    without = await tx(access_code_service.create_guest_code, label="Crew", actor="tester")

    allowed = await tx(register_guest, code=with_plus.code, email="a@example.com", name="A", plus_one=True)
    assert allowed.registration.plus_one is True

    denied = await tx(register_guest, code=without.code, email="b@example.com", name="B", plus_one=True)
    assert denied.registration.plus_one is False

    await configure(plus_one_vip_enabled=False)
    switched_off = await tx(register_guest, code=with_plus.code, email="c@example.com", name="C", plus_one=True)
    assert switched_off.registration.plus_one is False


@pytest.mark.asyncio
async def test_manual_guest_approval_issues_the_ticket(tx):
    code = await tx(
        access_code_service.create_guest_code,
        label="Needs review",
        actor="tester",
        auto_approve=False,
    )
    pending = await tx(register_guest, code=code.code, email="review@example.com", name="Reviewed")
    assert pending.status == "pending"
    assert pending.ticket is None

    approved = await tx(approve_registration, registration_id=pending.registration.id, actor="tester")
    assert approved.status == "confirmed"
    assert approved.registration.serial == "GST-0001"
    assert approved.ticket.token


@pytest.mark.asyncio
async def test_volunteer_code_is_bound_to_one_email(tx):
    code = await tx(access_code_service.create_volunteer_code, email="Vol@Example.com", actor="tester")
    assert len(code.code) == 12

    mismatch = await tx(register_volunteer, code=code.code, email="other@example.com", name="Other")
    assert mismatch.rejection.code == RejectionCode.EMAIL_MISMATCH

    ok = await tx(register_volunteer, code=code.code, email="vol@example.com", name="Vol")
    assert ok.status == "confirmed"
    assert ok.registration.serial == "VOL-0001"
    assert ok.registration.plus_one is False

    reused = await tx(register_volunteer, code=code.code, email="vol2@example.com", name="Vol 2")
    assert reused.rejection.code == RejectionCode.CODE_USED


@pytest.mark.asyncio
async def test_volunteer_channel_closed(configure, tx):
    code = await tx(access_code_service.create_volunteer_code, email="vol@example.com", actor="tester")
    await configure(volunteer_enabled=False)

    outcome = await tx(register_volunteer, code=code.code, email="vol@example.com", name="Vol")
    assert outcome.rejection.code == RejectionCode.VOL_CLOSED


# ---------------------------------------------------------------------------
# Administrative transitions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_revoke_keeps_the_ticket_row(register, tx, session_factory):
    admitted = await register("revoke@example.com")

    revoked = await tx(revoke_registration, registration_id=admitted.registration.id, actor="tester", reason="spam")
    assert revoked.status == "revoked"

    async with session_factory() as db:
        assert await get_ticket(db, admitted.registration.id) is not None

    twice = await tx(revoke_registration, registration_id=admitted.registration.id, actor="tester")
    assert twice.rejection.code == RejectionCode.INVALID_TRANSITION


@pytest.mark.asyncio
async def test_approve_rejects_terminal_states(register, tx):
    admitted = await register("done@example.com")
    outcome = await tx(approve_registration, registration_id=admitted.registration.id, actor="tester")
    assert outcome.rejection.code == RejectionCode.INVALID_TRANSITION

    missing = await tx(approve_registration, registration_id="missing", actor="tester")
    assert missing.rejection.code == RejectionCode.NOT_FOUND


@pytest.mark.asyncio
async def test_admin_can_approve_a_lottery_entry(configure, register, tx):
    await configure(total_free_cap=3, fcfs_limit=1)
    await register("first@example.com")
    entry = await register("entry@example.com")
    assert entry.status == RegistrationStatus.PENDING_DRAW.value

    approved = await tx(approve_registration, registration_id=entry.registration.id, actor="tester")
    assert approved.status == "confirmed"
    assert approved.registration.serial == "DRAW-0001"
