"""
Tests for per-class serial counters, including concurrent allocation.
"""

import asyncio
from functools import partial

import pytest

from gatepass.db.session import run_in_transaction
from gatepass.models.registration import TicketClass
from gatepass.services.serial_service import format_serial, next_serial


def test_format_serial_pads_to_four_digits():
    assert format_serial(TicketClass.PAID, 7) == "PAID-0007"
    assert format_serial(TicketClass.GUEST, 12) == "GST-0012"
    assert format_serial(TicketClass.VOLUNTEER, 12345) == "VOL-12345"


@pytest.mark.asyncio
async def test_counters_are_independent_per_class(tx):
    assert await tx(next_serial, ticket_class=TicketClass.FREE) == "FREE-0001"
    assert await tx(next_serial, ticket_class=TicketClass.FREE) == "FREE-0002"
    assert await tx(next_serial, ticket_class=TicketClass.DRAW) == "DRAW-0001"
    assert await tx(next_serial, ticket_class="paid") == "PAID-0001"


@pytest.mark.asyncio
async def test_concurrent_allocation_is_gap_free(tx, session_factory):
    """N concurrent allocations yield exactly k+1 .. k+N."""
    for _ in range(3):
        await tx(next_serial, ticket_class=TicketClass.PAID)

    serials = await asyncio.gather(*(
        run_in_transaction(partial(next_serial, ticket_class=TicketClass.PAID), session_factory=session_factory)
        for _ in range(12)
    ))

    numbers = sorted(int(serial.split("-")[1]) for serial in serials)
    assert numbers == list(range(4, 16))


@pytest.mark.asyncio
async def test_rolled_back_transaction_gives_its_number_back(tx, session_factory):
    async def allocate_then_fail(db):
        await next_serial(db, TicketClass.VIP)
        raise RuntimeError("payment provider down")

    with pytest.raises(RuntimeError):
        await run_in_transaction(allocate_then_fail, session_factory=session_factory)

    assert await tx(next_serial, ticket_class=TicketClass.VIP) == "VIP-0001"
