"""
Human-readable ticket serials: one counter row per ticket class.

The counter is bumped with an upsert in the caller's transaction, so
two transactions can never be handed the same number and a rolled-back
transaction gives its number back.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gatepass.db.session import insert_for
from gatepass.models.registration import TicketClass
from gatepass.models.settings import SerialCounter

SERIAL_PREFIXES = {
    TicketClass.FREE: "FREE",
    TicketClass.DRAW: "DRAW",
    TicketClass.PAID: "PAID",
    TicketClass.VIP: "VIP",
    TicketClass.GUEST: "GST",
    TicketClass.VOLUNTEER: "VOL",
}


def format_serial(ticket_class: TicketClass, number: int) -> str:
    return f"{SERIAL_PREFIXES[ticket_class]}-{number:04d}"


async def next_serial(db: AsyncSession, ticket_class) -> str:
    ticket_class = TicketClass(ticket_class)

    insert = insert_for(db)
    stmt = insert(SerialCounter).values(ticket_class=ticket_class.value, count=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=[SerialCounter.ticket_class],
        set_={"count": SerialCounter.count + 1},
    )
    await db.execute(stmt)

    result = await db.execute(
        select(SerialCounter.count).where(SerialCounter.ticket_class == ticket_class.value)
    )
    return format_serial(ticket_class, result.scalar_one())
