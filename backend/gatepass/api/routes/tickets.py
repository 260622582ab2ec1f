"""
Ticket lookups and the public event policy.
"""

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from gatepass.api.presenters import ticket_view
from gatepass.db.session import get_db
from gatepass.schemas.registration import TicketResponse
from gatepass.services.policy_service import load_policy
from gatepass.services.ticket_service import ticket_for_registration, tickets_for_order

router = APIRouter(prefix="/tickets", tags=["Tickets"])


@router.get("/public-settings")
async def public_settings(db: AsyncSession = Depends(get_db)):
    """Toggles, prices and limits the registration pages render from."""
    policy = await load_policy(db)
    return policy.public_view()


@router.get("/by-reg/{registration_id}", response_model=TicketResponse)
async def ticket_by_registration(registration_id: str, db: AsyncSession = Depends(get_db)):
    issued = await ticket_for_registration(db, registration_id)
    return ticket_view(issued.registration, issued.ticket)


@router.get("/by-order/{order_id}", response_model=List[TicketResponse])
async def tickets_by_order(order_id: str, db: AsyncSession = Depends(get_db)):
    issued = await tickets_for_order(db, order_id)
    return [ticket_view(item.registration, item.ticket) for item in issued]
