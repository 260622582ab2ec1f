"""
Public registration endpoints: free (FCFS + lottery), paid and VIP checkout,
payment confirmation, volunteers.
"""

from functools import partial

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import async_sessionmaker

from gatepass.api.errors import rejection_response
from gatepass.api.presenters import registration_view, ticket_view
from gatepass.db.session import get_session_factory, run_in_transaction
from gatepass.models.registration import Channel, RegistrationStatus
from gatepass.schemas.common import RejectionResponse
from gatepass.schemas.registration import (
    AllocationResponse,
    CheckoutRequest,
    CheckoutResponse,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    FreeRegistrationRequest,
    InviteRegistrationRequest,
)
from gatepass.services.allocation_service import (
    AllocationOutcome,
    confirm_payment,
    register_free,
    register_volunteer,
    start_checkout,
)

REJECTIONS = {
    status.HTTP_403_FORBIDDEN: {"model": RejectionResponse},
    status.HTTP_409_CONFLICT: {"model": RejectionResponse},
    status.HTTP_410_GONE: {"model": RejectionResponse},
}

router = APIRouter(prefix="/register", tags=["Registration"], responses=REJECTIONS)

MESSAGES = {
    RegistrationStatus.CONFIRMED.value: "Confirmed! Check your email for your QR code.",
    RegistrationStatus.PENDING_DRAW.value: "You are in the lucky draw! Results will be announced before the event.",
    RegistrationStatus.PENDING.value: "Your request is pending admin approval.",
}


def allocation_response(outcome: AllocationOutcome):
    if outcome.rejection is not None:
        return rejection_response(outcome.rejection)
    reg = outcome.registration
    return AllocationResponse(
        status=reg.status,
        registration=registration_view(reg),
        token=outcome.ticket.token if outcome.ticket is not None else None,
        message=MESSAGES.get(reg.status, "Registration received."),
    )


@router.post("/free", response_model=AllocationResponse)
async def register_free_endpoint(
    body: FreeRegistrationRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Free entry. Admitted straight away while the FCFS threshold holds,
    then entered into the lucky draw until the free cap is reached.
    """
    outcome = await run_in_transaction(
        partial(register_free, email=body.email, name=body.name, phone=body.phone),
        session_factory=session_factory,
    )
    return allocation_response(outcome)


async def _checkout(body: CheckoutRequest, channel: Channel, session_factory):
    outcome = await run_in_transaction(
        partial(
            start_checkout,
            attendees=[attendee.model_dump() for attendee in body.tickets],
            channel=channel,
        ),
        session_factory=session_factory,
    )
    if outcome.rejection is not None:
        return rejection_response(outcome.rejection)
    return CheckoutResponse(
        order_id=outcome.order_id,
        expires_at=outcome.expires_at,
        timeout_mins=outcome.timeout_mins,
        registrations=[registration_view(reg) for reg in outcome.registrations],
    )


@router.post("/paid", response_model=CheckoutResponse)
async def paid_checkout_endpoint(
    body: CheckoutRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Reserve paid slots; they are released if payment is not confirmed in time."""
    return await _checkout(body, Channel.PAID, session_factory)


@router.post("/vip", response_model=CheckoutResponse)
async def vip_checkout_endpoint(
    body: CheckoutRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    return await _checkout(body, Channel.INVITE, session_factory)


@router.post("/confirm-payment", response_model=ConfirmPaymentResponse)
async def confirm_payment_endpoint(
    body: ConfirmPaymentRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    outcome = await run_in_transaction(
        partial(confirm_payment, order_id=body.order_id),
        session_factory=session_factory,
    )
    if outcome.rejection is not None:
        return rejection_response(outcome.rejection)
    return ConfirmPaymentResponse(
        order_id=outcome.order_id,
        confirmed=[
            ticket_view(reg, ticket, with_image=False)
            for reg, ticket in zip(outcome.registrations, outcome.tickets)
        ],
    )


@router.post("/volunteer", response_model=AllocationResponse)
async def register_volunteer_endpoint(
    body: InviteRegistrationRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    outcome = await run_in_transaction(
        partial(
            register_volunteer,
            code=body.code,
            email=body.email,
            name=body.name,
            phone=body.phone,
            plus_one=body.plus_one,
        ),
        session_factory=session_factory,
    )
    return allocation_response(outcome)
