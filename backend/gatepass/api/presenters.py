"""
ORM rows -> response schemas.
"""

from typing import Optional

from gatepass.core.qr import render_token_image
from gatepass.models.registration import Registration
from gatepass.models.ticket import Ticket
from gatepass.schemas.registration import RegistrationResponse, TicketResponse


def registration_view(reg: Registration) -> RegistrationResponse:
    return RegistrationResponse.model_validate(reg)


def ticket_view(reg: Registration, ticket: Optional[Ticket], with_image: bool = True) -> TicketResponse:
    token = ticket.token if ticket is not None else None
    return TicketResponse(
        registration_id=reg.id,
        serial=reg.serial,
        name=reg.name,
        email=reg.email,
        type=reg.channel_label,
        status=reg.status,
        plus_one=reg.plus_one,
        token=token,
        qr_image=render_token_image(token) if token and with_image else None,
        used=ticket.used if ticket is not None else False,
        used_at=ticket.used_at if ticket is not None else None,
        generated_at=ticket.generated_at if ticket is not None else None,
    )
