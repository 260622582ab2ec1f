"""
Pydantic schemas for registration requests and ticket views.
"""

from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field

from gatepass.schemas.common import UtcDateTime


class FreeRegistrationRequest(BaseModel):
    email: EmailStr
    name: str = Field(default="", max_length=255)
    phone: str = Field(default="", max_length=50)


class Attendee(BaseModel):
    email: EmailStr
    name: str = Field(default="", max_length=255)
    phone: str = Field(default="", max_length=50)


class CheckoutRequest(BaseModel):
    tickets: List[Attendee] = Field(min_length=1)


class ConfirmPaymentRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=36)


class InviteRegistrationRequest(BaseModel):
    code: str = Field(min_length=1, max_length=32)
    email: EmailStr
    name: str = Field(default="", max_length=255)
    phone: str = Field(default="", max_length=50)
    plus_one: bool = False


class RegistrationResponse(BaseModel):
    id: str
    serial: Optional[str] = None
    email: str
    name: str
    channel: str
    ticket_class: str
    status: str
    plus_one: bool
    order_id: Optional[str] = None
    payment_expires_at: Optional[UtcDateTime] = None
    created_at: UtcDateTime

    model_config = {"from_attributes": True}


class AllocationResponse(BaseModel):
    status: str
    registration: RegistrationResponse
    token: Optional[str] = None
    message: str


class CheckoutResponse(BaseModel):
    order_id: str
    expires_at: UtcDateTime
    timeout_mins: int
    registrations: List[RegistrationResponse]


class TicketResponse(BaseModel):
    registration_id: str
    serial: Optional[str] = None
    name: str
    email: str
    type: str
    status: str
    plus_one: bool
    token: Optional[str] = None
    qr_image: Optional[str] = None
    used: bool = False
    used_at: Optional[UtcDateTime] = None
    generated_at: Optional[UtcDateTime] = None


class ConfirmPaymentResponse(BaseModel):
    order_id: str
    confirmed: List[TicketResponse]
