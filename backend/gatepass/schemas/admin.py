from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from gatepass.schemas.common import UtcDateTime


class RunDrawRequest(BaseModel):
    count: Optional[int] = Field(default=None, ge=0)


class DrawResponse(BaseModel):
    skipped: bool
    reason: Optional[str] = None
    available_seats: int
    winners: int
    losers: int
    winner_ids: List[str]


class RevokeRequest(BaseModel):
    reason: str = Field(default="", max_length=500)


class ActionResponse(BaseModel):
    ok: bool = True
    registration_id: str
    status: str


class AdminRegistrationRow(BaseModel):
    id: str
    serial: Optional[str] = None
    email: str
    name: str
    phone: str
    channel: str
    ticket_class: str
    status: str
    plus_one: bool
    order_id: Optional[str] = None
    created_at: UtcDateTime
    token: Optional[str] = None
    used: Optional[bool] = None
    used_at: Optional[UtcDateTime] = None


class RegistrationListResponse(BaseModel):
    registrations: List[AdminRegistrationRow]
    total: int
    page: int
    limit: int


class AuditLogResponse(BaseModel):
    id: int
    actor: str
    action: str
    target_id: Optional[str] = None
    details: Dict[str, Any]
    created_at: UtcDateTime
