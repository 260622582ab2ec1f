"""
Pydantic schemas for guest-list and volunteer codes.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from gatepass.schemas.common import UtcDateTime


class GuestCodeCreate(BaseModel):
    label: str = Field(min_length=1, max_length=255)
    max_registrations: int = Field(default=10, ge=1)
    plus_one_allowed: bool = False
    auto_approve: bool = True
    expires_at: Optional[datetime] = None
    code: Optional[str] = Field(default=None, max_length=16)


class GuestCodeUpdate(BaseModel):
    label: Optional[str] = Field(default=None, min_length=1, max_length=255)
    max_registrations: Optional[int] = Field(default=None, ge=1)
    plus_one_allowed: Optional[bool] = None
    auto_approve: Optional[bool] = None
    expires_at: Optional[datetime] = None


class GuestCodeResponse(BaseModel):
    id: str
    code: str
    label: str
    created_by: str
    max_registrations: int
    used_count: int
    plus_one_allowed: bool
    auto_approve: bool
    expires_at: Optional[UtcDateTime] = None
    revoked: bool
    created_at: UtcDateTime

    model_config = {"from_attributes": True}


class GuestCodePreviewResponse(BaseModel):
    code: str
    label: str
    slots_left: int
    plus_one_allowed: bool
    auto_approve: bool

    model_config = {"from_attributes": True}


class VolunteerCodeCreate(BaseModel):
    email: EmailStr
    expires_at: Optional[datetime] = None


class VolunteerCodeResponse(BaseModel):
    id: str
    code: str
    linked_email: str
    created_by: str
    expires_at: Optional[UtcDateTime] = None
    revoked: bool
    used: bool
    created_at: UtcDateTime

    model_config = {"from_attributes": True}
