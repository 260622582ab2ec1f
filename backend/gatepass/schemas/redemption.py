from typing import List, Optional

from pydantic import BaseModel, Field

from gatepass.schemas.common import UtcDateTime


class ScanRequest(BaseModel):
    token: str = Field(min_length=1, max_length=512)


class AttendeeCardResponse(BaseModel):
    name: str
    email: str
    serial: Optional[str] = None
    type: str
    ticket_class: str
    channel: str
    plus_one: bool
    guest_list_label: Optional[str] = None
    status: str
    checked_in_at: Optional[UtcDateTime] = None

    model_config = {"from_attributes": True}


class ScanResponse(BaseModel):
    result: str
    reason: str
    attendee: Optional[AttendeeCardResponse] = None
    first_scan_at: Optional[UtcDateTime] = None
    checked_in_at: Optional[UtcDateTime] = None
    minutes_late: Optional[int] = None


class ManifestEntry(BaseModel):
    token: str
    serial: Optional[str] = None
    name: str
    ticket_class: str
    type: str
    plus_one: bool
    status: str
    used: bool
    used_at: Optional[UtcDateTime] = None


class ManifestResponse(BaseModel):
    tickets: List[ManifestEntry]
    generated_at: UtcDateTime
