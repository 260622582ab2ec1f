from gatepass.models.access_code import GuestListCode, VolunteerCode
from gatepass.models.registration import (
    ADMITTED_STATUSES,
    CHANNEL_LABELS,
    FREE_POOL,
    NON_ADMITTING_STATUSES,
    RELEASED_STATUSES,
    Channel,
    Registration,
    RegistrationStatus,
    TicketClass,
)
from gatepass.models.settings import AuditLog, EventSetting, SerialCounter
from gatepass.models.ticket import Ticket

__all__ = [
    "GuestListCode", "VolunteerCode",
    "Registration", "Channel", "RegistrationStatus", "TicketClass",
    "ADMITTED_STATUSES", "CHANNEL_LABELS", "FREE_POOL",
    "NON_ADMITTING_STATUSES", "RELEASED_STATUSES",
    "AuditLog", "EventSetting", "SerialCounter",
    "Ticket",
]
