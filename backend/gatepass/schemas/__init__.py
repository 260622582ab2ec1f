from gatepass.schemas.access_code import (
    GuestCodeCreate,
    GuestCodePreviewResponse,
    GuestCodeResponse,
    GuestCodeUpdate,
    VolunteerCodeCreate,
    VolunteerCodeResponse,
)
from gatepass.schemas.admin import (
    ActionResponse,
    AdminRegistrationRow,
    AuditLogResponse,
    DrawResponse,
    RegistrationListResponse,
    RevokeRequest,
    RunDrawRequest,
)
from gatepass.schemas.common import RejectionResponse
from gatepass.schemas.redemption import ManifestResponse, ScanRequest, ScanResponse
from gatepass.schemas.registration import (
    AllocationResponse,
    CheckoutRequest,
    CheckoutResponse,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    FreeRegistrationRequest,
    InviteRegistrationRequest,
    RegistrationResponse,
    TicketResponse,
)

__all__ = [
    "GuestCodeCreate", "GuestCodePreviewResponse", "GuestCodeResponse", "GuestCodeUpdate",
    "VolunteerCodeCreate", "VolunteerCodeResponse",
    "ActionResponse", "AdminRegistrationRow", "AuditLogResponse", "DrawResponse",
    "RegistrationListResponse", "RevokeRequest", "RunDrawRequest",
    "RejectionResponse",
    "ManifestResponse", "ScanRequest", "ScanResponse",
    "AllocationResponse", "CheckoutRequest", "CheckoutResponse", "ConfirmPaymentRequest",
    "ConfirmPaymentResponse", "FreeRegistrationRequest", "InviteRegistrationRequest",
    "RegistrationResponse", "TicketResponse",
]
