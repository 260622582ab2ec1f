"""
HTTP mapping for business rejections and storage conflicts.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse

from gatepass.core.errors import AllocationError, Rejection, RejectionKind, StorageConflict
from gatepass.core.logging import get_logger

logger = get_logger(__name__)

REJECTION_STATUS = {
    RejectionKind.CAPACITY_EXHAUSTED: status.HTTP_409_CONFLICT,
    RejectionKind.DUPLICATE_IDENTITY: status.HTTP_409_CONFLICT,
    RejectionKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    RejectionKind.CHANNEL_CLOSED: status.HTTP_403_FORBIDDEN,
    RejectionKind.INVALID_ACCESS_CODE: status.HTTP_403_FORBIDDEN,
    RejectionKind.RESERVATION_EXPIRED: status.HTTP_410_GONE,
    RejectionKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RejectionKind.INVALID_REQUEST: status.HTTP_400_BAD_REQUEST,
    RejectionKind.INVALID_SETTING: status.HTTP_400_BAD_REQUEST,
}


def rejection_response(rejection: Rejection) -> JSONResponse:
    return JSONResponse(
        status_code=REJECTION_STATUS.get(rejection.kind, status.HTTP_400_BAD_REQUEST),
        content=rejection.as_dict(),
    )


async def allocation_error_handler(request: Request, exc: AllocationError) -> JSONResponse:
    return rejection_response(exc.to_rejection())


async def storage_conflict_handler(request: Request, exc: StorageConflict) -> JSONResponse:
    logger.warning("storage_conflict", attempts=exc.attempts, path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "The system is busy, please retry", "code": "STORAGE_CONFLICT"},
        headers={"Retry-After": "1"},
    )
