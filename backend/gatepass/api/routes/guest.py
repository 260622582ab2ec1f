"""
Guest-list (special guest) invite endpoints.
"""

from functools import partial

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gatepass.api.errors import rejection_response
from gatepass.api.routes.register import REJECTIONS, allocation_response
from gatepass.core.errors import Rejection
from gatepass.db.session import get_db, get_session_factory, run_in_transaction
from gatepass.schemas.access_code import GuestCodePreviewResponse
from gatepass.schemas.registration import AllocationResponse, InviteRegistrationRequest
from gatepass.services.access_code_service import preview_guest_code
from gatepass.services.allocation_service import register_guest

router = APIRouter(prefix="/guest", tags=["Guest List"], responses=REJECTIONS)


@router.get("/validate", response_model=GuestCodePreviewResponse)
async def validate_guest_code(
    code: str = Query(..., min_length=1, max_length=32),
    db: AsyncSession = Depends(get_db),
):
    """Check an invite link before showing the form. Does not use up a slot."""
    preview = await preview_guest_code(db, code)
    if isinstance(preview, Rejection):
        return rejection_response(preview)
    return GuestCodePreviewResponse.model_validate(preview)


@router.post("/register", response_model=AllocationResponse)
async def register_guest_endpoint(
    body: InviteRegistrationRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    outcome = await run_in_transaction(
        partial(
            register_guest,
            code=body.code,
            email=body.email,
            name=body.name,
            phone=body.phone,
            plus_one=body.plus_one,
        ),
        session_factory=session_factory,
    )
    return allocation_response(outcome)
