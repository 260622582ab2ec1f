"""
Gate endpoints: token check-in and the offline manifest for scanners.
"""

from functools import partial

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gatepass.core.clock import utcnow
from gatepass.core.security import require_admin
from gatepass.db.session import get_db, get_session_factory, run_in_transaction
from gatepass.schemas.redemption import ManifestResponse, ScanRequest, ScanResponse
from gatepass.services.redemption_service import redeem_token
from gatepass.services.ticket_service import scanner_manifest

router = APIRouter(prefix="/scan", tags=["Scan"])


@router.post("", response_model=ScanResponse)
async def scan_token(
    body: ScanRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Check a scanned token in. Always answers 200 with VALID, ALREADY_USED
    or INVALID; a replayed token is never VALID twice.
    """
    redemption = await run_in_transaction(
        partial(redeem_token, token=body.token),
        session_factory=session_factory,
    )
    return ScanResponse.model_validate(redemption.as_dict())


@router.get("/manifest", response_model=ManifestResponse, dependencies=[Depends(require_admin)])
async def offline_manifest(db: AsyncSession = Depends(get_db)):
    """Tokens a scanner may cache for offline checks."""
    return ManifestResponse(tickets=await scanner_manifest(db), generated_at=utcnow())
