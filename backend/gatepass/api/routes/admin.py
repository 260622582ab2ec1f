"""
Administrative endpoints. Every route requires the X-Admin-Key header;
X-Admin-Actor names the operator in the audit log.
"""

import csv
import io
import json
from functools import partial
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gatepass.api.errors import rejection_response
from gatepass.api.presenters import ticket_view
from gatepass.core.security import require_admin
from gatepass.db.session import get_db, get_session_factory, run_in_transaction
from gatepass.schemas.access_code import (
    GuestCodeCreate,
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
from gatepass.schemas.registration import TicketResponse
from gatepass.services import access_code_service
from gatepass.services.admin_service import (
    EXPORT_COLUMNS,
    export_snapshot,
    list_registrations,
    occupancy_stats,
)
from gatepass.services.allocation_service import approve_registration, revoke_registration
from gatepass.services.audit_service import list_audit, write_audit
from gatepass.services.policy_service import load_policy, update_policy
from gatepass.services.ticket_service import reissue_ticket, ticket_for_registration
from gatepass.tasks.jobs import execute_draw

router = APIRouter(prefix="/admin", tags=["Admin"])


# ---------------------------------------------------------------------------
# Policy and occupancy
# ---------------------------------------------------------------------------

@router.get("/settings")
async def get_settings_endpoint(
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    policy = await load_policy(db)
    return policy.model_dump(mode="json")


@router.patch("/settings")
async def update_settings_endpoint(
    changes: Dict[str, Any],
    actor: str = Depends(require_admin),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Validated as a whole; an invalid edit changes nothing."""
    policy = await run_in_transaction(
        partial(update_policy, changes=changes, actor=actor),
        session_factory=session_factory,
    )
    return policy.model_dump(mode="json")


@router.get("/stats")
async def stats(
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await occupancy_stats(db)


# ---------------------------------------------------------------------------
# Registrations
# ---------------------------------------------------------------------------

@router.get("/registrations", response_model=RegistrationListResponse)
async def registrations(
    status: Optional[str] = None,
    channel: Optional[str] = None,
    q: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await list_registrations(db, status=status, channel=channel, search=q, page=page, limit=limit)
    return RegistrationListResponse(
        registrations=[
            AdminRegistrationRow(
                id=reg.id,
                serial=reg.serial,
                email=reg.email,
                name=reg.name,
                phone=reg.phone,
                channel=reg.channel,
                ticket_class=reg.ticket_class,
                status=reg.status,
                plus_one=reg.plus_one,
                order_id=reg.order_id,
                created_at=reg.created_at,
                token=ticket.token if ticket else None,
                used=ticket.used if ticket else None,
                used_at=ticket.used_at if ticket else None,
            )
            for reg, ticket in rows
        ],
        total=total,
        page=page,
        limit=limit,
    )


@router.post("/registrations/{registration_id}/approve", response_model=ActionResponse)
async def approve(
    registration_id: str,
    actor: str = Depends(require_admin),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    outcome = await run_in_transaction(
        partial(approve_registration, registration_id=registration_id, actor=actor),
        session_factory=session_factory,
    )
    if outcome.rejection is not None:
        return rejection_response(outcome.rejection)
    return ActionResponse(registration_id=registration_id, status=outcome.status)


@router.post("/registrations/{registration_id}/revoke", response_model=ActionResponse)
async def revoke(
    registration_id: str,
    body: Optional[RevokeRequest] = None,
    actor: str = Depends(require_admin),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    outcome = await run_in_transaction(
        partial(
            revoke_registration,
            registration_id=registration_id,
            actor=actor,
            reason=body.reason if body else "",
        ),
        session_factory=session_factory,
    )
    if outcome.rejection is not None:
        return rejection_response(outcome.rejection)
    return ActionResponse(registration_id=registration_id, status=outcome.status)


@router.post("/registrations/{registration_id}/reissue", response_model=ActionResponse)
async def reissue(
    registration_id: str,
    actor: str = Depends(require_admin),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """New token for an unused ticket; the old token stops scanning."""
    await run_in_transaction(
        partial(reissue_ticket, registration_id=registration_id, actor=actor),
        session_factory=session_factory,
    )
    return ActionResponse(registration_id=registration_id, status="confirmed")


@router.get("/tickets/{registration_id}", response_model=TicketResponse)
async def admin_ticket(
    registration_id: str,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    issued = await ticket_for_registration(db, registration_id)
    return ticket_view(issued.registration, issued.ticket)


# ---------------------------------------------------------------------------
# Lucky draw
# ---------------------------------------------------------------------------

@router.post("/draw", response_model=DrawResponse)
async def run_draw_endpoint(
    body: Optional[RunDrawRequest] = None,
    actor: str = Depends(require_admin),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Force the draw now, optionally capping the number of winners."""
    result = await execute_draw(
        count=body.count if body else None,
        actor=actor,
        session_factory=session_factory,
    )
    return DrawResponse(**result.as_dict())


# ---------------------------------------------------------------------------
# Guest-list codes
# ---------------------------------------------------------------------------

@router.get("/guest-codes", response_model=List[GuestCodeResponse])
async def guest_codes(
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await access_code_service.list_guest_codes(db)


@router.post("/guest-codes", response_model=GuestCodeResponse, status_code=201)
async def create_guest_code(
    body: GuestCodeCreate,
    actor: str = Depends(require_admin),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    return await run_in_transaction(
        partial(access_code_service.create_guest_code, actor=actor, **body.model_dump()),
        session_factory=session_factory,
    )


@router.patch("/guest-codes/{code_id}", response_model=GuestCodeResponse)
async def edit_guest_code(
    code_id: str,
    body: GuestCodeUpdate,
    actor: str = Depends(require_admin),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    return await run_in_transaction(
        partial(
            access_code_service.update_guest_code,
            code_id=code_id,
            changes=body.model_dump(exclude_unset=True),
            actor=actor,
        ),
        session_factory=session_factory,
    )


@router.delete("/guest-codes/{code_id}", response_model=GuestCodeResponse)
async def revoke_guest_code(
    code_id: str,
    actor: str = Depends(require_admin),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Revoking a code invalidates every ticket issued under it at the gate."""
    return await run_in_transaction(
        partial(access_code_service.revoke_guest_code, code_id=code_id, actor=actor),
        session_factory=session_factory,
    )


# ---------------------------------------------------------------------------
# Volunteer codes
# ---------------------------------------------------------------------------

@router.get("/volunteer-codes", response_model=List[VolunteerCodeResponse])
async def volunteer_codes(
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await access_code_service.list_volunteer_codes(db)


@router.post("/volunteer-codes", response_model=VolunteerCodeResponse, status_code=201)
async def create_volunteer_code(
    body: VolunteerCodeCreate,
    actor: str = Depends(require_admin),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    return await run_in_transaction(
        partial(
            access_code_service.create_volunteer_code,
            email=body.email,
            actor=actor,
            expires_at=body.expires_at,
        ),
        session_factory=session_factory,
    )


@router.delete("/volunteer-codes/{code_id}", response_model=VolunteerCodeResponse)
async def revoke_volunteer_code(
    code_id: str,
    actor: str = Depends(require_admin),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    return await run_in_transaction(
        partial(access_code_service.revoke_volunteer_code, code_id=code_id, actor=actor),
        session_factory=session_factory,
    )


# ---------------------------------------------------------------------------
# Export and audit
# ---------------------------------------------------------------------------

@router.get("/export")
async def export_csv(
    actor: str = Depends(require_admin),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    async def work(db):
        rows = await export_snapshot(db)
        await write_audit(db, actor, "export", details={"rows": len(rows)})
        return rows

    rows = await run_in_transaction(work, session_factory=session_factory)

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
    writer.writeheader()
    for row in rows:
        writer.writerow({key: "" if value is None else value for key, value in row.items()})

    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="registrations.csv"'},
    )


@router.get("/audit-logs", response_model=List[AuditLogResponse])
async def audit_logs(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    entries = await list_audit(db, limit=limit, offset=offset)
    return [
        AuditLogResponse(
            id=entry.id,
            actor=entry.actor,
            action=entry.action,
            target_id=entry.target_id,
            details=json.loads(entry.details or "{}"),
            created_at=entry.created_at,
        )
        for entry in entries
    ]
