import json
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gatepass.models.settings import AuditLog


async def write_audit(
    db: AsyncSession,
    actor: str,
    action: str,
    target_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Record an administrative action in the same transaction as the action itself."""
    entry = AuditLog(
        actor=actor,
        action=action,
        target_id=target_id,
        details=json.dumps(details or {}, default=str, sort_keys=True),
    )
    db.add(entry)
    await db.flush()
    return entry


async def list_audit(db: AsyncSession, limit: int = 100, offset: int = 0) -> List[AuditLog]:
    result = await db.execute(
        select(AuditLog)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())
