"""
Event policy knobs stored one row per key in `event_settings`.

Reads always load the whole table and validate it into PolicySettings, so a
request never acts on a half-applied edit. Writes validate the merged result
before a single row is touched.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gatepass.core.clock import as_utc, from_epoch_ms
from gatepass.core.errors import InvalidSetting, RejectionCode
from gatepass.core.logging import get_logger
from gatepass.db.session import insert_for
from gatepass.models.settings import EventSetting
from gatepass.services.audit_service import write_audit

logger = get_logger(__name__)


class PolicySettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_name: str = "LocalHost Festival"
    event_start_at: Optional[datetime] = None

    # Channel toggles
    free_enabled: bool = True
    paid_enabled: bool = True
    vip_enabled: bool = True
    volunteer_enabled: bool = True
    draw_enabled: bool = True
    draw_accepting: bool = True

    # Capacity
    fcfs_limit: int = Field(200, ge=0)
    total_free_cap: int = Field(400, ge=0)
    total_paid_cap: int = Field(600, ge=0)
    max_paid_per_person: int = Field(3, ge=1)

    # Timing
    checkout_timeout_mins: int = Field(5, ge=1)
    late_cutoff_mins: int = Field(30, ge=0)

    # Pricing (display only)
    paid_price: int = Field(499, ge=0)
    vip_price: int = Field(999, ge=0)

    # Lottery
    draw_auto_run: bool = True
    draw_run_offset_mins: int = Field(120, ge=0)
    draw_has_run: bool = False

    # Plus-ones
    plus_one_vip_enabled: bool = True
    plus_one_volunteer_enabled: bool = False

    @field_validator("event_start_at", mode="before")
    @classmethod
    def parse_event_start(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            value = value.strip()
            if value in ("", "0"):
                return None
            if value.isdigit():
                return from_epoch_ms(int(value))
        if isinstance(value, int) and not isinstance(value, bool):
            return from_epoch_ms(value) if value else None
        return value

    @field_validator("event_start_at")
    @classmethod
    def tag_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @model_validator(mode="after")
    def check_fcfs_within_cap(self) -> "PolicySettings":
        if self.fcfs_limit > self.total_free_cap:
            raise ValueError("FCFS_EXCEEDS_CAP: fcfs_limit cannot exceed total_free_cap")
        return self

    def draw_trigger_at(self) -> Optional[datetime]:
        if self.event_start_at is None:
            return None
        return self.event_start_at - timedelta(minutes=self.draw_run_offset_mins)

    def public_view(self) -> Dict[str, Any]:
        """The subset of knobs the registration pages need."""
        return {
            "event_name": self.event_name,
            "event_start_at": self.event_start_at.isoformat() if self.event_start_at else None,
            "free_enabled": self.free_enabled,
            "paid_enabled": self.paid_enabled,
            "vip_enabled": self.vip_enabled,
            "volunteer_enabled": self.volunteer_enabled,
            "draw_enabled": self.draw_enabled,
            "draw_accepting": self.draw_accepting and not self.draw_has_run,
            "paid_price": self.paid_price,
            "vip_price": self.vip_price,
            "max_paid_per_person": self.max_paid_per_person,
            "checkout_timeout_mins": self.checkout_timeout_mins,
            "plus_one_vip_enabled": self.plus_one_vip_enabled,
            "plus_one_volunteer_enabled": self.plus_one_volunteer_enabled,
        }


POLICY_KEYS = frozenset(PolicySettings.model_fields)


def serialize_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return str(value)


def _to_storage(policy: PolicySettings) -> Dict[str, str]:
    return {key: serialize_value(getattr(policy, key)) for key in POLICY_KEYS}


def _validation_error(exc: ValidationError) -> InvalidSetting:
    first = exc.errors()[0]
    message = str(first.get("msg", "Invalid setting"))
    if "FCFS_EXCEEDS_CAP" in message:
        return InvalidSetting(
            "fcfs_limit cannot exceed total_free_cap",
            code=RejectionCode.FCFS_EXCEEDS_CAP,
        )
    field = ".".join(str(part) for part in first.get("loc", ())) or "settings"
    return InvalidSetting(f"{field}: {message}")


async def load_policy(db: AsyncSession) -> PolicySettings:
    """Read every stored knob; missing keys fall back to their defaults."""
    result = await db.execute(select(EventSetting.key, EventSetting.value))
    stored = {key: value for key, value in result.all() if key in POLICY_KEYS}
    try:
        return PolicySettings.model_validate(stored)
    except ValidationError:
        logger.error("policy_settings_invalid", stored=stored)
        raise


async def _upsert(db: AsyncSession, rows: Dict[str, str]) -> None:
    if not rows:
        return
    insert = insert_for(db)
    stmt = insert(EventSetting).values([{"key": k, "value": v} for k, v in rows.items()])
    stmt = stmt.on_conflict_do_update(
        index_elements=[EventSetting.key],
        set_={"value": stmt.excluded.value},
    )
    await db.execute(stmt)


async def update_policy(
    db: AsyncSession,
    changes: Dict[str, Any],
    actor: str = "admin",
) -> PolicySettings:
    """
    Apply an administrative edit.
    Raises InvalidSetting (UNKNOWN_SETTING, FCFS_EXCEEDS_CAP, INVALID_SETTING)
    before anything is written.
    """
    unknown = sorted(set(changes) - POLICY_KEYS)
    if unknown:
        raise InvalidSetting(
            f"Unknown setting(s): {', '.join(unknown)}",
            code=RejectionCode.UNKNOWN_SETTING,
        )

    current = await load_policy(db)
    merged = current.model_dump()
    merged.update(changes)
    try:
        updated = PolicySettings.model_validate(merged)
    except ValidationError as exc:
        raise _validation_error(exc) from exc

    stored = _to_storage(updated)
    await _upsert(db, {key: stored[key] for key in changes})
    await write_audit(
        db,
        actor=actor,
        action="settings_update",
        details={key: stored[key] for key in changes},
    )
    logger.info("policy_updated", actor=actor, keys=sorted(changes))
    return updated


async def ensure_policy_defaults(db: AsyncSession) -> None:
    """Insert defaults for keys that have no row yet; existing values are kept."""
    result = await db.execute(select(EventSetting.key))
    present = set(result.scalars().all())
    defaults = _to_storage(PolicySettings())
    missing = {key: value for key, value in defaults.items() if key not in present}
    if missing:
        db.add_all([EventSetting(key=key, value=value) for key, value in missing.items()])
        await db.flush()
        logger.info("policy_defaults_seeded", keys=sorted(missing))


async def mark_draw_has_run(db: AsyncSession) -> bool:
    """
    Flip the one-shot draw flag.
    Returns False if another transaction already flipped it.
    """
    result = await db.execute(
        update(EventSetting)
        .where(EventSetting.key == "draw_has_run", EventSetting.value != "1")
        .values(value="1")
    )
    if result.rowcount:
        return True

    existing = await db.get(EventSetting, "draw_has_run")
    if existing is not None:
        return False
    db.add(EventSetting(key="draw_has_run", value="1"))
    await db.flush()
    return True
