"""
Tests for the event policy store.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from gatepass.core.errors import InvalidSetting, RejectionCode
from gatepass.models.settings import EventSetting
from gatepass.services.audit_service import list_audit
from gatepass.services.policy_service import (
    POLICY_KEYS,
    PolicySettings,
    ensure_policy_defaults,
    load_policy,
)


@pytest.mark.asyncio
async def test_missing_keys_fall_back_to_defaults(db_session):
    policy = await load_policy(db_session)
    assert policy.fcfs_limit == 200
    assert policy.total_free_cap == 400
    assert policy.total_paid_cap == 600
    assert policy.checkout_timeout_mins == 5
    assert policy.draw_has_run is False
    assert policy.event_start_at is None


@pytest.mark.asyncio
async def test_update_is_persisted_and_audited(configure, session_factory):
    await configure(total_free_cap=50, fcfs_limit=20, paid_enabled=False)

    async with session_factory() as db:
        policy = await load_policy(db)
        stored = dict((await db.execute(select(EventSetting.key, EventSetting.value))).all())
        audit = await list_audit(db)

    assert policy.total_free_cap == 50
    assert policy.fcfs_limit == 20
    assert policy.paid_enabled is False
    assert stored["paid_enabled"] == "0"
    assert stored["total_free_cap"] == "50"
    assert audit[0].action == "settings_update"
    assert audit[0].actor == "tester"


@pytest.mark.asyncio
async def test_fcfs_limit_cannot_exceed_free_cap(configure, db_session):
    with pytest.raises(InvalidSetting) as exc_info:
        await configure(fcfs_limit=500)
    assert exc_info.value.code == RejectionCode.FCFS_EXCEEDS_CAP

    # Nothing was written
    assert (await load_policy(db_session)).fcfs_limit == 200


@pytest.mark.asyncio
async def test_unknown_and_invalid_settings(configure):
    with pytest.raises(InvalidSetting) as unknown:
        await configure(free_reg_enabled=True)
    assert unknown.value.code == RejectionCode.UNKNOWN_SETTING

    with pytest.raises(InvalidSetting) as invalid:
        await configure(checkout_timeout_mins=0)
    assert invalid.value.code == RejectionCode.INVALID_SETTING


@pytest.mark.asyncio
async def test_seeding_keeps_existing_values(configure, tx, db_session):
    await configure(event_name="Night Market")
    await tx(ensure_policy_defaults)
    await tx(ensure_policy_defaults)

    keys = set((await db_session.execute(select(EventSetting.key))).scalars().all())
    assert keys == set(POLICY_KEYS)
    assert (await load_policy(db_session)).event_name == "Night Market"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("", None),
        ("0", None),
        ("1767225600000", datetime(2026, 1, 1, tzinfo=timezone.utc)),
        ("2026-01-01T00:00:00+00:00", datetime(2026, 1, 1, tzinfo=timezone.utc)),
        ("2026-01-01T05:30:00+05:30", datetime(2026, 1, 1, tzinfo=timezone.utc)),
    ],
)
def test_event_start_accepts_epoch_ms_and_iso(raw, expected):
    assert PolicySettings.model_validate({"event_start_at": raw}).event_start_at == expected


def test_public_view_hides_operational_knobs():
    view = PolicySettings(draw_has_run=True).public_view()
    assert view["draw_accepting"] is False
    assert "total_free_cap" not in view
    assert "draw_has_run" not in view
