"""Weekly scoring: pure formulas plus one end-to-end run against the test database."""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from activation.scoring import (
    activator_band,
    expected_range,
    hours_worked,
    run_weekly_scoring,
    sdr_band,
    trend,
    week_start,
)
from db.models import CallLog
from db.repositories import performance as performance_repo
from conftest import add_meeting, add_pipeline, add_user

MONDAY = datetime(2026, 3, 2, tzinfo=timezone.utc)


class TestFormulas:
    def test_week_starts_monday_midnight_utc(self, now):
        assert week_start(now) == MONDAY
        assert week_start(MONDAY + timedelta(hours=1)) == MONDAY
        assert week_start(MONDAY - timedelta(minutes=1)) == MONDAY - timedelta(days=7)

    def test_hours_worked_groups_calls_into_sessions(self):
        t = MONDAY + timedelta(hours=9)
        assert hours_worked([]) == 0.0
        assert hours_worked([t]) == 0.17
        # 20 minutes apart: one session of 20 + 10 buffer minutes
        assert hours_worked([t, t + timedelta(minutes=20)]) == 0.5
        # 40 minutes apart: two 10-minute sessions
        assert hours_worked([t + timedelta(minutes=40), t]) == 0.33

    def test_expected_range_scales_with_hours(self):
        assert expected_range((8, 15), 40, 40) == (8.0, 15.0)
        assert expected_range((8, 15), 20, 40) == (4.0, 7.5)

    def test_sdr_bands(self):
        assert sdr_band(12, 40, 40) == "green"
        assert sdr_band(8, 40, 40) == "yellow"
        assert sdr_band(1, 40, 40) == "orange"
        assert sdr_band(0, 40, 40) == "red"
        assert sdr_band(6, 20, 40) == "green"

    def test_activator_bands(self):
        assert activator_band(6, 90, 0, 40, 40) == "green"
        assert activator_band(6, 90, 2, 40, 40) == "orange"
        assert activator_band(4, 50, 0, 40, 40) == "yellow"
        assert activator_band(1, 100, 0, 40, 40) == "orange"
        assert activator_band(0, 0, 0, 40, 40) == "red"

    def test_trend_uses_ten_percent_bands(self):
        assert trend(12, 10) == "up"
        assert trend(10.5, 10) == "flat"
        assert trend(8, 10) == "down"
        assert trend(0, 0) == "flat"


async def _add_calls(db, user_id, times, duration=45):
    async with db() as session:
        for moment in times:
            session.add(CallLog(id=uuid.uuid4(), user_id=user_id, initiated_at=moment, duration_seconds=duration))


@pytest.mark.asyncio
async def test_weekly_run_writes_one_row_per_role_and_is_rerunnable(db, now):
    sdr = await add_user(db, sdr_code="JD1")
    activator = await add_user(db, is_activator=True)
    await add_user(db)  # idle

    await _add_calls(db, sdr, [MONDAY + timedelta(hours=9, minutes=m) for m in (0, 10, 20)])

    pipeline = await add_pipeline(db, status="attended", first_lead_received_at=MONDAY + timedelta(days=1))
    start = MONDAY + timedelta(hours=11)
    await add_meeting(
        db, activator, start, start + timedelta(minutes=30),
        status="completed", completed_at=start + timedelta(minutes=30),
        scheduled_by_sdr_user_id=sdr, trial_pipeline_id=pipeline.id,
    )

    first = await run_weekly_scoring(db=db, now=now)
    second = await run_weekly_scoring(db=db, now=now)

    assert first.period_start == MONDAY
    assert first.users_skipped == 1
    # sdr booked a meeting, so it is scored in both roles
    assert first.rows_written == 3
    assert second.rows_written == 3

    async with db() as session:
        sdr_row = await performance_repo.get_snapshot(session, sdr, MONDAY, "sdr")
        activator_row = await performance_repo.get_snapshot(session, activator, MONDAY, "activator")
    assert sdr_row.dials == 3
    assert sdr_row.conversations == 3
    assert sdr_row.meetings_booked == 1
    assert sdr_row.meetings_attended == 1
    assert sdr_row.rate_pct == Decimal("100.00")
    assert sdr_row.hours_worked == Decimal("0.50")
    assert activator_row.meetings_attended == 1
    assert activator_row.installs_completed == 1
    assert activator_row.trend == "up"


@pytest.mark.asyncio
async def test_one_users_failure_does_not_stop_the_run(db, now, monkeypatch):
    broken = await add_user(db, email="a-broken@crm.test")
    healthy = await add_user(db, email="b-healthy@crm.test")
    for user in (broken, healthy):
        await _add_calls(db, user, [MONDAY + timedelta(hours=9)])
    get_calls = performance_repo.get_calls

    async def flaky_get_calls(session, user_id, start, end):
        if user_id == broken:
            raise RuntimeError("call log unavailable")
        return await get_calls(session, user_id, start, end)

    monkeypatch.setattr(performance_repo, "get_calls", flaky_get_calls)

    summary = await run_weekly_scoring(db=db, now=now)

    assert [(e.stage, e.entity_id) for e in summary.errors] == [("scoring", str(broken))]
    assert summary.rows_written == 1
    async with db() as session:
        assert await performance_repo.get_snapshot(session, healthy, MONDAY, "sdr") is not None
        assert await performance_repo.get_snapshot(session, broken, MONDAY, "sdr") is None
