"""Weekly performance scoring for SDRs and activators.

Periods are ISO weeks starting Monday 00:00 UTC. Expected ranges are defined per
baseline week (SCORING_BASELINE_HOURS, default 40) and scaled by hours worked:

  SDR        attended meetings   8-15  green >= 12, yellow >= 8, orange > 0, else red
  activator  installs completed  3-8   green >= 6 with completion > 80% and <= 1 stalled,
                                       yellow >= 3, orange > 0, else red

Trend compares with the previous week: up above +10%, down below -10%, else flat.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from dateutil.relativedelta import MO, relativedelta

import config
from db import get_db
from db.connection import UnitOfWork
from db.repositories import performance as performance_repo
from schemas.jobs import ScoringSummary

logger = logging.getLogger(__name__)

PERIOD = timedelta(days=7)
SESSION_GAP = timedelta(minutes=30)
SESSION_BUFFER = timedelta(minutes=5)
CONVERSATION_MIN_SECONDS = 30
STALLED_AFTER = timedelta(days=7)

SDR_RANGE = (8, 15)
SDR_GREEN, SDR_YELLOW = 12, 8
ACTIVATOR_RANGE = (3, 8)
ACTIVATOR_GREEN, ACTIVATOR_YELLOW = 6, 3
ACTIVATOR_GREEN_COMPLETION = 80
ACTIVATOR_GREEN_MAX_STALLED = 1


def week_start(moment: datetime) -> datetime:
    """Monday 00:00 UTC of the ISO week containing `moment`."""
    moment = moment.astimezone(timezone.utc)
    return moment + relativedelta(weekday=MO(-1), hour=0, minute=0, second=0, microsecond=0)


def hours_worked(call_times: list[datetime]) -> float:
    """Paid hours from call start times.

    Calls less than 30 minutes apart form one session; each session is credited
    5 minutes before its first call and 5 minutes after its last.
    """
    if not call_times:
        return 0.0
    ordered = sorted(call_times)
    total = timedelta()
    start = end = ordered[0]
    for moment in ordered[1:]:
        if moment - end < SESSION_GAP:
            end = moment
            continue
        total += (end - start) + 2 * SESSION_BUFFER
        start = end = moment
    total += (end - start) + 2 * SESSION_BUFFER
    return round(total.total_seconds() / 3600, 2)


def expected_range(bounds: tuple, hours: float, baseline: float) -> tuple[float, float]:
    factor = hours / baseline
    return max(0.0, round(bounds[0] * factor, 2)), round(bounds[1] * factor, 2)


def sdr_band(attended: int, hours: float, baseline: float) -> str:
    factor = hours / baseline
    if attended >= SDR_GREEN * factor:
        return "green"
    if attended >= SDR_YELLOW * factor:
        return "yellow"
    if attended > 0:
        return "orange"
    return "red"


def activator_band(
    installs: int, completion_rate: float, stalled: int, hours: float, baseline: float
) -> str:
    factor = hours / baseline
    if (
        installs >= ACTIVATOR_GREEN * factor
        and completion_rate > ACTIVATOR_GREEN_COMPLETION
        and stalled <= ACTIVATOR_GREEN_MAX_STALLED
    ):
        return "green"
    if ACTIVATOR_YELLOW * factor <= installs < ACTIVATOR_GREEN * factor:
        return "yellow"
    if installs > 0:
        return "orange"
    return "red"


def trend(current: float, prior: float) -> str:
    if current > prior * 1.1:
        return "up"
    if current < prior * 0.9:
        return "down"
    return "flat"


def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


async def sdr_metrics(session, user_id, start: datetime, end: datetime) -> dict:
    calls = await performance_repo.get_calls(session, user_id, start, end)
    booked = await performance_repo.count_booked(session, user_id, start, end)
    attended = await performance_repo.count_attended_booked_by(session, user_id, start, end)
    return {
        "hours_worked": hours_worked([c.initiated_at for c in calls]),
        "dials": len(calls),
        "conversations": sum(1 for c in calls if (c.duration_seconds or 0) >= CONVERSATION_MIN_SECONDS),
        "meetings_booked": booked,
        "meetings_attended": attended,
        "rate_pct": _pct(attended, booked),
    }


async def activator_metrics(session, user_id, start: datetime, end: datetime, now: datetime) -> dict:
    calls = await performance_repo.get_calls(session, user_id, start, end)
    completed = await performance_repo.get_completed_by_activator(session, user_id, start, end)
    pipeline_ids = {m.trial_pipeline_id for m in completed if m.trial_pipeline_id is not None}
    installs = await performance_repo.count_installs(session, pipeline_ids, start, end)
    stalled = await performance_repo.count_stalled_installs(session, user_id, now - STALLED_AFTER)
    return {
        "hours_worked": hours_worked([c.initiated_at for c in calls]),
        "dials": len(calls),
        "meetings_attended": len(completed),
        "installs_completed": installs,
        "stalled_installs": stalled,
        "rate_pct": _pct(installs, len(completed)),
    }


def _sdr_row(user_id, start, end, current: dict, prior: dict, baseline: float) -> dict:
    low, high = expected_range(SDR_RANGE, current["hours_worked"], baseline)
    return {
        "user_id": user_id,
        "role": "sdr",
        "period_start": start,
        "period_end": end,
        **current,
        "expected_min": low,
        "expected_max": high,
        "score_band": sdr_band(current["meetings_attended"], current["hours_worked"], baseline),
        "trend": trend(current["meetings_attended"], prior["meetings_attended"]),
    }


def _activator_row(user_id, start, end, current: dict, prior: dict, baseline: float) -> dict:
    low, high = expected_range(ACTIVATOR_RANGE, current["hours_worked"], baseline)
    return {
        "user_id": user_id,
        "role": "activator",
        "period_start": start,
        "period_end": end,
        **current,
        "expected_min": low,
        "expected_max": high,
        "score_band": activator_band(
            current["installs_completed"],
            current["rate_pct"],
            current["stalled_installs"],
            current["hours_worked"],
            baseline,
        ),
        "trend": trend(current["installs_completed"], prior["installs_completed"]),
    }


async def run_weekly_scoring(
    db: UnitOfWork = get_db,
    now: Optional[datetime] = None,
    period_start: Optional[datetime] = None,
) -> ScoringSummary:
    """Score every active user for the week containing `now` (or starting at period_start).

    Users with neither calls nor meetings in the week get no row. Re-running
    overwrites the week's rows via the (user_id, period_start, role) key.
    """
    now = now or datetime.now(timezone.utc)
    start = week_start(period_start or now)
    end = start + PERIOD
    prior_start = start - PERIOD
    baseline = config.scoring_baseline_hours()
    summary = ScoringSummary(timestamp=now, period_start=start, period_end=end)

    async with db() as session:
        users = await performance_repo.get_active_users(session)

    for user in users:
        try:
            async with db() as session:
                calls = await performance_repo.get_calls(session, user.id, start, end)
                meeting_count = await performance_repo.count_meetings_involving(session, user.id, start, end)
                if not calls and not meeting_count:
                    summary.users_skipped += 1
                    continue

                if calls:
                    current = await sdr_metrics(session, user.id, start, end)
                    prior = await sdr_metrics(session, user.id, prior_start, start)
                    await performance_repo.upsert_snapshot(
                        session, {**_sdr_row(user.id, start, end, current, prior, baseline), "computed_at": now}
                    )
                    summary.rows_written += 1

                if user.is_activator or meeting_count:
                    current = await activator_metrics(session, user.id, start, end, now)
                    prior = await activator_metrics(session, user.id, prior_start, start, now)
                    await performance_repo.upsert_snapshot(
                        session, {**_activator_row(user.id, start, end, current, prior, baseline), "computed_at": now}
                    )
                    summary.rows_written += 1
        except Exception as exc:
            logger.warning("Scoring failed for user %s", user.id, exc_info=True)
            summary.add_error(stage="scoring", error=str(exc), entity_id=user.id)

    logger.info(
        "Weekly scoring %s: %d row(s), %d user(s) skipped, %d error(s)",
        start.date(), summary.rows_written, summary.users_skipped, len(summary.errors),
    )
    return summary
