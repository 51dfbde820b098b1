"""Weekly performance queries and snapshot upserts."""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ActivationMeeting, CallLog, TrialPipeline, UserProfile, WeeklyPerformance
from db.repositories._upsert import insert_for

logger = logging.getLogger(__name__)


async def get_active_users(session: AsyncSession) -> list[UserProfile]:
    result = await session.execute(
        select(UserProfile).where(UserProfile.is_active.is_(True)).order_by(UserProfile.email)
    )
    return list(result.scalars().all())


async def get_calls(
    session: AsyncSession, user_id: UUID, start: datetime, end: datetime
) -> list[CallLog]:
    result = await session.execute(
        select(CallLog)
        .where(CallLog.user_id == user_id)
        .where(CallLog.initiated_at >= start)
        .where(CallLog.initiated_at < end)
        .order_by(CallLog.initiated_at)
    )
    return list(result.scalars().all())


async def count_meetings_involving(
    session: AsyncSession, user_id: UUID, start: datetime, end: datetime
) -> int:
    """Meetings starting in [start, end) that the user booked or runs."""
    result = await session.execute(
        select(func.count())
        .select_from(ActivationMeeting)
        .where(
            or_(
                ActivationMeeting.scheduled_by_sdr_user_id == user_id,
                ActivationMeeting.activator_user_id == user_id,
            )
        )
        .where(ActivationMeeting.scheduled_start_at >= start)
        .where(ActivationMeeting.scheduled_start_at < end)
    )
    return result.scalar_one()


async def count_booked(
    session: AsyncSession, sdr_user_id: UUID, start: datetime, end: datetime
) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(ActivationMeeting)
        .where(ActivationMeeting.scheduled_by_sdr_user_id == sdr_user_id)
        .where(ActivationMeeting.scheduled_start_at >= start)
        .where(ActivationMeeting.scheduled_start_at < end)
    )
    return result.scalar_one()


async def count_attended_booked_by(
    session: AsyncSession, sdr_user_id: UUID, start: datetime, end: datetime
) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(ActivationMeeting)
        .where(ActivationMeeting.scheduled_by_sdr_user_id == sdr_user_id)
        .where(ActivationMeeting.status == "completed")
        .where(ActivationMeeting.completed_at >= start)
        .where(ActivationMeeting.completed_at < end)
    )
    return result.scalar_one()


async def get_completed_by_activator(
    session: AsyncSession, activator_user_id: UUID, start: datetime, end: datetime
) -> list[ActivationMeeting]:
    result = await session.execute(
        select(ActivationMeeting)
        .where(ActivationMeeting.activator_user_id == activator_user_id)
        .where(ActivationMeeting.status == "completed")
        .where(ActivationMeeting.completed_at >= start)
        .where(ActivationMeeting.completed_at < end)
    )
    return list(result.scalars().all())


async def count_installs(
    session: AsyncSession, pipeline_ids: set, start: datetime, end: datetime
) -> int:
    """Pipelines among pipeline_ids whose first lead arrived in [start, end)."""
    if not pipeline_ids:
        return 0
    result = await session.execute(
        select(func.count())
        .select_from(TrialPipeline)
        .where(TrialPipeline.id.in_(list(pipeline_ids)))
        .where(TrialPipeline.first_lead_received_at >= start)
        .where(TrialPipeline.first_lead_received_at < end)
    )
    return result.scalar_one()


async def count_stalled_installs(
    session: AsyncSession, activator_user_id: UUID, completed_before: datetime
) -> int:
    """Pipelines this activator installed before `completed_before` that never got a first lead."""
    installed = (
        select(ActivationMeeting.trial_pipeline_id)
        .where(ActivationMeeting.activator_user_id == activator_user_id)
        .where(ActivationMeeting.status == "completed")
        .where(ActivationMeeting.completed_at < completed_before)
        .where(ActivationMeeting.trial_pipeline_id.is_not(None))
    )
    result = await session.execute(
        select(func.count())
        .select_from(TrialPipeline)
        .where(TrialPipeline.id.in_(installed))
        .where(TrialPipeline.first_lead_received_at.is_(None))
    )
    return result.scalar_one()


async def get_snapshot(
    session: AsyncSession, user_id: UUID, period_start: datetime, role: str
) -> Optional[WeeklyPerformance]:
    result = await session.execute(
        select(WeeklyPerformance)
        .where(WeeklyPerformance.user_id == user_id)
        .where(WeeklyPerformance.period_start == period_start)
        .where(WeeklyPerformance.role == role)
    )
    return result.scalar_one_or_none()


async def upsert_snapshot(session: AsyncSession, row: dict) -> WeeklyPerformance:
    """Insert or replace the snapshot for (user_id, period_start, role)."""
    key = ("user_id", "period_start", "role")
    stmt = (
        insert_for(session, WeeklyPerformance)
        .values(**row)
        .on_conflict_do_update(
            index_elements=list(key),
            set_={k: v for k, v in row.items() if k not in key},
        )
        .returning(WeeklyPerformance)
    )
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    await session.flush()
    return result.scalar_one()
