"""Activation meeting repository — conflict lookup, guarded status changes, linking."""
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ActivationMeeting, TrialPipeline

logger = logging.getLogger(__name__)

# Name of the Postgres exclusion constraint (migration 002)
OVERLAP_CONSTRAINT = "ex_activation_meetings_no_overlap"


async def get(session: AsyncSession, meeting_id: UUID) -> Optional[ActivationMeeting]:
    result = await session.execute(
        select(ActivationMeeting)
        .where(ActivationMeeting.id == meeting_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_overlapping(
    session: AsyncSession,
    activator_user_id: UUID,
    start: datetime,
    end: datetime,
    exclude_id: Optional[UUID] = None,
) -> Optional[ActivationMeeting]:
    """Return a scheduled meeting of this activator overlapping [start, end), if any.

    Half-open test: existing.start < end AND existing.end > start.
    """
    query = (
        select(ActivationMeeting)
        .where(ActivationMeeting.activator_user_id == activator_user_id)
        .where(ActivationMeeting.status == "scheduled")
        .where(ActivationMeeting.scheduled_start_at < end)
        .where(ActivationMeeting.scheduled_end_at > start)
        .order_by(ActivationMeeting.scheduled_start_at)
        .limit(1)
    )
    if exclude_id is not None:
        query = query.where(ActivationMeeting.id != exclude_id)
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def create(session: AsyncSession, **fields: Any) -> ActivationMeeting:
    meeting = ActivationMeeting(**fields)
    session.add(meeting)
    await session.flush()
    return meeting


async def update_if_status(
    session: AsyncSession,
    meeting_id: UUID,
    expected_status: str,
    **values: Any,
) -> Optional[ActivationMeeting]:
    """Update a meeting only while it still has expected_status."""
    result = await session.execute(
        update(ActivationMeeting)
        .where(ActivationMeeting.id == meeting_id)
        .where(ActivationMeeting.status == expected_status)
        .values(**values)
        .returning(ActivationMeeting),
        execution_options={"populate_existing": True, "synchronize_session": False},
    )
    meeting = result.scalar_one_or_none()
    await session.flush()
    return meeting


async def link_to_pipeline(
    session: AsyncSession, crm_lead_id: UUID, trial_pipeline_id: UUID
) -> list[UUID]:
    """Attach every unlinked meeting for this lead to the pipeline.

    Already-linked meetings are never touched, so re-running is a no-op.
    """
    result = await session.execute(
        update(ActivationMeeting)
        .where(ActivationMeeting.crm_lead_id == crm_lead_id)
        .where(ActivationMeeting.trial_pipeline_id.is_(None))
        .values(trial_pipeline_id=trial_pipeline_id)
        .returning(ActivationMeeting.id),
        execution_options={"synchronize_session": False},
    )
    ids = list(result.scalars().all())
    await session.flush()
    return ids


async def next_scheduled(
    session: AsyncSession, meeting_ids: list[UUID]
) -> Optional[ActivationMeeting]:
    """Earliest still-scheduled meeting among meeting_ids."""
    if not meeting_ids:
        return None
    result = await session.execute(
        select(ActivationMeeting)
        .where(ActivationMeeting.id.in_(list(meeting_ids)))
        .where(ActivationMeeting.status == "scheduled")
        .order_by(ActivationMeeting.scheduled_start_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_unlinked_with_pipeline(
    session: AsyncSession, crm_lead_id: Optional[UUID] = None
) -> list[tuple[UUID, UUID]]:
    """(crm_lead_id, pipeline_id) pairs where some meeting for the lead is still unlinked."""
    query = (
        select(TrialPipeline.crm_lead_id, TrialPipeline.id)
        .join(ActivationMeeting, ActivationMeeting.crm_lead_id == TrialPipeline.crm_lead_id)
        .where(ActivationMeeting.trial_pipeline_id.is_(None))
        .distinct()
    )
    if crm_lead_id is not None:
        query = query.where(TrialPipeline.crm_lead_id == crm_lead_id)
    result = await session.execute(query)
    return [(row[0], row[1]) for row in result.all()]


async def get_due_for_reminder(
    session: AsyncSession, window_start: datetime, window_end: datetime
) -> list[ActivationMeeting]:
    """Scheduled, not yet reminded, starting inside [window_start, window_end]."""
    result = await session.execute(
        select(ActivationMeeting)
        .where(ActivationMeeting.status == "scheduled")
        .where(ActivationMeeting.reminder_24h_sent_at.is_(None))
        .where(ActivationMeeting.scheduled_start_at >= window_start)
        .where(ActivationMeeting.scheduled_start_at <= window_end)
        .order_by(ActivationMeeting.scheduled_start_at)
    )
    return list(result.scalars().all())


async def claim_for_reminder(
    session: AsyncSession, meeting_id: UUID
) -> Optional[ActivationMeeting]:
    """Lock the meeting for this transaction if it still needs its reminder.

    A concurrent dispatcher holding the lock makes this return None (SKIP LOCKED).
    """
    result = await session.execute(
        select(ActivationMeeting)
        .where(ActivationMeeting.id == meeting_id)
        .where(ActivationMeeting.status == "scheduled")
        .where(ActivationMeeting.reminder_24h_sent_at.is_(None))
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def mark_reminder_sent(
    session: AsyncSession, meeting_id: UUID, now: Optional[datetime] = None
) -> bool:
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        update(ActivationMeeting)
        .where(ActivationMeeting.id == meeting_id)
        .where(ActivationMeeting.reminder_24h_sent_at.is_(None))
        .values(reminder_24h_sent_at=now)
        .returning(ActivationMeeting.id),
        execution_options={"synchronize_session": False},
    )
    await session.flush()
    return result.scalar_one_or_none() is not None


async def get_chain(session: AsyncSession, meeting_id: UUID) -> list[ActivationMeeting]:
    """Walk rescheduled_from_id back to the original booking; oldest first."""
    chain = []
    current = await get(session, meeting_id)
    while current is not None:
        chain.append(current)
        if current.rescheduled_from_id is None:
            break
        current = await get(session, current.rescheduled_from_id)
    return list(reversed(chain))
