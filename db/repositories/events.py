"""Activation event log — append-only, no update or delete."""
import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ActivationEvent, TrialPipeline

logger = logging.getLogger(__name__)


async def append(
    session: AsyncSession,
    trial_pipeline_id: UUID,
    event_type: str,
    actor_user_id: Optional[UUID] = None,
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> ActivationEvent:
    """Append one audit row and bump the pipeline's last_event_at."""
    now = now or datetime.now(timezone.utc)
    event = ActivationEvent(
        trial_pipeline_id=trial_pipeline_id,
        event_type=event_type,
        actor_user_id=actor_user_id,
        metadata_=_jsonable(metadata or {}),
        created_at=now,
    )
    session.add(event)
    await session.execute(
        update(TrialPipeline)
        .where(TrialPipeline.id == trial_pipeline_id)
        .values(last_event_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.flush()
    return event


async def list_for_pipeline(
    session: AsyncSession, trial_pipeline_id: UUID, event_type: Optional[str] = None
) -> list[ActivationEvent]:
    """Return a pipeline's events, oldest first, optionally filtered by type."""
    query = select(ActivationEvent).where(ActivationEvent.trial_pipeline_id == trial_pipeline_id)
    if event_type is not None:
        query = query.where(ActivationEvent.event_type == event_type)
    result = await session.execute(query.order_by(ActivationEvent.created_at))
    return list(result.scalars().all())


async def count(session: AsyncSession, trial_pipeline_id: UUID, event_type: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(ActivationEvent)
        .where(ActivationEvent.trial_pipeline_id == trial_pipeline_id)
        .where(ActivationEvent.event_type == event_type)
    )
    return result.scalar_one()


def _jsonable(value):
    """UUIDs and datetimes in metadata are stored as strings."""
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value
