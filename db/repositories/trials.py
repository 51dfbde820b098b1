"""Trial pipeline repository — idempotent upsert, write-once milestones, guarded updates.

Every mutating function re-checks its precondition inside the UPDATE's WHERE
clause and returns None (or False) when the row no longer qualifies, so callers
never act on a stale read.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from activation.variants import followup_task
from db.models import MILESTONE_FIELDS, TERMINAL_STATUSES, TrialPipeline
from db.repositories._upsert import insert_for
from schemas.trial import Attribution

logger = logging.getLogger(__name__)

_NOT_TERMINAL = TrialPipeline.status.not_in(TERMINAL_STATUSES)


async def get(session: AsyncSession, pipeline_id: UUID) -> Optional[TrialPipeline]:
    result = await session.execute(
        select(TrialPipeline)
        .where(TrialPipeline.id == pipeline_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_by_lead(session: AsyncSession, crm_lead_id: UUID) -> Optional[TrialPipeline]:
    result = await session.execute(
        select(TrialPipeline)
        .where(TrialPipeline.crm_lead_id == crm_lead_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_by_external_account(
    session: AsyncSession, external_account_id: str
) -> Optional[TrialPipeline]:
    result = await session.execute(
        select(TrialPipeline).where(TrialPipeline.external_account_id == external_account_id)
    )
    return result.scalar_one_or_none()


async def _update_returning(session: AsyncSession, *where, **values) -> Optional[TrialPipeline]:
    stmt = (
        update(TrialPipeline)
        .where(*where)
        .values(**values)
        .returning(TrialPipeline)
    )
    result = await session.execute(
        stmt,
        execution_options={"populate_existing": True, "synchronize_session": False},
    )
    pipeline = result.scalar_one_or_none()
    await session.flush()
    return pipeline


async def upsert_on_trial_start(
    session: AsyncSession,
    crm_lead_id: UUID,
    attribution: Attribution,
    variant: str,
    external_account_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[TrialPipeline, bool]:
    """Create the pipeline for a lead, or refresh attribution on an existing one.

    Dedup key: crm_lead_id. The insert carries owner, touch codes, variant and the
    variant's follow-up task in a single statement. On conflict only last_touch_code,
    a missing first_touch_code and external_account_id change; killed pipelines are
    left alone. Returns (pipeline, created).
    """
    now = now or datetime.now(timezone.utc)
    data = {
        "crm_lead_id": crm_lead_id,
        "external_account_id": external_account_id,
        "owner_sdr_id": attribution.owner_sdr_id,
        "first_touch_code": attribution.first_touch_code,
        "last_touch_code": attribution.last_touch_code,
        "followup_variant": variant,
        "trial_started_at": now,
        "status": "queued",
        "created_at": now,
        "updated_at": now,
        **followup_task(variant, now),
    }
    stmt = (
        insert_for(session, TrialPipeline)
        .values(**data)
        .on_conflict_do_nothing(index_elements=["crm_lead_id"])
        .returning(TrialPipeline)
    )
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    await session.flush()
    pipeline = result.scalar_one_or_none()
    if pipeline is not None:
        logger.info("Created trial pipeline %s for lead %s (variant %s)", pipeline.id, crm_lead_id, variant)
        return pipeline, True

    pipeline = await _update_returning(
        session,
        TrialPipeline.crm_lead_id == crm_lead_id,
        TrialPipeline.killed_at.is_(None),
        last_touch_code=attribution.last_touch_code,
        first_touch_code=func.coalesce(TrialPipeline.first_touch_code, attribution.first_touch_code),
        external_account_id=func.coalesce(external_account_id, TrialPipeline.external_account_id),
        updated_at=now,
    )
    if pipeline is None:
        # Killed: attribution is frozen along with everything else
        pipeline = await get_by_lead(session, crm_lead_id)
        logger.info("Trial re-provisioned for killed pipeline %s; left unchanged", pipeline.id)
    return pipeline, False


async def record_milestone(
    session: AsyncSession,
    pipeline_id: UUID,
    field: str,
    now: Optional[datetime] = None,
) -> bool:
    """Set a lifecycle timestamp if it is still null. Returns True if this call set it."""
    if field not in MILESTONE_FIELDS:
        raise ValueError(f"Unknown milestone field: {field}")
    now = now or datetime.now(timezone.utc)
    column = getattr(TrialPipeline, field)
    result = await session.execute(
        update(TrialPipeline)
        .where(TrialPipeline.id == pipeline_id)
        .where(column.is_(None))
        .where(TrialPipeline.killed_at.is_(None))
        .values({field: now, "updated_at": now})
        .returning(TrialPipeline.id),
        execution_options={"synchronize_session": False},
    )
    await session.flush()
    return result.scalar_one_or_none() is not None


async def transition(
    session: AsyncSession,
    pipeline_id: UUID,
    expected_status: str,
    new_status: str,
    **values: Any,
) -> Optional[TrialPipeline]:
    """Move status from expected_status to new_status, or return None if it moved underneath us."""
    return await _update_returning(
        session,
        TrialPipeline.id == pipeline_id,
        TrialPipeline.status == expected_status,
        status=new_status,
        **values,
    )


def kill_values(reason: str, now: datetime, note: Optional[str] = None, badge_key: Optional[str] = None) -> dict:
    return {
        "status": "killed",
        "killed_at": now,
        "kill_reason": reason,
        "kill_note": note,
        "next_follow_up_at": None,
        "followup_owner_role": None,
        "badge_key": badge_key,
        "updated_at": now,
    }


async def kill(
    session: AsyncSession,
    pipeline_id: UUID,
    reason: str,
    now: Optional[datetime] = None,
    note: Optional[str] = None,
    badge_key: Optional[str] = None,
) -> Optional[TrialPipeline]:
    """Kill one pipeline unless it is already terminal."""
    now = now or datetime.now(timezone.utc)
    return await _update_returning(
        session,
        TrialPipeline.id == pipeline_id,
        _NOT_TERMINAL,
        **kill_values(reason, now, note, badge_key),
    )


async def kill_matching(
    session: AsyncSession, condition, reason: str, now: datetime
) -> list[TrialPipeline]:
    """Kill every non-terminal pipeline matching `condition` in one statement.

    Selection and write are the same UPDATE, so a pipeline killed concurrently
    (or by an earlier rule in the same run) never matches again.
    """
    result = await session.execute(
        update(TrialPipeline)
        .where(condition)
        .where(_NOT_TERMINAL)
        .values(**kill_values(reason, now))
        .returning(TrialPipeline),
        execution_options={"populate_existing": True, "synchronize_session": False},
    )
    killed = list(result.scalars().all())
    await session.flush()
    return killed


async def record_no_show(
    session: AsyncSession, pipeline_id: UUID, now: Optional[datetime] = None
) -> Optional[TrialPipeline]:
    """Increment no_show_count by exactly one; move status to no_show when it was scheduled."""
    now = now or datetime.now(timezone.utc)
    return await _update_returning(
        session,
        TrialPipeline.id == pipeline_id,
        _NOT_TERMINAL,
        no_show_count=TrialPipeline.no_show_count + 1,
        status=case(
            (TrialPipeline.status == "scheduled", "no_show"),
            else_=TrialPipeline.status,
        ),
        updated_at=now,
    )


async def record_reschedule(
    session: AsyncSession, pipeline_id: UUID, now: Optional[datetime] = None
) -> Optional[TrialPipeline]:
    """Increment reschedule_count by exactly one. Status is left as it is."""
    now = now or datetime.now(timezone.utc)
    return await _update_returning(
        session,
        TrialPipeline.id == pipeline_id,
        _NOT_TERMINAL,
        reschedule_count=TrialPipeline.reschedule_count + 1,
        updated_at=now,
    )


async def set_assigned_activator(
    session: AsyncSession,
    pipeline_id: UUID,
    activator_id: UUID,
    now: Optional[datetime] = None,
) -> Optional[TrialPipeline]:
    now = now or datetime.now(timezone.utc)
    return await _update_returning(
        session,
        TrialPipeline.id == pipeline_id,
        TrialPipeline.killed_at.is_(None),
        assigned_activator_id=activator_id,
        updated_at=now,
    )
