"""Activation meeting scheduling: booking, reassignment, outcomes, cancellation, linking.

Overlap rule per activator: two scheduled meetings conflict when
existing.start < new.end AND existing.end > new.start. The lookup below gives the
caller a precise error; in Postgres the exclusion constraint from migration 002
is what actually closes the race between check and insert.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, get_args
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from activation import audit
from activation.errors import ConflictError, NotFoundError, ValidationError
from activation.state_machine import can_transition
from db import get_db
from db.connection import UnitOfWork
from db.models import ActivationMeeting, TrialPipeline
from db.repositories import meetings as meetings_repo
from db.repositories import trials as trials_repo
from schemas.jobs import BatchError
from schemas.meeting import AttendeeInfo, MeetingOutcome, TimeWindow
from tools import product_api

logger = logging.getLogger(__name__)

OUTCOMES = get_args(MeetingOutcome)


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _conflict(message: str, blocking: Optional[ActivationMeeting]) -> ConflictError:
    return ConflictError(message, blocking_meeting_id=blocking.id if blocking else None)


async def _write_meeting(coro, session, message: str, activator_id: UUID, start, end, exclude_id=None):
    """Await a meeting write, turning an exclusion-constraint violation into ConflictError.

    The failed transaction is rolled back first so the blocking meeting can be
    looked up and named in the error.
    """
    try:
        return await coro
    except IntegrityError as exc:
        if meetings_repo.OVERLAP_CONSTRAINT not in str(exc.orig):
            raise
        await session.rollback()
        blocking = await meetings_repo.find_overlapping(session, activator_id, start, end, exclude_id=exclude_id)
        raise _conflict(message, blocking) from exc


async def _ensure_free(session, activator_id: UUID, start, end, message: str, exclude_id=None) -> None:
    blocking = await meetings_repo.find_overlapping(session, activator_id, start, end, exclude_id=exclude_id)
    if blocking is not None:
        raise _conflict(message, blocking)


async def _advance_to_scheduled(session, pipeline: TrialPipeline, now: datetime) -> Optional[TrialPipeline]:
    """Move a non-terminal pipeline to scheduled, walking queued through in_progress.

    Returns the updated row, or None if the status was left alone.
    """
    status = pipeline.status
    if pipeline.is_terminal or status == "scheduled":
        return None
    if status == "queued":
        # booking the meeting is itself the first contact
        moved = await trials_repo.transition(session, pipeline.id, "queued", "in_progress", updated_at=now)
        if moved is None:
            return None
        status = "in_progress"
    if not can_transition(status, "scheduled"):
        logger.info("Pipeline %s left in %s after booking", pipeline.id, status)
        return None
    return await trials_repo.transition(session, pipeline.id, status, "scheduled", updated_at=now)


async def _resolve_pipeline(
    session, trial_pipeline_id: Optional[UUID], crm_lead_id: Optional[UUID]
) -> Optional[TrialPipeline]:
    if trial_pipeline_id is not None:
        pipeline = await trials_repo.get(session, trial_pipeline_id)
        if pipeline is None:
            raise NotFoundError("Trial pipeline not found")
        return pipeline
    if crm_lead_id is not None:
        return await trials_repo.get_by_lead(session, crm_lead_id)
    return None


# ---------------------------------------------------------------------------
# Booking
# ---------------------------------------------------------------------------


async def schedule(
    activator_id: UUID,
    window: TimeWindow,
    sdr_id: Optional[UUID] = None,
    attendee: Optional[AttendeeInfo] = None,
    crm_lead_id: Optional[UUID] = None,
    trial_pipeline_id: Optional[UUID] = None,
    db: UnitOfWork = get_db,
    sync: Callable[[dict], dict] = product_api.sync_workflow,
    now: Optional[datetime] = None,
) -> ActivationMeeting:
    """Book an onboarding call on an activator's calendar.

    The meeting is linked to the lead's pipeline when one exists; otherwise it
    waits for the trial to start (see reconcile_links). Raises ConflictError
    naming the blocking meeting if the activator is already booked.
    """
    now = _now(now)
    attendee = attendee or AttendeeInfo()

    async with db() as session:
        pipeline = await _resolve_pipeline(session, trial_pipeline_id, crm_lead_id)
        if pipeline is not None and crm_lead_id is None:
            crm_lead_id = pipeline.crm_lead_id

        await _ensure_free(
            session, activator_id, window.start, window.end,
            "Activator has a conflicting meeting at this time",
        )
        meeting = await _write_meeting(
            meetings_repo.create(
                session,
                trial_pipeline_id=pipeline.id if pipeline else None,
                crm_lead_id=crm_lead_id,
                activator_user_id=activator_id,
                scheduled_by_sdr_user_id=sdr_id,
                scheduled_start_at=window.start,
                scheduled_end_at=window.end,
                scheduled_timezone=window.timezone,
                status="scheduled",
                created_at=now,
                **attendee.as_columns(),
            ),
            session, "Activator has a conflicting meeting at this time",
            activator_id, window.start, window.end,
        )

        advanced = None
        if pipeline is not None and not pipeline.is_terminal:
            advanced = await _advance_to_scheduled(session, pipeline, now)
            await trials_repo.set_assigned_activator(session, pipeline.id, activator_id, now)

    logger.info("Scheduled meeting %s for activator %s at %s", meeting.id, activator_id, window.start)
    await audit.record_event(
        db, meeting.trial_pipeline_id, "meeting_scheduled", actor_user_id=sdr_id,
        metadata={
            "meeting_id": meeting.id,
            "activator_user_id": activator_id,
            "scheduled_start_at": window.start,
            "scheduled_end_at": window.end,
        },
        now=now,
    )
    if advanced is not None:
        await audit.sync_pipeline(
            advanced, sync,
            scheduled_install_at=window.start.isoformat(),
            scheduled_timezone=window.timezone,
            scheduled_with_name=attendee.name,
            scheduled_with_role=attendee.role,
        )
    return meeting


async def reassign(
    meeting_id: UUID,
    new_activator_id: UUID,
    actor_id: Optional[UUID] = None,
    reason: Optional[str] = None,
    db: UnitOfWork = get_db,
    now: Optional[datetime] = None,
) -> ActivationMeeting:
    """Hand a scheduled meeting to another activator.

    The new activator's calendar is checked before anything is written; on a
    conflict the meeting keeps its current activator.
    """
    now = _now(now)

    async with db() as session:
        meeting = await meetings_repo.get(session, meeting_id)
        if meeting is None:
            raise NotFoundError("Meeting not found")
        if meeting.status != "scheduled":
            raise ValidationError("Only scheduled meetings can be reassigned")
        old_activator_id = meeting.activator_user_id
        if old_activator_id == new_activator_id:
            return meeting

        message = "New activator has a conflicting meeting at this time"
        await _ensure_free(
            session, new_activator_id, meeting.scheduled_start_at, meeting.scheduled_end_at,
            message, exclude_id=meeting.id,
        )
        updated = await _write_meeting(
            meetings_repo.update_if_status(
                session, meeting_id, "scheduled", activator_user_id=new_activator_id
            ),
            session, message, new_activator_id,
            meeting.scheduled_start_at, meeting.scheduled_end_at, exclude_id=meeting_id,
        )
        if updated is None:
            raise ValidationError("Meeting is no longer scheduled")
        if updated.trial_pipeline_id is not None:
            await trials_repo.set_assigned_activator(session, updated.trial_pipeline_id, new_activator_id, now)

    logger.info("Reassigned meeting %s: %s -> %s", meeting_id, old_activator_id, new_activator_id)
    await audit.record_event(
        db, updated.trial_pipeline_id, "reassigned", actor_user_id=actor_id,
        metadata={
            "meeting_id": meeting_id,
            "old_activator_id": old_activator_id,
            "new_activator_id": new_activator_id,
            "reason": reason,
            "reassigned_by": actor_id,
        },
        now=now,
    )
    return updated


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


async def mark_outcome(
    meeting_id: UUID,
    outcome: MeetingOutcome,
    actor_id: Optional[UUID] = None,
    notes: Optional[str] = None,
    new_window: Optional[TimeWindow] = None,
    db: UnitOfWork = get_db,
    sync: Callable[[dict], dict] = product_api.sync_workflow,
    now: Optional[datetime] = None,
) -> ActivationMeeting:
    """Record how a scheduled meeting went.

    completed    -> meeting completed, pipeline scheduled -> attended
    no_show      -> meeting no_show, pipeline no_show_count + 1 and status no_show
    rescheduled  -> meeting rescheduled, successor row booked for new_window,
                    pipeline reschedule_count + 1 and status unchanged

    Returns the updated meeting, or the successor for a reschedule. Kill rules
    that the new counters trip are applied by the next auto-kill run.
    """
    if outcome not in OUTCOMES:
        raise ValidationError(f"Invalid outcome. Must be one of: {', '.join(OUTCOMES)}")
    if outcome == "rescheduled" and new_window is None:
        raise ValidationError("A new time is required to reschedule")
    now = _now(now)

    pipeline_after = None
    status_changed = False
    async with db() as session:
        meeting = await meetings_repo.get(session, meeting_id)
        if meeting is None:
            raise NotFoundError("Meeting not found")
        if meeting.status != "scheduled":
            raise ValidationError(f"Meeting is already {meeting.status}")
        pipeline_id = meeting.trial_pipeline_id

        if outcome == "completed":
            result = await meetings_repo.update_if_status(
                session, meeting_id, "scheduled",
                status="completed", completed_at=now, outcome_notes=notes,
            )
            if result is None:
                raise ValidationError("Meeting is no longer scheduled")
            if pipeline_id is not None:
                pipeline_after = await trials_repo.transition(
                    session, pipeline_id, "scheduled", "attended", updated_at=now
                )
                status_changed = pipeline_after is not None
                if pipeline_after is None:
                    logger.info("Pipeline %s not in scheduled; attendance recorded on meeting only", pipeline_id)

        elif outcome == "no_show":
            result = await meetings_repo.update_if_status(
                session, meeting_id, "scheduled", status="no_show", outcome_notes=notes,
            )
            if result is None:
                raise ValidationError("Meeting is no longer scheduled")
            if pipeline_id is not None:
                pipeline_after = await trials_repo.record_no_show(session, pipeline_id, now)
                status_changed = pipeline_after is not None and pipeline_after.status == "no_show"

        else:
            old = await meetings_repo.update_if_status(
                session, meeting_id, "scheduled", status="rescheduled", outcome_notes=notes,
            )
            if old is None:
                raise ValidationError("Meeting is no longer scheduled")
            message = "Activator has a conflicting meeting at the new time"
            await _ensure_free(session, old.activator_user_id, new_window.start, new_window.end, message)
            result = await _write_meeting(
                meetings_repo.create(
                    session,
                    trial_pipeline_id=old.trial_pipeline_id,
                    crm_lead_id=old.crm_lead_id,
                    activator_user_id=old.activator_user_id,
                    scheduled_by_sdr_user_id=old.scheduled_by_sdr_user_id,
                    scheduled_start_at=new_window.start,
                    scheduled_end_at=new_window.end,
                    scheduled_timezone=new_window.timezone or old.scheduled_timezone,
                    status="scheduled",
                    rescheduled_from_id=old.id,
                    attendee_name=old.attendee_name,
                    attendee_role=old.attendee_role,
                    attendee_phone=old.attendee_phone,
                    attendee_email=old.attendee_email,
                    website_platform=old.website_platform,
                    goal=old.goal,
                    notes=old.notes,
                    created_at=now,
                ),
                session, message, old.activator_user_id, new_window.start, new_window.end, exclude_id=old.id,
            )
            if pipeline_id is not None:
                pipeline_after = await trials_repo.record_reschedule(session, pipeline_id, now)

    metadata = {"meeting_id": meeting_id, "notes": notes}
    event_type = {
        "completed": "meeting_completed",
        "no_show": "meeting_no_show",
        "rescheduled": "rescheduled",
    }[outcome]
    if outcome == "no_show" and pipeline_after is not None:
        metadata["no_show_count"] = pipeline_after.no_show_count
    if outcome == "rescheduled":
        metadata["new_meeting_id"] = result.id
        metadata["new_start_at"] = new_window.start
        if pipeline_after is not None:
            metadata["reschedule_count"] = pipeline_after.reschedule_count
    await audit.record_event(db, pipeline_id, event_type, actor_user_id=actor_id, metadata=metadata, now=now)
    if status_changed:
        await audit.sync_pipeline(pipeline_after, sync)
    return result


async def cancel(
    meeting_id: UUID,
    actor_id: Optional[UUID] = None,
    reason: Optional[str] = None,
    db: UnitOfWork = get_db,
    now: Optional[datetime] = None,
) -> ActivationMeeting:
    """Cancel a scheduled meeting. The pipeline is not touched."""
    now = _now(now)
    async with db() as session:
        meeting = await meetings_repo.get(session, meeting_id)
        if meeting is None:
            raise NotFoundError("Meeting not found")
        canceled = await meetings_repo.update_if_status(
            session, meeting_id, "scheduled", status="canceled", outcome_notes=reason,
        )
        if canceled is None:
            raise ValidationError(f"Meeting is already {meeting.status}")

    await audit.record_event(
        db, canceled.trial_pipeline_id, "meeting_canceled", actor_user_id=actor_id,
        metadata={"meeting_id": meeting_id, "reason": reason}, now=now,
    )
    return canceled


# ---------------------------------------------------------------------------
# Linking
# ---------------------------------------------------------------------------


async def link_meetings(
    session, crm_lead_id: UUID, trial_pipeline_id: UUID, now: Optional[datetime] = None
) -> list[UUID]:
    """Attach meetings booked before the trial existed. Idempotent.

    If one of them is still scheduled, the pipeline is advanced to scheduled and
    handed to that meeting's activator, as if the booking had happened now.
    """
    linked = await meetings_repo.link_to_pipeline(session, crm_lead_id, trial_pipeline_id)
    if not linked:
        return linked
    logger.info("Linked %d meeting(s) for lead %s to pipeline %s", len(linked), crm_lead_id, trial_pipeline_id)

    upcoming = await meetings_repo.next_scheduled(session, linked)
    pipeline = await trials_repo.get(session, trial_pipeline_id)
    if upcoming is not None and pipeline is not None and not pipeline.is_terminal:
        now = _now(now)
        await _advance_to_scheduled(session, pipeline, now)
        await trials_repo.set_assigned_activator(session, pipeline.id, upcoming.activator_user_id, now)
    return linked


async def reconcile_links(
    db: UnitOfWork = get_db, crm_lead_id: Optional[UUID] = None, now: Optional[datetime] = None
) -> dict:
    """Compensating pass: link every meeting whose lead has a pipeline but no link yet.

    Each lead is linked in its own unit of work; one failure is reported and the
    rest carry on.
    """
    async with db() as session:
        pairs = await meetings_repo.get_unlinked_with_pipeline(session, crm_lead_id)

    linked_total = 0
    errors: list[BatchError] = []
    for lead_id, pipeline_id in pairs:
        try:
            async with db() as session:
                linked_total += len(await link_meetings(session, lead_id, pipeline_id, now=now))
        except Exception as exc:
            logger.warning("Linking meetings for lead %s failed", lead_id, exc_info=True)
            errors.append(BatchError(entity_id=str(lead_id), stage="link_meetings", error=str(exc)))

    logger.info("Reconcile: %d meeting(s) linked across %d lead(s)", linked_total, len(pairs))
    return {"leads": len(pairs), "linked_meetings": linked_total, "errors": errors}
