"""Service tests for meeting booking, reassignment, outcomes and linking."""
import uuid
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from activation import scheduler
from activation.auto_kill import run_auto_kill
from activation.errors import ConflictError, NotFoundError, ValidationError
from activation.scheduler import cancel, mark_outcome, reassign, reconcile_links, schedule
from db.repositories import events as events_repo
from db.repositories import meetings as meetings_repo
from schemas.meeting import AttendeeInfo, TimeWindow
from conftest import add_lead, add_pipeline, add_user, get_pipeline


def _window(now, days, hour=10, minutes=30):
    start = (now + timedelta(days=days)).replace(hour=hour, minute=0)
    return TimeWindow(start=start, end=start + timedelta(minutes=minutes))


async def _get_meeting(db, meeting_id):
    async with db() as session:
        return await meetings_repo.get(session, meeting_id)


async def _event_count(db, pipeline_id, event_type):
    async with db() as session:
        return await events_repo.count(session, pipeline_id, event_type)


# ---------------------------------------------------------------------------
# Booking
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_overlapping_booking_names_the_blocking_meeting(db, now, sync):
    activator = await add_user(db, is_activator=True)
    first = await schedule(activator, _window(now, 1, minutes=60), db=db, sync=sync, now=now)

    clash = TimeWindow(start=first.scheduled_start_at + timedelta(minutes=30))
    with pytest.raises(ConflictError) as exc:
        await schedule(activator, clash, db=db, sync=sync, now=now)

    assert exc.value.blocking_meeting_id == first.id
    assert exc.value.message == "Activator has a conflicting meeting at this time"


@pytest.mark.asyncio
async def test_exclusion_violation_still_names_the_blocking_meeting(db, now, sync, monkeypatch):
    activator = await add_user(db, is_activator=True)
    first = await schedule(activator, _window(now, 1, minutes=60), db=db, sync=sync, now=now)

    # a concurrent booking got past the lookup; the database constraint rejects the insert
    async def no_lookup(*args, **kwargs):
        return None

    async def rejected_insert(session, **fields):
        raise IntegrityError(
            "INSERT INTO activation_meetings", {},
            Exception(f'conflicting key value violates exclusion constraint "{meetings_repo.OVERLAP_CONSTRAINT}"'),
        )

    monkeypatch.setattr(scheduler, "_ensure_free", no_lookup)
    monkeypatch.setattr(meetings_repo, "create", rejected_insert)

    clash = TimeWindow(start=first.scheduled_start_at + timedelta(minutes=30))
    with pytest.raises(ConflictError) as exc:
        await schedule(activator, clash, db=db, sync=sync, now=now)

    assert exc.value.blocking_meeting_id == first.id



@pytest.mark.asyncio
async def test_back_to_back_and_other_activators_do_not_conflict(db, now, sync):
    activator, other = await add_user(db), await add_user(db)
    first = await schedule(activator, _window(now, 1), db=db, sync=sync, now=now)

    adjacent = TimeWindow(start=first.scheduled_end_at)
    await schedule(activator, adjacent, db=db, sync=sync, now=now)
    await schedule(other, _window(now, 1), db=db, sync=sync, now=now)


@pytest.mark.asyncio
async def test_canceled_meetings_free_the_slot(db, now, sync):
    activator = await add_user(db)
    first = await schedule(activator, _window(now, 1), db=db, sync=sync, now=now)
    canceled = await cancel(first.id, reason="prospect asked", db=db, now=now)
    assert canceled.status == "canceled"

    await schedule(activator, _window(now, 1), db=db, sync=sync, now=now)


@pytest.mark.asyncio
async def test_booking_advances_a_queued_pipeline(db, now, sync):
    pipeline = await add_pipeline(db, external_account_id="acct-1")
    activator, sdr = await add_user(db), await add_user(db)

    meeting = await schedule(
        activator, _window(now, 2), sdr_id=sdr,
        attendee=AttendeeInfo(name="Pat", email="pat@acme.test", phone="+15550100"),
        trial_pipeline_id=pipeline.id, db=db, sync=sync, now=now,
    )

    assert meeting.trial_pipeline_id == pipeline.id
    assert meeting.crm_lead_id == pipeline.crm_lead_id
    assert meeting.attendee_email == "pat@acme.test"
    stored = await get_pipeline(db, pipeline.id)
    assert stored.status == "scheduled"
    assert stored.assigned_activator_id == activator
    assert await _event_count(db, pipeline.id, "meeting_scheduled") == 1
    assert sync.payloads[0]["activation_status"] == "scheduled"
    assert sync.payloads[0]["scheduled_with_name"] == "Pat"


@pytest.mark.asyncio
async def test_booking_for_unknown_pipeline_is_not_found(db, now, sync):
    with pytest.raises(NotFoundError):
        await schedule(uuid.uuid4(), _window(now, 1), trial_pipeline_id=uuid.uuid4(), db=db, sync=sync, now=now)


def test_window_must_end_after_it_starts(now):
    with pytest.raises(ValueError):
        TimeWindow(start=now, end=now)


# ---------------------------------------------------------------------------
# Reassignment
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reassign_conflict_leaves_the_meeting_untouched(db, now, sync):
    alice, bob = await add_user(db), await add_user(db)
    meeting = await schedule(alice, _window(now, 1), db=db, sync=sync, now=now)
    bobs = await schedule(bob, _window(now, 1), db=db, sync=sync, now=now)

    with pytest.raises(ConflictError) as exc:
        await reassign(meeting.id, bob, db=db, now=now)

    assert exc.value.blocking_meeting_id == bobs.id
    assert exc.value.message == "New activator has a conflicting meeting at this time"
    assert (await _get_meeting(db, meeting.id)).activator_user_id == alice


@pytest.mark.asyncio
async def test_reassign_moves_meeting_and_pipeline_owner(db, now, sync):
    pipeline = await add_pipeline(db)
    alice, bob, manager = await add_user(db), await add_user(db), await add_user(db)
    meeting = await schedule(alice, _window(now, 1), trial_pipeline_id=pipeline.id, db=db, sync=sync, now=now)

    moved = await reassign(meeting.id, bob, actor_id=manager, reason="sick day", db=db, now=now)

    assert moved.activator_user_id == bob
    assert (await get_pipeline(db, pipeline.id)).assigned_activator_id == bob
    async with db() as session:
        events = await events_repo.list_for_pipeline(session, pipeline.id, "reassigned")
    assert events[0].metadata_["old_activator_id"] == str(alice)
    assert events[0].metadata_["new_activator_id"] == str(bob)
    assert events[0].metadata_["reassigned_by"] == str(manager)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_completed_meeting_marks_pipeline_attended(db, now, sync):
    pipeline = await add_pipeline(db, status="in_progress")
    activator = await add_user(db)
    meeting = await schedule(activator, _window(now, 1), trial_pipeline_id=pipeline.id, db=db, sync=sync, now=now)

    done = await mark_outcome(meeting.id, "completed", notes="calculator live", db=db, sync=sync, now=now)

    assert done.status == "completed"
    assert done.completed_at == now
    assert (await get_pipeline(db, pipeline.id)).status == "attended"
    assert await _event_count(db, pipeline.id, "meeting_completed") == 1


@pytest.mark.asyncio
async def test_outcome_on_a_closed_meeting_is_rejected(db, now, sync):
    activator = await add_user(db)
    meeting = await schedule(activator, _window(now, 1), db=db, sync=sync, now=now)
    await mark_outcome(meeting.id, "completed", db=db, sync=sync, now=now)

    with pytest.raises(ValidationError):
        await mark_outcome(meeting.id, "no_show", db=db, sync=sync, now=now)


@pytest.mark.asyncio
async def test_reschedule_requires_a_new_time(db, now, sync):
    activator = await add_user(db)
    meeting = await schedule(activator, _window(now, 1), db=db, sync=sync, now=now)
    with pytest.raises(ValidationError):
        await mark_outcome(meeting.id, "rescheduled", db=db, sync=sync, now=now)


@pytest.mark.asyncio
async def test_reschedule_chain_and_kill_on_third(db, now, sync):
    """Two reschedules leave three linked rows; the third trips the auto-kill rule."""
    pipeline = await add_pipeline(db, status="in_progress")
    activator = await add_user(db)
    m1 = await schedule(activator, _window(now, 1), trial_pipeline_id=pipeline.id, db=db, sync=sync, now=now)

    m2 = await mark_outcome(m1.id, "rescheduled", new_window=_window(now, 2), db=db, sync=sync, now=now)
    m3 = await mark_outcome(m2.id, "rescheduled", new_window=_window(now, 3), db=db, sync=sync, now=now)

    async with db() as session:
        chain = await meetings_repo.get_chain(session, m3.id)
    assert [m.id for m in chain] == [m1.id, m2.id, m3.id]
    assert [m.status for m in chain] == ["rescheduled", "rescheduled", "scheduled"]
    stored = await get_pipeline(db, pipeline.id)
    assert stored.reschedule_count == 2
    assert stored.status == "scheduled"

    await mark_outcome(m3.id, "rescheduled", new_window=_window(now, 4), db=db, sync=sync, now=now)
    assert (await get_pipeline(db, pipeline.id)).reschedule_count == 3

    summary = await run_auto_kill(db=db, sync=sync, now=now)
    assert summary.killed.excessive_reschedules == 1
    killed = await get_pipeline(db, pipeline.id)
    assert killed.status == "killed"
    assert killed.kill_reason == "excessive_reschedules"


@pytest.mark.asyncio
async def test_reschedule_into_a_busy_slot_is_rejected(db, now, sync):
    activator = await add_user(db)
    meeting = await schedule(activator, _window(now, 1), db=db, sync=sync, now=now)
    await schedule(activator, _window(now, 2), db=db, sync=sync, now=now)

    with pytest.raises(ConflictError):
        await mark_outcome(meeting.id, "rescheduled", new_window=_window(now, 2), db=db, sync=sync, now=now)
    assert (await _get_meeting(db, meeting.id)).status == "scheduled"


@pytest.mark.asyncio
async def test_second_no_show_trips_the_auto_kill(db, now, sync):
    pipeline = await add_pipeline(db, status="in_progress")
    activator = await add_user(db)

    first = await schedule(activator, _window(now, 1), trial_pipeline_id=pipeline.id, db=db, sync=sync, now=now)
    await mark_outcome(first.id, "no_show", db=db, sync=sync, now=now)
    stored = await get_pipeline(db, pipeline.id)
    assert stored.no_show_count == 1
    assert stored.status == "no_show"

    second = await schedule(activator, _window(now, 2), trial_pipeline_id=pipeline.id, db=db, sync=sync, now=now)
    assert (await get_pipeline(db, pipeline.id)).status == "scheduled"
    await mark_outcome(second.id, "no_show", db=db, sync=sync, now=now)
    assert (await get_pipeline(db, pipeline.id)).no_show_count == 2

    summary = await run_auto_kill(db=db, sync=sync, now=now)
    assert summary.killed.repeated_no_show == 1
    assert (await get_pipeline(db, pipeline.id)).kill_reason == "repeated_no_show"


# ---------------------------------------------------------------------------
# Linking
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reconcile_links_unlinked_meetings_once(db, now, sync):
    lead_id = await add_lead(db)
    activator = await add_user(db)
    meeting = await schedule(activator, _window(now, 1), crm_lead_id=lead_id, db=db, sync=sync, now=now)
    pipeline = await add_pipeline(db, lead_id=lead_id)

    first = await reconcile_links(db=db, now=now)
    second = await reconcile_links(db=db, now=now)

    assert first["linked_meetings"] == 1
    assert first["errors"] == []
    assert second == {"leads": 0, "linked_meetings": 0, "errors": []}
    assert (await _get_meeting(db, meeting.id)).trial_pipeline_id == pipeline.id
    advanced = await get_pipeline(db, pipeline.id)
    assert advanced.status == "scheduled"
    assert advanced.assigned_activator_id == activator


@pytest.mark.asyncio
async def test_reconcile_leaves_killed_pipelines_alone(db, now, sync):
    lead_id = await add_lead(db)
    activator = await add_user(db)
    await schedule(activator, _window(now, 1), crm_lead_id=lead_id, db=db, sync=sync, now=now)
    pipeline = await add_pipeline(
        db, lead_id=lead_id, status="killed", killed_at=now, kill_reason="no_response",
    )

    result = await reconcile_links(db=db, now=now)

    assert result["linked_meetings"] == 1
    after = await get_pipeline(db, pipeline.id)
    assert after.status == "killed"
    assert after.assigned_activator_id is None
