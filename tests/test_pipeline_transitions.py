"""Service tests for product milestones, manual transitions, kills and contact attempts."""
import uuid
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from activation.errors import AlreadyTerminal, InvalidTransition, NotFoundError, ValidationError
from activation.trials import (
    RECYCLE_BADGE,
    apply_product_event,
    kill_pipeline,
    mark_blocked,
    milestone_for,
    next_business_day,
    record_contact_attempt,
    transition_status,
)
from db.repositories import events as events_repo
from db.repositories import leads as leads_repo
from conftest import add_pipeline, get_pipeline


async def _events(db, pipeline_id, event_type):
    async with db() as session:
        return await events_repo.list_for_pipeline(session, pipeline_id, event_type)


# ---------------------------------------------------------------------------
# Product events
# ---------------------------------------------------------------------------


class TestMilestoneMapping:
    def test_current_and_legacy_names(self):
        assert milestone_for("calculator_modified") == "calculator_modified_at"
        assert milestone_for("snippet_installed") == "embed_copied_at"
        assert milestone_for("trial_activated", {"activation_type": "calculator_configured"}) == "calculator_modified_at"

    def test_unknown_names_are_rejected(self):
        with pytest.raises(ValidationError):
            milestone_for("logged_out")
        with pytest.raises(ValidationError):
            milestone_for("trial_activated", {"activation_type": "nope"})


@pytest.mark.asyncio
async def test_both_activation_milestones_activate_an_attended_pipeline(db, now, sync):
    pipeline = await add_pipeline(db, status="attended", external_account_id="acct-1")

    first = await apply_product_event("acct-1", "calculator_modified", db=db, sync=sync, now=now)
    assert first == {"pipeline_id": pipeline.id, "field": "calculator_modified_at", "recorded": True, "activated": False}

    second = await apply_product_event("acct-1", "first_lead_received", db=db, sync=sync, now=now)
    assert second["activated"] is True

    stored = await get_pipeline(db, pipeline.id)
    assert stored.status == "activated"
    assert len(await _events(db, pipeline.id, "activated")) == 1
    assert len(await _events(db, pipeline.id, "milestone_recorded")) == 2
    assert sync.payloads[-1]["activation_status"] == "activated"


@pytest.mark.asyncio
async def test_milestones_alone_do_not_activate_an_early_pipeline(db, now, sync):
    pipeline = await add_pipeline(db, status="queued", external_account_id="acct-2", calculator_modified_at=now)

    result = await apply_product_event("acct-2", "first_lead_received", db=db, sync=sync, now=now)

    assert result["activated"] is False
    assert (await get_pipeline(db, pipeline.id)).status == "queued"
    assert sync.payloads == []


@pytest.mark.asyncio
async def test_repeated_product_event_is_not_recorded_twice(db, now, sync):
    pipeline = await add_pipeline(db, external_account_id="acct-3")

    await apply_product_event("acct-3", "password_set", db=db, sync=sync, now=now)
    again = await apply_product_event("acct-3", "password_set", db=db, sync=sync, now=now)

    assert again["recorded"] is False
    assert len(await _events(db, pipeline.id, "milestone_recorded")) == 1


@pytest.mark.asyncio
async def test_unknown_account_is_not_found(db, now, sync):
    with pytest.raises(NotFoundError):
        await apply_product_event("missing", "first_login", db=db, sync=sync, now=now)


# ---------------------------------------------------------------------------
# Manual transitions
# ---------------------------------------------------------------------------


def test_next_business_day_skips_the_weekend():
    friday = datetime(2026, 3, 6, 16, 30, tzinfo=timezone.utc)
    assert next_business_day(friday) == datetime(2026, 3, 9, 9, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_mark_blocked_hands_follow_up_to_the_activator(db, now, sync):
    pipeline = await add_pipeline(db, status="attended", external_account_id="acct-4")

    blocked = await mark_blocked(pipeline.id, note="waiting on web guy", db=db, sync=sync, now=now)

    assert blocked.status == "blocked"
    assert blocked.next_follow_up_at == datetime(2026, 3, 5, 9, 0, tzinfo=timezone.utc)
    assert blocked.followup_owner_role == "activator"
    changes = await _events(db, pipeline.id, "status_changed")
    assert changes[0].metadata_["from"] == "attended"
    assert changes[0].metadata_["to"] == "blocked"
    assert sync.payloads[0]["activation_status"] == "in_progress"


@pytest.mark.asyncio
async def test_unreachable_status_is_rejected(db, now, sync):
    pipeline = await add_pipeline(db, status="queued")
    with pytest.raises(InvalidTransition):
        await transition_status(pipeline.id, "attended", db=db, sync=sync, now=now)
    assert (await get_pipeline(db, pipeline.id)).status == "queued"


@pytest.mark.asyncio
async def test_manual_activation_needs_milestones(db, now, sync):
    pipeline = await add_pipeline(db, status="attended")
    with pytest.raises(InvalidTransition):
        await transition_status(pipeline.id, "activated", db=db, sync=sync, now=now)


@pytest.mark.asyncio
async def test_terminal_pipeline_cannot_move(db, now, sync):
    pipeline = await add_pipeline(db, status="activated", calculator_modified_at=now, first_lead_received_at=now)
    with pytest.raises(AlreadyTerminal):
        await transition_status(pipeline.id, "blocked", db=db, sync=sync, now=now)


# ---------------------------------------------------------------------------
# Kill
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_manual_kill_records_reason_and_syncs(db, now, sync):
    pipeline = await add_pipeline(db, status="in_progress", external_account_id="acct-5")
    actor = uuid.uuid4()

    killed = await kill_pipeline(pipeline.id, "no_response", note="three voicemails", actor_user_id=actor,
                                 db=db, sync=sync, now=now)

    assert killed.status == "killed"
    assert killed.kill_reason == "no_response"
    assert killed.killed_at == now
    assert killed.badge_key == RECYCLE_BADGE
    events = await _events(db, pipeline.id, "killed")
    assert events[0].metadata_["triggered_by"] == "manual"
    assert events[0].actor_user_id == actor
    assert sync.payloads[0]["kill_reason"] == "ghosting"


@pytest.mark.asyncio
async def test_killing_twice_is_rejected(db, now, sync):
    pipeline = await add_pipeline(db)
    await kill_pipeline(pipeline.id, "other", db=db, sync=sync, now=now)
    with pytest.raises(AlreadyTerminal):
        await kill_pipeline(pipeline.id, "other", db=db, sync=sync, now=now)


@pytest.mark.asyncio
async def test_transition_stands_when_its_event_cannot_be_written(db, now, sync, monkeypatch):
    pipeline = await add_pipeline(db, status="attended")

    async def broken_append(*args, **kwargs):
        raise RuntimeError("events table unavailable")

    monkeypatch.setattr(events_repo, "append", broken_append)

    blocked = await mark_blocked(pipeline.id, db=db, sync=sync, now=now)

    assert blocked.status == "blocked"
    assert (await get_pipeline(db, pipeline.id)).status == "blocked"


@pytest.mark.asyncio
async def test_auto_reasons_cannot_be_used_manually(db, now, sync):
    pipeline = await add_pipeline(db)
    with pytest.raises(ValidationError):
        await kill_pipeline(pipeline.id, "stalled_install", db=db, sync=sync, now=now)


@pytest.mark.asyncio
async def test_sync_failure_does_not_undo_a_kill(db, now):
    pipeline = await add_pipeline(db, external_account_id="acct-6")

    def failing_sync(payload):
        raise RuntimeError("product API down")

    await kill_pipeline(pipeline.id, "no_urgency", db=db, sync=failing_sync, now=now)
    assert (await get_pipeline(db, pipeline.id)).status == "killed"


# ---------------------------------------------------------------------------
# Contact attempts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_contact_moves_queued_to_in_progress(db, now):
    pipeline = await add_pipeline(db, external_account_id="acct-7")
    log_attempt = MagicMock(return_value={"success": True})

    result = await record_contact_attempt(
        pipeline.id, "NO_ANSWER", notes="rang out", db=db, log_attempt=log_attempt, now=now,
    )

    assert result["status"] == "in_progress"
    assert result["sync"] == {"success": True}
    payload = log_attempt.call_args.args[0]
    assert payload["client_id"] == "acct-7"
    assert payload["result"] == "no_answer"
    assert payload["set_next_action"]["type"] == "call_customer"
    async with db() as session:
        lead = await leads_repo.get(session, pipeline.crm_lead_id)
    assert lead.last_contacted_at == now
    assert len(await _events(db, pipeline.id, "contact_attempt")) == 1


@pytest.mark.asyncio
async def test_contact_log_failure_is_reported_not_raised(db, now):
    pipeline = await add_pipeline(db, status="in_progress", external_account_id="acct-8")
    log_attempt = MagicMock(side_effect=RuntimeError("timeout"))

    result = await record_contact_attempt(pipeline.id, "BUSY", db=db, log_attempt=log_attempt, now=now)

    assert result["status"] == "in_progress"
    assert result["sync"] == {"success": False, "error": "timeout"}


@pytest.mark.asyncio
async def test_contact_on_killed_pipeline_is_rejected(db, now):
    pipeline = await add_pipeline(db)
    await kill_pipeline(pipeline.id, "other", db=db, sync=lambda payload: {"success": True}, now=now)
    with pytest.raises(AlreadyTerminal):
        await record_contact_attempt(pipeline.id, "NO_ANSWER", db=db, log_attempt=MagicMock(), now=now)
