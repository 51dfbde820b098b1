"""Unit tests for pipeline status rules, attribution and variant bucketing."""
import random
import uuid
from datetime import timedelta
from types import SimpleNamespace
from typing import get_args

import pytest

from activation.attribution import resolve_attribution
from activation.errors import AlreadyTerminal, InvalidTransition
from activation.state_machine import (
    TRANSITIONS,
    can_transition,
    ensure_can_activate,
    ensure_transition,
)
from activation.variants import FOLLOWUP_BADGE, assign_variant, followup_task
from activation.scheduler import OUTCOMES
from db.models import MANUAL_KILL_REASONS, MEETING_STATUSES, TrialPipeline
from schemas.trial import ManualKillReason
from conftest import NOW


class TestTransitions:
    def test_allowed_and_forbidden_moves(self):
        assert can_transition("queued", "in_progress")
        assert can_transition("scheduled", "scheduled")
        assert can_transition("blocked", "activated")
        assert not can_transition("queued", "scheduled")
        assert not can_transition("no_show", "attended")

    @pytest.mark.parametrize("status", ["queued", "in_progress", "scheduled", "attended", "no_show", "blocked"])
    def test_kill_is_legal_from_every_live_status(self, status):
        assert can_transition(status, "killed")

    def test_terminal_statuses_have_no_exits(self):
        assert TRANSITIONS["activated"] == frozenset()
        assert TRANSITIONS["killed"] == frozenset()

    def test_terminal_check_comes_first(self):
        with pytest.raises(AlreadyTerminal) as exc:
            ensure_transition("killed", "queued")
        assert exc.value.message == "Pipeline is already killed"

    def test_unreachable_status_is_rejected(self):
        with pytest.raises(InvalidTransition) as exc:
            ensure_transition("queued", "attended")
        assert exc.value.current == "queued"
        assert exc.value.requested == "attended"

    def test_activation_needs_both_milestones(self):
        pipeline = SimpleNamespace(status="attended", calculator_modified_at=NOW, first_lead_received_at=None)
        with pytest.raises(InvalidTransition) as exc:
            ensure_can_activate(pipeline)
        assert "first_lead_received_at" in exc.value.message

        pipeline.first_lead_received_at = NOW
        ensure_can_activate(pipeline)


class TestAttribution:
    def test_first_call_sets_owner_and_both_codes(self):
        sdr = uuid.uuid4()
        result = resolve_attribution(None, sdr, "JD1")
        assert result.owner_sdr_id == sdr
        assert result.first_touch_code == "JD1"
        assert result.last_touch_code == "JD1"

    def test_later_call_only_moves_last_touch(self):
        owner, other = uuid.uuid4(), uuid.uuid4()
        existing = SimpleNamespace(owner_sdr_id=owner, first_touch_code="JD1")
        result = resolve_attribution(existing, other, "MK2")
        assert result.owner_sdr_id == owner
        assert result.first_touch_code == "JD1"
        assert result.last_touch_code == "MK2"

    def test_missing_first_touch_is_filled_once(self):
        existing = SimpleNamespace(owner_sdr_id=None, first_touch_code=None)
        result = resolve_attribution(existing, uuid.uuid4(), "MK2")
        assert result.first_touch_code == "MK2"


class TestVariants:
    def test_draw_threshold(self):
        assert assign_variant(SimpleNamespace(random=lambda: 0.49)) == "B"
        assert assign_variant(SimpleNamespace(random=lambda: 0.5)) == "A"

    def test_split_is_roughly_even(self):
        rng = random.Random(1234)
        draws = [assign_variant(rng) for _ in range(2000)]
        assert 850 < draws.count("B") < 1150

    def test_only_variant_b_gets_a_task(self):
        assert followup_task("A", NOW) == {}
        task = followup_task("B", NOW)
        assert task["next_follow_up_at"] == NOW + timedelta(hours=24)
        assert task["badge_key"] == FOLLOWUP_BADGE
        assert task["followup_owner_role"] == "sdr"


class TestVocabularies:
    def test_manual_kill_reasons_match_the_stored_enum(self):
        assert get_args(ManualKillReason) == MANUAL_KILL_REASONS

    def test_meeting_outcomes_are_meeting_statuses(self):
        assert set(OUTCOMES) == {"completed", "no_show", "rescheduled"}
        assert set(OUTCOMES) <= set(MEETING_STATUSES)

    @pytest.mark.parametrize("status, terminal", [
        ("queued", False), ("blocked", False), ("activated", True), ("killed", True),
    ])
    def test_is_terminal(self, status, terminal):
        assert TrialPipeline(status=status).is_terminal is terminal
