"""Trial pipeline services: provisioning saga, milestones, manual transitions, contact attempts."""
import asyncio
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union
from uuid import UUID

import pydantic
from dateutil.relativedelta import relativedelta

from activation import audit
from activation.attribution import resolve_attribution
from activation.errors import (
    AlreadyTerminal,
    InvalidTransition,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from activation.scheduler import link_meetings
from activation.state_machine import (
    can_transition,
    ensure_can_activate,
    ensure_transition,
    missing_activation_milestones,
)
from activation.variants import assign_variant
from db import get_db
from db.connection import UnitOfWork
from db.models import MANUAL_KILL_REASONS, MILESTONE_FIELDS, TrialPipeline
from db.repositories import leads as leads_repo
from db.repositories import trials as trials_repo
from schemas.trial import ManualKillReason, ProvisionRequest, ProvisionResult, TrialStartResult
from tools import product_api

logger = logging.getLogger(__name__)

RECYCLE_BADGE = "recycle_not_interested"

# External product event type -> write-once milestone column
PRODUCT_EVENT_MILESTONES = {
    "password_set": "password_set_at",
    "first_login": "first_login_at",
    "calculator_modified": "calculator_modified_at",
    "embed_snippet_copied": "embed_copied_at",
    "first_lead_received": "first_lead_received_at",
    "paid_subscribed": "converted_at",
    # legacy names still sent by older product builds
    "snippet_installed": "embed_copied_at",
}

# Legacy trial_activated events carry the real step in activation_type
LEGACY_ACTIVATION_TYPES = {
    "password_set": "password_set_at",
    "first_login": "first_login_at",
    "calculator_modified": "calculator_modified_at",
    "calculator_configured": "calculator_modified_at",
    "snippet_copied": "embed_copied_at",
    "embed_snippet_copied": "embed_copied_at",
    "snippet_installed": "embed_copied_at",
    "first_lead_received": "first_lead_received_at",
}


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def next_business_day(now: datetime, hour: int = 9) -> datetime:
    """Next Monday-to-Friday date after `now`, at `hour`:00 in now's timezone."""
    candidate = now + relativedelta(days=+1, hour=hour, minute=0, second=0, microsecond=0)
    while candidate.weekday() >= 5:
        candidate += timedelta(days=1)
    return candidate


def _first_error_message(exc: pydantic.ValidationError) -> str:
    err = exc.errors()[0]
    message = err.get("msg", "Invalid request")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    field = ".".join(str(part) for part in err.get("loc", ()))
    if err.get("type") == "missing":
        return f"{field} is required"
    return message


async def _get_or_404(session, pipeline_id: UUID) -> TrialPipeline:
    pipeline = await trials_repo.get(session, pipeline_id)
    if pipeline is None:
        raise NotFoundError("Trial pipeline not found")
    return pipeline


# ---------------------------------------------------------------------------
# Trial start
# ---------------------------------------------------------------------------


async def start_trial(
    request: Union[ProvisionRequest, dict],
    db: UnitOfWork = get_db,
    provision: Callable[[dict], dict] = product_api.provision_trial,
    rng=random,
    now: Optional[datetime] = None,
) -> TrialStartResult:
    """Provision a product trial for a CRM lead and open (or refresh) its pipeline.

    Steps, each idempotent:
      1. save the entered contact fields on the lead (survives a provisioning failure)
      2. call the provisioning API; any failure raises UpstreamError and stops here
      3. one unit of work: attribution + variant + follow-up task in the pipeline
         upsert, then link meetings already booked for the lead
      4. append a trial_started event (best-effort)
    """
    if not isinstance(request, ProvisionRequest):
        try:
            request = ProvisionRequest.model_validate(request)
        except pydantic.ValidationError as exc:
            raise ValidationError(_first_error_message(exc)) from exc
    now = _now(now)

    lead_fields = {
        "name": request.business_name,
        "email": request.email,
        "website": request.website,
    }
    if request.contact_name:
        lead_fields["contact_name"] = request.contact_name
    if request.phone:
        lead_fields["phone"] = request.phone
    async with db() as session:
        await leads_repo.save_contact_fields(session, request.lead_id, lead_fields)
    logger.info("Saved lead %s contact fields: %s", request.lead_id, sorted(lead_fields))

    data = await asyncio.to_thread(provision, request.provisioning_payload())
    try:
        provisioned = ProvisionResult.model_validate(data)
    except pydantic.ValidationError as exc:
        raise UpstreamError("Trial service returned invalid response.", status_code=502, details=data) from exc
    if not provisioned.success:
        error = data.get("error") if isinstance(data, dict) else None
        raise UpstreamError(error or "Failed to provision trial", status_code=502, details=data)

    async with db() as session:
        existing = await trials_repo.get_by_lead(session, request.lead_id)
        attribution = resolve_attribution(existing, request.sdr_user_id, request.sdr_code)
        variant = existing.followup_variant if existing is not None else assign_variant(rng)
        pipeline, created = await trials_repo.upsert_on_trial_start(
            session,
            request.lead_id,
            attribution,
            variant,
            external_account_id=provisioned.user_id,
            now=now,
        )
        linked = await link_meetings(session, request.lead_id, pipeline.id, now=now)
        if linked:
            pipeline = await trials_repo.get(session, pipeline.id)

    await audit.record_event(
        db,
        pipeline.id,
        "trial_started",
        actor_user_id=request.sdr_user_id,
        metadata={
            "created": created,
            "already_exists": provisioned.already_exists,
            "followup_variant": pipeline.followup_variant,
            "sdr_code": request.sdr_code,
            "source": request.source,
            "linked_meeting_ids": linked,
        },
        now=now,
    )

    return TrialStartResult(
        **provisioned.model_dump(),
        pipeline_id=pipeline.id,
        followup_variant=pipeline.followup_variant,
    )


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------


async def record_milestone(
    pipeline_id: UUID,
    field: str,
    db: UnitOfWork = get_db,
    now: Optional[datetime] = None,
) -> bool:
    """Set a write-once lifecycle timestamp. False when it was already set."""
    if field not in MILESTONE_FIELDS:
        raise ValidationError(f"Unknown milestone: {field}")
    async with db() as session:
        return await trials_repo.record_milestone(session, pipeline_id, field, _now(now))


def milestone_for(event_type: str, payload: Optional[dict] = None) -> str:
    """Map a product event onto its milestone column, or raise ValidationError."""
    if event_type == "trial_activated":
        activation_type = (payload or {}).get("activation_type")
        field = LEGACY_ACTIVATION_TYPES.get(activation_type)
        if field is None:
            raise ValidationError(f"Unknown activation_type: {activation_type}")
        return field
    field = PRODUCT_EVENT_MILESTONES.get(event_type)
    if field is None:
        raise ValidationError(f"Unknown event type: {event_type}")
    return field


async def apply_product_event(
    external_account_id: str,
    event_type: str,
    payload: Optional[dict] = None,
    db: UnitOfWork = get_db,
    sync: Callable[[dict], dict] = product_api.sync_workflow,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Record a product lifecycle event and auto-activate once both activation steps are in."""
    field = milestone_for(event_type, payload)
    now = _now(now)

    activated = None
    async with db() as session:
        pipeline = await trials_repo.get_by_external_account(session, external_account_id)
        if pipeline is None:
            raise NotFoundError("No trial pipeline for this account")
        recorded = await trials_repo.record_milestone(session, pipeline.id, field, now)
        pipeline = await trials_repo.get(session, pipeline.id)
        previous = pipeline.status
        if (
            field in ("calculator_modified_at", "first_lead_received_at")
            and not missing_activation_milestones(pipeline)
            and can_transition(pipeline.status, "activated")
        ):
            activated = await trials_repo.transition(
                session, pipeline.id, pipeline.status, "activated", updated_at=now
            )

    if recorded:
        await audit.record_event(
            db, pipeline.id, "milestone_recorded",
            metadata={"event_type": event_type, "field": field}, now=now,
        )
    if activated is not None:
        logger.info("Pipeline %s auto-activated", activated.id)
        await audit.record_event(
            db, activated.id, "activated",
            metadata={"from": previous, "trigger": event_type}, now=now,
        )
        await audit.sync_pipeline(activated, sync)

    return {
        "pipeline_id": pipeline.id,
        "field": field,
        "recorded": recorded,
        "activated": activated is not None,
    }


# ---------------------------------------------------------------------------
# Manual transitions
# ---------------------------------------------------------------------------


async def transition_status(
    pipeline_id: UUID,
    new_status: str,
    reason: Optional[str] = None,
    actor_user_id: Optional[UUID] = None,
    follow_up_at: Optional[datetime] = None,
    note: Optional[str] = None,
    db: UnitOfWork = get_db,
    sync: Callable[[dict], dict] = product_api.sync_workflow,
    now: Optional[datetime] = None,
) -> TrialPipeline:
    """Move a pipeline along the state machine.

    Raises AlreadyTerminal if it is activated or killed, InvalidTransition if
    new_status is unreachable (or activation milestones are missing).
    Killing goes through kill_pipeline so the reason is validated.
    """
    if new_status == "killed":
        return await kill_pipeline(
            pipeline_id, reason or "other", note=note, actor_user_id=actor_user_id,
            db=db, sync=sync, now=now,
        )
    now = _now(now)

    async with db() as session:
        pipeline = await _get_or_404(session, pipeline_id)
        previous = pipeline.status
        if new_status == "activated":
            ensure_can_activate(pipeline)
        else:
            ensure_transition(previous, new_status)

        values: dict[str, Any] = {"updated_at": now}
        if new_status == "blocked":
            values["next_follow_up_at"] = follow_up_at or next_business_day(now)
            values["followup_owner_role"] = "activator"
        elif previous == "blocked":
            values["followup_owner_role"] = None

        updated = await trials_repo.transition(session, pipeline_id, previous, new_status, **values)
        if updated is None:
            current = await _get_or_404(session, pipeline_id)
            if current.is_terminal:
                raise AlreadyTerminal(current.status)
            raise InvalidTransition(current.status, new_status)

    await audit.record_event(
        db, pipeline_id, "status_changed", actor_user_id=actor_user_id,
        metadata={"from": previous, "to": new_status, "reason": reason, "note": note},
        now=now,
    )
    await audit.sync_pipeline(updated, sync, notes=note)
    return updated


async def mark_blocked(
    pipeline_id: UUID,
    follow_up_at: Optional[datetime] = None,
    note: Optional[str] = None,
    actor_user_id: Optional[UUID] = None,
    db: UnitOfWork = get_db,
    sync: Callable[[dict], dict] = product_api.sync_workflow,
    now: Optional[datetime] = None,
) -> TrialPipeline:
    """Park an attended install waiting on the prospect; the activator owns the follow-up."""
    return await transition_status(
        pipeline_id, "blocked", reason="blocked", actor_user_id=actor_user_id,
        follow_up_at=follow_up_at, note=note, db=db, sync=sync, now=now,
    )


async def kill_pipeline(
    pipeline_id: UUID,
    reason: ManualKillReason,
    note: Optional[str] = None,
    actor_user_id: Optional[UUID] = None,
    db: UnitOfWork = get_db,
    sync: Callable[[dict], dict] = product_api.sync_workflow,
    now: Optional[datetime] = None,
) -> TrialPipeline:
    """Manually kill a trial with one of the manual kill reasons."""
    if reason not in MANUAL_KILL_REASONS:
        raise ValidationError(f"Invalid kill reason. Must be one of: {', '.join(MANUAL_KILL_REASONS)}")
    now = _now(now)

    async with db() as session:
        killed = await trials_repo.kill(
            session, pipeline_id, reason, now, note=note, badge_key=RECYCLE_BADGE
        )
        if killed is None:
            current = await _get_or_404(session, pipeline_id)
            raise AlreadyTerminal(current.status)

    await audit.record_event(
        db, pipeline_id, "killed", actor_user_id=actor_user_id,
        metadata={"reason": reason, "note": note, "triggered_by": "manual"},
        now=now,
    )
    await audit.sync_pipeline(killed, sync)
    return killed


# ---------------------------------------------------------------------------
# Contact attempts
# ---------------------------------------------------------------------------


async def record_contact_attempt(
    pipeline_id: UUID,
    crm_outcome: str,
    actor_user_id: Optional[UUID] = None,
    notes: Optional[str] = None,
    follow_up_at: Optional[datetime] = None,
    crm_call_id: Optional[str] = None,
    db: UnitOfWork = get_db,
    log_attempt: Callable[[dict], dict] = product_api.log_contact_attempt,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Log an outbound call on a pipeline; the first attempt moves queued -> in_progress.

    The product-side contact log is fire-and-log: its failure is reported in the
    result but never raised.
    """
    if not crm_outcome:
        raise ValidationError("crm_outcome is required")
    now = _now(now)

    async with db() as session:
        pipeline = await _get_or_404(session, pipeline_id)
        if pipeline.status == "killed":
            raise AlreadyTerminal(pipeline.status)
        if pipeline.status == "queued":
            moved = await trials_repo.transition(
                session, pipeline_id, "queued", "in_progress", updated_at=now
            )
            pipeline = moved or await _get_or_404(session, pipeline_id)
        await leads_repo.update_fields(session, pipeline.crm_lead_id, last_contacted_at=now)

    await audit.record_event(
        db, pipeline_id, "contact_attempt", actor_user_id=actor_user_id,
        metadata={"outcome": crm_outcome, "notes": notes, "crm_call_id": crm_call_id},
        now=now,
    )

    sync_result = {"success": False, "error": "Pipeline has no external account"}
    if pipeline.external_account_id:
        payload = product_api.contact_attempt_payload(
            pipeline.external_account_id,
            crm_outcome,
            occurred_at=now,
            notes=notes,
            follow_up_at=follow_up_at,
            crm_call_id=crm_call_id,
        )
        try:
            sync_result = await asyncio.to_thread(log_attempt, payload)
        except Exception as exc:
            logger.warning("Contact-attempt sync for pipeline %s raised: %s", pipeline_id, exc)
            sync_result = {"success": False, "error": str(exc)}

    return {"pipeline_id": pipeline_id, "status": pipeline.status, "sync": sync_result}
