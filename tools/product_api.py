"""Client for the external product's provisioning and activation-sync API.

Calls the product REST API directly with requests; auth is the x-api-key header.
Provisioning raises UpstreamError. The two syncs never raise: they return
{"success": False, "error": ...} so a sync failure cannot undo a local write.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import requests

import config
from activation.errors import UpstreamError

logger = logging.getLogger(__name__)

PROVISION_PATH = "/api/provision-trial"
CONTACT_ATTEMPT_PATH = "/api/activation/contact-attempt"
WORKFLOW_UPDATE_PATH = "/api/control-tower/activation/workflow-update"

_STATUS_MAP = {
    "queued": "not_started",
    "in_progress": "in_progress",
    "scheduled": "scheduled",
    "attended": "in_progress",
    "no_show": "in_progress",
    "blocked": "in_progress",
    "activated": "activated",
    "killed": "killed",
}

_KILL_REASON_MAP = {
    "no_access": "no_website",
    "no_response": "ghosting",
    "no_technical_owner": "no_technical_owner",
    "no_urgency": "no_urgency",
    "other": "other",
}

_CONTACT_RESULT_MAP = {
    "NO_ANSWER": "no_answer",
    "BUSY": "no_answer",
    "LEFT_VM": "left_vm",
    "VOICEMAIL": "left_vm",
    "CALLBACK_SCHEDULED": "scheduled",
    "INTERESTED_INFO_SENT": "connected",
    "TRIAL_STARTED": "connected",
    "NOT_INTERESTED": "connected",
    "WRONG_NUMBER": "wrong_number",
}

_NEXT_ACTION_MAP = {
    "NO_ANSWER": "call_customer",
    "BUSY": "call_customer",
    "LEFT_VM": "call_customer",
    "VOICEMAIL": "call_customer",
    "CALLBACK_SCHEDULED": "call_customer",
    "INTERESTED_INFO_SENT": "waiting_customer",
    "TRIAL_STARTED": "waiting_customer",
    "NOT_INTERESTED": "ready_to_kill",
    "WRONG_NUMBER": "ready_to_kill",
}


# ---------------------------------------------------------------------------
# Vocabulary mapping
# ---------------------------------------------------------------------------


def map_status(local_status: str) -> str:
    return _STATUS_MAP.get(local_status, "not_started")


def map_kill_reason(local_reason: Optional[str]) -> str:
    return _KILL_REASON_MAP.get(local_reason, "other")


def map_contact_result(crm_outcome: str) -> str:
    return _CONTACT_RESULT_MAP.get(crm_outcome, "no_answer")


def map_next_action(crm_outcome: str) -> str:
    return _NEXT_ACTION_MAP.get(crm_outcome, "call_customer")


def default_follow_up(crm_outcome: str, now: datetime) -> Optional[datetime]:
    """Next day 10:00 after no answer or voicemail, two hours after a busy line."""
    if crm_outcome in ("NO_ANSWER", "LEFT_VM"):
        return (now + timedelta(days=1)).replace(hour=10, minute=0, second=0, microsecond=0)
    if crm_outcome == "BUSY":
        return now + timedelta(hours=2)
    return None


def contact_attempt_payload(
    client_id: str,
    crm_outcome: str,
    occurred_at: datetime,
    notes: Optional[str] = None,
    follow_up_at: Optional[datetime] = None,
    next_action_type: Optional[str] = None,
    crm_call_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the contact-attempt body. No next action is set for ready_to_kill outcomes."""
    next_action_type = next_action_type or map_next_action(crm_outcome)
    follow_up_at = follow_up_at or default_follow_up(crm_outcome, occurred_at)
    payload: Dict[str, Any] = {
        "client_id": client_id,
        "channel": "call",
        "direction": "outbound",
        "result": map_contact_result(crm_outcome),
        "notes": notes or "",
        "occurred_at": occurred_at.isoformat(),
    }
    if crm_call_id:
        payload["crm_call_id"] = crm_call_id
    if follow_up_at is not None and next_action_type != "ready_to_kill":
        payload["set_next_action"] = {"type": next_action_type, "due_at": follow_up_at.isoformat()}
    return payload


def workflow_payload(pipeline, **extra: Any) -> Dict[str, Any]:
    """Mirror a pipeline's status (and kill fields) in the product's vocabulary.

    Auto-kill reasons have no product equivalent; they go out as 'other' with the
    local reason in kill_note.
    """
    payload: Dict[str, Any] = {
        "user_id": pipeline.external_account_id,
        "activation_status": map_status(pipeline.status),
        "assigned_activator_id": str(pipeline.assigned_activator_id) if pipeline.assigned_activator_id else None,
    }
    if pipeline.status == "killed":
        reason = pipeline.kill_reason
        payload["killed_at"] = pipeline.killed_at.isoformat() if pipeline.killed_at else None
        payload["kill_reason"] = map_kill_reason(reason)
        if reason in _KILL_REASON_MAP:
            payload["kill_note"] = pipeline.kill_note
        else:
            payload["kill_note"] = f"{reason}: {pipeline.kill_note}" if pipeline.kill_note else reason
    payload.update(extra)
    return payload


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def _headers(api_key: str) -> Dict[str, str]:
    return {"Content-Type": "application/json", "x-api-key": api_key}


def provision_trial(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Create (or find) the trial account in the product.

    Args:
        payload: {email, business_name, contact_name?, phone?, website?, lead_id,
                 sdr_user_id, source}

    Returns:
        Dict with success, user_id, email, credits, login_url, already_exists.

    Raises:
        UpstreamError: not configured, unreachable, bad JSON, or a non-2xx answer
        (the provider's own error message and body are passed through).
    """
    api_key = config.product_api_key()
    if not api_key:
        logger.error("PRODUCT_API_KEY not configured")
        raise UpstreamError("Trial provisioning not configured. Please contact support.", status_code=500)

    url = f"{config.product_api_url()}{PROVISION_PATH}"
    logger.info("Calling provision-trial: %s", {**payload, "email": "***", "url": url})
    try:
        resp = requests.post(url, json=payload, headers=_headers(api_key), timeout=30)
    except requests.RequestException as exc:
        logger.error("Failed to reach provisioning API: %s", exc)
        raise UpstreamError(
            "Unable to connect to trial provisioning service. Please try again.",
            status_code=503,
            details=str(exc),
        ) from exc

    if not resp.text:
        raise UpstreamError("Trial service returned empty response.", status_code=502)
    try:
        data = resp.json()
    except ValueError as exc:
        raise UpstreamError(
            "Trial service returned invalid response.",
            status_code=502,
            details={"http_status": resp.status_code},
        ) from exc

    if not resp.ok:
        logger.error("Provisioning API error %s: %s", resp.status_code, data)
        message = data.get("error") if isinstance(data, dict) else None
        raise UpstreamError(
            message or "Failed to provision trial",
            status_code=resp.status_code,
            details=data,
        )
    if not isinstance(data, dict):
        raise UpstreamError("Trial service returned invalid response.", status_code=502, details=data)

    logger.info(
        "Provisioned trial user_id=%s already_exists=%s",
        data.get("user_id"), data.get("already_exists"),
    )
    return data


def _post_sync(path: str, payload: Dict[str, Any], what: str) -> Dict[str, Any]:
    api_key = config.product_api_key()
    if not api_key:
        logger.warning("Skipping %s: PRODUCT_API_KEY not configured", what)
        return {"success": False, "error": "PRODUCT_API_KEY not configured"}
    try:
        resp = requests.post(
            f"{config.product_api_url()}{path}",
            json=payload,
            headers=_headers(api_key),
            timeout=10,
        )
        resp.raise_for_status()
        data = resp.json()
        if isinstance(data, dict):
            data.setdefault("success", True)
            return data
        return {"success": True}
    except Exception as exc:
        logger.warning("%s failed: %s", what, exc)
        return {"success": False, "error": str(exc)}


def log_contact_attempt(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Fire-and-log: errors are logged and returned, never raised."""
    return _post_sync(CONTACT_ATTEMPT_PATH, payload, "Contact-attempt sync")


def sync_workflow(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Mirror local status into the product's activation tracker. Never raises."""
    if not payload.get("user_id"):
        return {"success": False, "error": "Pipeline has no external account"}
    return _post_sync(WORKFLOW_UPDATE_PATH, payload, "Workflow sync")
