"""Transactional email (Brevo) and SMS (Twilio) senders.

Both call the provider REST APIs directly with requests. Neither raises:
each returns {"success": True, ...} or {"success": False, "error": ...}.
"""
import logging
from datetime import datetime
from html import escape
from typing import Any, Dict, List, Optional

import requests
from dateutil import tz

import config

logger = logging.getLogger(__name__)

BREVO_BASE = "https://api.brevo.com/v3"
TWILIO_BASE = "https://api.twilio.com/2010-04-01"


def send_email(
    to_email: str,
    subject: str,
    html: str,
    to_name: Optional[str] = None,
    tags: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Send one transactional email through Brevo.

    Args:
        to_email: Recipient address.
        subject: Subject line.
        html: HTML body.
        to_name: Optional display name for the recipient.
        tags: Optional Brevo tags for reporting.

    Returns:
        Dict with 'success' and 'message_id', or 'error'.
    """
    api_key = config.brevo_api_key()
    if not api_key:
        return {"success": False, "error": "BREVO_API_KEY not configured"}
    recipient = {"email": to_email}
    if to_name:
        recipient["name"] = to_name
    body: Dict[str, Any] = {
        "sender": config.sender(),
        "to": [recipient],
        "subject": subject,
        "htmlContent": html,
    }
    if tags:
        body["tags"] = tags
    try:
        resp = requests.post(
            f"{BREVO_BASE}/smtp/email",
            json=body,
            headers={"api-key": api_key, "accept": "application/json"},
            timeout=15,
        )
        resp.raise_for_status()
        return {"success": True, "message_id": resp.json().get("messageId")}
    except Exception as exc:
        logger.error("Brevo send to %s failed: %s", to_email, exc)
        return {"success": False, "error": str(exc)}


def send_sms(to_number: str, message: str) -> Dict[str, Any]:
    """Send one SMS through Twilio's Messages API.

    Returns:
        Dict with 'success' and 'sid', or 'error'.
    """
    creds = config.twilio_credentials()
    if creds is None:
        return {"success": False, "error": "Twilio not configured"}
    try:
        resp = requests.post(
            f"{TWILIO_BASE}/Accounts/{creds['account_sid']}/Messages.json",
            data={"To": to_number, "From": creds["from_number"], "Body": message},
            auth=(creds["account_sid"], creds["auth_token"]),
            timeout=15,
        )
        resp.raise_for_status()
        return {"success": True, "sid": resp.json().get("sid")}
    except Exception as exc:
        logger.error("Twilio send to %s failed: %s", to_number, exc)
        return {"success": False, "error": str(exc)}


# ---------------------------------------------------------------------------
# Reminder content
# ---------------------------------------------------------------------------


def format_meeting_time(start: datetime, timezone_name: Optional[str]) -> str:
    """e.g. 'Tuesday, March 4 at 2:30 PM' in the meeting's own timezone."""
    zone = tz.gettz(timezone_name or "UTC") or tz.UTC
    local = start.astimezone(zone)
    hour = local.strftime("%I").lstrip("0")
    return f"{local.strftime('%A, %B')} {local.day} at {hour}:{local.strftime('%M %p')}"


def reminder_email(meeting) -> Dict[str, str]:
    when = format_meeting_time(meeting.scheduled_start_at, meeting.scheduled_timezone)
    phone_line = (
        f"<p>We'll call you at <strong>{escape(meeting.attendee_phone)}</strong>.</p>"
        if meeting.attendee_phone else ""
    )
    body = (
        "<h2>Reminder: Your Onboarding Call is Tomorrow!</h2>"
        f"<p>Hi {escape(meeting.attendee_name or 'there')},</p>"
        "<p>Just a reminder that your onboarding call is scheduled for:</p>"
        f"<p style=\"font-size: 18px; font-weight: bold;\">{when} ({escape(meeting.scheduled_timezone or 'UTC')})</p>"
        f"{phone_line}"
        "<p>Please have access to your website ready if possible.</p>"
        "<p>Reply to this email to reschedule.</p>"
    )
    return {"subject": "Reminder: Your Onboarding Call is Tomorrow", "html": body}


def reminder_sms(meeting) -> str:
    when = format_meeting_time(meeting.scheduled_start_at, meeting.scheduled_timezone)
    return f"Reminder: your onboarding is tomorrow at {when} ({meeting.scheduled_timezone}). Reply 1 to confirm."
