"""24-hour meeting reminder dispatcher.

Email is the primary channel: only a successful email sets reminder_24h_sent_at,
and that marker is the one dedup guard across runs. SMS is sent alongside when
a phone number is known, but its success alone never marks the meeting.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from activation import audit
from db import get_db
from db.connection import UnitOfWork
from db.repositories import meetings as meetings_repo
from schemas.jobs import ReminderSummary
from tools import messaging

logger = logging.getLogger(__name__)

WINDOW_START = timedelta(hours=23)
WINDOW_END = timedelta(hours=25)


async def _remind_one(
    meeting_id,
    db: UnitOfWork,
    send_email: Callable,
    send_sms: Callable,
    now: datetime,
    summary: ReminderSummary,
) -> None:
    email_ok = sms_ok = False
    async with db() as session:
        # Row lock held until commit so an overlapping run skips this meeting
        meeting = await meetings_repo.claim_for_reminder(session, meeting_id)
        if meeting is None:
            summary.skipped += 1
            return

        if meeting.attendee_email:
            content = messaging.reminder_email(meeting)
            result = await asyncio.to_thread(
                send_email,
                meeting.attendee_email,
                content["subject"],
                content["html"],
                meeting.attendee_name,
                ["reminder", f"meeting_{meeting.id}"],
            )
            email_ok = bool(result.get("success"))
            if not email_ok:
                summary.add_error(stage="email", error=str(result.get("error")), entity_id=meeting.id)

        if meeting.attendee_phone:
            result = await asyncio.to_thread(send_sms, meeting.attendee_phone, messaging.reminder_sms(meeting))
            sms_ok = bool(result.get("success"))
            if not sms_ok:
                summary.add_error(stage="sms", error=str(result.get("error")), entity_id=meeting.id)

        if email_ok:
            await meetings_repo.mark_reminder_sent(session, meeting.id, now)
        pipeline_id = meeting.trial_pipeline_id
        phone = meeting.attendee_phone

    if email_ok:
        summary.emails_sent += 1
        await audit.record_event(
            db, pipeline_id, "reminder_sent",
            metadata={"meeting_id": meeting_id, "reminder_type": "24h"}, now=now,
        )
    if sms_ok:
        summary.sms_sent += 1
        await audit.record_event(
            db, pipeline_id, "sms_sent",
            metadata={"meeting_id": meeting_id, "phone": phone, "message_type": "reminder_24h"},
            now=now,
        )
    if not email_ok and not sms_ok:
        summary.skipped += 1


async def run_meeting_reminders(
    db: UnitOfWork = get_db,
    send_email: Callable = messaging.send_email,
    send_sms: Callable = messaging.send_sms,
    now: Optional[datetime] = None,
) -> ReminderSummary:
    """Remind every scheduled meeting starting 23-25 hours from now that has not been reminded."""
    now = now or datetime.now(timezone.utc)
    summary = ReminderSummary(timestamp=now)

    async with db() as session:
        due = await meetings_repo.get_due_for_reminder(session, now + WINDOW_START, now + WINDOW_END)
        meeting_ids = [m.id for m in due]
    summary.candidates = len(meeting_ids)

    for meeting_id in meeting_ids:
        try:
            await _remind_one(meeting_id, db, send_email, send_sms, now, summary)
        except Exception as exc:
            logger.warning("Reminder for meeting %s failed", meeting_id, exc_info=True)
            summary.add_error(stage="reminder", error=str(exc), entity_id=meeting_id)

    logger.info(
        "Reminder run: %d candidate(s), %d email(s), %d sms, %d skipped, %d error(s)",
        summary.candidates, summary.emails_sent, summary.sms_sent, summary.skipped, len(summary.errors),
    )
    return summary
