"""Auto-kill engine — terminates trials that stalled, kept not showing up, or kept rescheduling.

Each rule is one guarded UPDATE ... RETURNING in its own unit of work, so rules
can run in any order, a failing rule never blocks the others, and a re-run (or
an overlapping run) finds nothing left to kill.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import and_

from activation import audit
from db import get_db
from db.connection import UnitOfWork
from db.models import TrialPipeline
from db.repositories import trials as trials_repo
from schemas.jobs import AutoKillSummary
from tools import product_api

logger = logging.getLogger(__name__)

STALL_AFTER = timedelta(days=14)
MAX_NO_SHOWS = 2
MAX_RESCHEDULES = 3


def rules(now: datetime) -> list[tuple[str, object]]:
    """(kill_reason, condition) pairs. The not-terminal guard is added by the repository."""
    return [
        (
            "stalled_install",
            and_(
                TrialPipeline.status == "blocked",
                TrialPipeline.next_follow_up_at <= now - STALL_AFTER,
            ),
        ),
        ("repeated_no_show", TrialPipeline.no_show_count >= MAX_NO_SHOWS),
        ("excessive_reschedules", TrialPipeline.reschedule_count >= MAX_RESCHEDULES),
    ]


async def run_auto_kill(
    db: UnitOfWork = get_db,
    sync: Callable[[dict], dict] = product_api.sync_workflow,
    now: Optional[datetime] = None,
) -> AutoKillSummary:
    """Apply every kill rule once. Errors are collected in the summary, never raised."""
    now = now or datetime.now(timezone.utc)
    summary = AutoKillSummary(timestamp=now)

    for reason, condition in rules(now):
        try:
            async with db() as session:
                killed = await trials_repo.kill_matching(session, condition, reason, now)
        except Exception as exc:
            logger.warning("Auto-kill rule %s failed", reason, exc_info=True)
            summary.add_error(stage=reason, error=str(exc))
            continue

        setattr(summary.killed, reason, len(killed))
        summary.total_killed += len(killed)

        for pipeline in killed:
            logger.info("Auto-killed pipeline %s (%s)", pipeline.id, reason)
            ok = await audit.record_event(
                db, pipeline.id, "auto_killed",
                metadata={"reason": reason, "triggered_by": "cron"},
                now=now,
            )
            if not ok:
                summary.add_error(stage="audit_event", error="Failed to record auto_killed event", entity_id=pipeline.id)
            if pipeline.external_account_id:
                result = await audit.sync_pipeline(pipeline, sync)
                if not result.get("success"):
                    summary.add_error(
                        stage="workflow_sync",
                        error=str(result.get("error") or "sync failed"),
                        entity_id=pipeline.id,
                    )

    logger.info(
        "Auto-kill run: %d killed (stalled=%d, no_show=%d, reschedules=%d), %d error(s)",
        summary.total_killed,
        summary.killed.stalled_install,
        summary.killed.repeated_no_show,
        summary.killed.excessive_reschedules,
        len(summary.errors),
    )
    return summary
