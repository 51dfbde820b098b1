"""Best-effort writes that follow a committed state change.

The primary transition is authoritative: an audit row or an outbound workflow
sync that fails afterwards is logged, never allowed to undo it.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from db.connection import UnitOfWork
from db.repositories import events as events_repo
from tools import product_api

logger = logging.getLogger(__name__)


async def record_event(
    db: UnitOfWork,
    trial_pipeline_id: Optional[UUID],
    event_type: str,
    actor_user_id: Optional[UUID] = None,
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Append an activation event in its own unit of work. Returns False on failure."""
    if trial_pipeline_id is None:
        logger.debug("Skipping %s event: meeting not linked to a pipeline", event_type)
        return False
    try:
        async with db() as session:
            await events_repo.append(
                session,
                trial_pipeline_id,
                event_type,
                actor_user_id=actor_user_id,
                metadata=metadata,
                now=now,
            )
        return True
    except Exception:
        logger.error(
            "Failed to record %s event for pipeline %s", event_type, trial_pipeline_id, exc_info=True
        )
        return False


async def sync_pipeline(
    pipeline,
    sync: Callable[[dict], dict] = product_api.sync_workflow,
    **extra,
) -> dict:
    """Push the pipeline's current status to the product. Never raises."""
    if pipeline is None or not pipeline.external_account_id:
        return {"success": False, "error": "Pipeline has no external account"}
    payload = product_api.workflow_payload(pipeline, **extra)
    try:
        result = await asyncio.to_thread(sync, payload)
    except Exception as exc:
        logger.warning("Workflow sync for pipeline %s raised: %s", pipeline.id, exc)
        return {"success": False, "error": str(exc)}
    if not result.get("success"):
        logger.warning("Workflow sync for pipeline %s failed: %s", pipeline.id, result.get("error"))
    return result
