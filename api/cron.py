"""FastAPI app exposing the batch jobs as cron triggers.

Every route accepts GET (scheduler) and POST (manual trigger) and requires
`Authorization: Bearer <CRON_SECRET>`. With no secret configured every call is
refused. Jobs are resolved through dependencies so tests can override them.
"""
import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import config
from activation.auto_kill import run_auto_kill
from activation.errors import (
    ActivationError,
    ConflictError,
    NotFoundError,
    TransitionError,
    UpstreamError,
    ValidationError,
)
from activation.reminders import run_meeting_reminders
from activation.scoring import run_weekly_scoring

logger = logging.getLogger(__name__)

app = FastAPI(title="Trial activation cron")
security = HTTPBearer(auto_error=False)

_ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (TransitionError, 409),
    (UpstreamError, 502),
)


def status_for(exc: ActivationError) -> int:
    for error_type, status in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 400


@app.exception_handler(ActivationError)
async def _activation_error(request: Request, exc: ActivationError) -> JSONResponse:
    body = {"error": exc.message}
    if isinstance(exc, ConflictError) and exc.blocking_meeting_id:
        body["blocking_meeting_id"] = str(exc.blocking_meeting_id)
    if isinstance(exc, UpstreamError) and exc.details is not None:
        body["details"] = exc.details
    return JSONResponse(status_code=status_for(exc), content=body)


def require_cron_secret(creds: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> None:
    secret = config.cron_secret()
    if not secret:
        logger.error("CRON_SECRET not configured; refusing cron call")
        raise HTTPException(status_code=503, detail="Cron endpoints are not configured")
    if not creds or creds.credentials != secret:
        raise HTTPException(status_code=401, detail="Unauthorized")


def auto_kill_job():
    return run_auto_kill


def reminders_job():
    return run_meeting_reminders


def scoring_job():
    return run_weekly_scoring


@app.api_route("/cron/auto-kill-stale", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
async def auto_kill_stale(job=Depends(auto_kill_job)):
    summary = await job()
    return summary.model_dump(mode="json")


@app.api_route("/cron/send-meeting-reminders", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
async def send_meeting_reminders(job=Depends(reminders_job)):
    summary = await job()
    return summary.model_dump(mode="json")


@app.api_route(
    "/cron/generate-weekly-performance", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)]
)
async def generate_weekly_performance(job=Depends(scoring_job)):
    summary = await job()
    return summary.model_dump(mode="json")
