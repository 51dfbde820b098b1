"""Batch job summaries returned by the cron triggers."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class BatchError(BaseModel):
    entity_id: Optional[str] = None
    stage: str
    error: str


class _JobSummary(BaseModel):
    success: bool = True
    timestamp: datetime
    errors: List[BatchError] = Field(default_factory=list)

    def add_error(self, stage: str, error: str, entity_id=None) -> None:
        self.errors.append(
            BatchError(
                entity_id=str(entity_id) if entity_id is not None else None,
                stage=stage,
                error=error,
            )
        )


class AutoKillCounts(BaseModel):
    stalled_install: int = 0
    repeated_no_show: int = 0
    excessive_reschedules: int = 0


class AutoKillSummary(_JobSummary):
    killed: AutoKillCounts = Field(default_factory=AutoKillCounts)
    total_killed: int = 0


class ReminderSummary(_JobSummary):
    candidates: int = 0
    emails_sent: int = 0
    sms_sent: int = 0
    skipped: int = 0


class ScoringSummary(_JobSummary):
    period_start: datetime
    period_end: datetime
    rows_written: int = 0
    users_skipped: int = 0
