"""First/last-touch attribution for trial pipelines."""
from typing import Optional
from uuid import UUID

from schemas.trial import Attribution


def resolve_attribution(
    existing,
    acting_sdr_id: Optional[UUID],
    acting_sdr_code: Optional[str],
) -> Attribution:
    """Work out who gets credit for a trial.

    `existing` is the current TrialPipeline (or None). The owner and the first-touch
    code are frozen by the first call; the last-touch code always follows the
    acting SDR. Nothing is written here: the caller persists the result in the
    same statement as the pipeline upsert.
    """
    if existing is None:
        return Attribution(
            owner_sdr_id=acting_sdr_id,
            first_touch_code=acting_sdr_code,
            last_touch_code=acting_sdr_code,
        )

    return Attribution(
        owner_sdr_id=existing.owner_sdr_id,
        first_touch_code=existing.first_touch_code or acting_sdr_code,
        last_touch_code=acting_sdr_code,
    )
