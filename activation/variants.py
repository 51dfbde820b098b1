"""A/B follow-up experiment bucketing."""
import random
from datetime import datetime, timedelta

FOLLOWUP_DELAY = timedelta(hours=24)
FOLLOWUP_BADGE = "trial_awaiting_activation"


def assign_variant(rng=random) -> str:
    """Uniform draw between 'A' and 'B'. Call once, when the pipeline is created."""
    return "B" if rng.random() < 0.5 else "A"


def followup_task(variant: str, now: datetime) -> dict:
    """Follow-up fields a brand new pipeline gets for its variant.

    Only variant B gets a task; A is the control arm and gets nothing.
    """
    if variant != "B":
        return {}
    return {
        "next_follow_up_at": now + FOLLOWUP_DELAY,
        "badge_key": FOLLOWUP_BADGE,
        "followup_owner_role": "sdr",
    }

