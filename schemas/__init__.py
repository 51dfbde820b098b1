from .trial import (
    Attribution,
    ManualKillReason,
    ProvisionRequest,
    ProvisionResult,
    TrialStartResult,
    Variant,
)
from .meeting import (
    AttendeeInfo,
    MeetingOutcome,
    TimeWindow,
)
from .jobs import (
    AutoKillCounts,
    AutoKillSummary,
    BatchError,
    ReminderSummary,
    ScoringSummary,
)

__all__ = [
    "Attribution", "ManualKillReason", "ProvisionRequest", "ProvisionResult",
    "TrialStartResult", "Variant",
    "AttendeeInfo", "MeetingOutcome", "TimeWindow",
    "AutoKillCounts", "AutoKillSummary", "BatchError", "ReminderSummary", "ScoringSummary",
]
