"""Activation meeting schemas."""
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from pydantic import BaseModel, model_validator

DEFAULT_MEETING_LENGTH = timedelta(minutes=30)

MeetingOutcome = Literal["completed", "no_show", "rescheduled"]


class TimeWindow(BaseModel):
    """Half-open [start, end) meeting window. End defaults to start + 30 minutes."""

    start: datetime
    end: Optional[datetime] = None
    timezone: str = "UTC"

    @model_validator(mode="after")
    def _fill_and_check(self) -> "TimeWindow":
        if self.start.tzinfo is None:
            self.start = self.start.replace(tzinfo=timezone.utc)
        if self.end is None:
            self.end = self.start + DEFAULT_MEETING_LENGTH
        elif self.end.tzinfo is None:
            self.end = self.end.replace(tzinfo=timezone.utc)
        if self.end <= self.start:
            raise ValueError("Meeting end must be after its start")
        return self


class AttendeeInfo(BaseModel):
    name: Optional[str] = None
    role: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website_platform: Optional[str] = None
    goal: Optional[str] = None
    notes: Optional[str] = None

    def as_columns(self) -> dict:
        """Map onto ActivationMeeting column names."""
        return {
            "attendee_name": self.name,
            "attendee_role": self.role,
            "attendee_phone": self.phone,
            "attendee_email": self.email,
            "website_platform": self.website_platform,
            "goal": self.goal,
            "notes": self.notes,
        }
