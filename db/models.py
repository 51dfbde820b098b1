"""SQLAlchemy 2.0 ORM models for the trial activation pipeline.

Covers 7 tables in the crm schema:
  - leads, user_profiles, call_logs   (mirrors of CRM-owned rows the core reads)
  - trial_pipeline                     (one row per prospect trial)
  - activation_meetings                (scheduled onboarding calls)
  - activation_events                  (append-only audit log)
  - weekly_performance                 (scoring snapshots)
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    UUID,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """timestamptz that always hands back aware UTC datetimes.

    Backends without native timezone support return naive values; those are
    stored in UTC, so the zone is reattached on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Shared base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Enumerations used in CHECK constraints
# ---------------------------------------------------------------------------

PIPELINE_STATUSES = (
    "queued",
    "in_progress",
    "scheduled",
    "attended",
    "no_show",
    "blocked",
    "activated",
    "killed",
)
TERMINAL_STATUSES = ("activated", "killed")

AUTO_KILL_REASONS = ("stalled_install", "repeated_no_show", "excessive_reschedules")
MANUAL_KILL_REASONS = ("no_access", "no_response", "no_technical_owner", "no_urgency", "other")
KILL_REASONS = AUTO_KILL_REASONS + MANUAL_KILL_REASONS

FOLLOWUP_VARIANTS = ("A", "B")

MEETING_STATUSES = ("scheduled", "completed", "no_show", "rescheduled", "canceled")

MILESTONE_FIELDS = (
    "password_set_at",
    "first_login_at",
    "calculator_modified_at",
    "embed_copied_at",
    "first_lead_received_at",
    "converted_at",
)

SCORE_BANDS = ("green", "yellow", "orange", "red")
TRENDS = ("up", "flat", "down")
PERFORMANCE_ROLES = ("sdr", "activator")


def _in_check(column: str, values: tuple, nullable: bool = False) -> str:
    clause = f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"
    if nullable:
        return f"{column} IS NULL OR {clause}"
    return clause


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ===========================================================================
# CRM-owned rows (read by the core, written only by provisioning)
# ===========================================================================


class Lead(Base):
    """crm.leads — the CRM lead a trial is started for."""

    __tablename__ = "leads"
    __table_args__ = {"schema": "crm"}

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    contact_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    website: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    badge_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_follow_up_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_contacted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, server_default=func.now(), nullable=False
    )


class UserProfile(Base):
    """crm.user_profiles — SDRs, activators and admins."""

    __tablename__ = "user_profiles"
    __table_args__ = {"schema": "crm"}

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    email: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sdr_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_activator: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default="true", nullable=False)


class CallLog(Base):
    """crm.call_logs — outbound dials, used for hours worked and dial counts."""

    __tablename__ = "call_logs"
    __table_args__ = (
        Index("ix_call_logs_user_initiated", "user_id", "initiated_at"),
        {"schema": "crm"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    # Loose UUID references, no FK enforced
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    crm_lead_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    initiated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    duration_seconds: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)


# ===========================================================================
# Trial activation core
# ===========================================================================


class TrialPipeline(Base):
    """crm.trial_pipeline — one row per prospect/trial relationship."""

    __tablename__ = "trial_pipeline"
    __table_args__ = (
        UniqueConstraint("crm_lead_id", name="uq_trial_pipeline_lead"),
        CheckConstraint(_in_check("status", PIPELINE_STATUSES), name="ck_trial_pipeline_status"),
        CheckConstraint(
            _in_check("kill_reason", KILL_REASONS, nullable=True),
            name="ck_trial_pipeline_kill_reason",
        ),
        CheckConstraint(
            _in_check("followup_variant", FOLLOWUP_VARIANTS),
            name="ck_trial_pipeline_variant",
        ),
        CheckConstraint(
            "(killed_at IS NULL) = (kill_reason IS NULL)",
            name="ck_trial_pipeline_kill_pair",
        ),
        CheckConstraint(
            "status <> 'activated' OR "
            "(calculator_modified_at IS NOT NULL AND first_lead_received_at IS NOT NULL)",
            name="ck_trial_pipeline_activation_milestones",
        ),
        CheckConstraint(
            "no_show_count >= 0 AND reschedule_count >= 0",
            name="ck_trial_pipeline_counters",
        ),
        Index("ix_trial_pipeline_status", "status"),
        Index("ix_trial_pipeline_owner", "owner_sdr_id"),
        Index("ix_trial_pipeline_external_account", "external_account_id"),
        {"schema": "crm"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    crm_lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.leads.id", ondelete="CASCADE"),
        nullable=False,
    )
    external_account_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Attribution: loose UUID references, no FK enforced
    owner_sdr_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    first_touch_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_touch_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    assigned_activator_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)

    # Lifecycle milestones (write-once)
    trial_started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    password_set_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    first_login_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    calculator_modified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    embed_copied_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    first_lead_received_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    converted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Status
    status: Mapped[str] = mapped_column(
        Text, default="queued", server_default="queued", nullable=False
    )
    kill_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    kill_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    killed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Counters: only the meeting lifecycle increments these
    no_show_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    reschedule_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)

    # Experiment + follow-up
    followup_variant: Mapped[str] = mapped_column(Text, nullable=False)
    next_follow_up_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    followup_owner_role: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    badge_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    last_event_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )

    meetings: Mapped[list["ActivationMeeting"]] = relationship(
        "ActivationMeeting", back_populates="trial_pipeline"
    )
    events: Mapped[list["ActivationEvent"]] = relationship(
        "ActivationEvent", back_populates="trial_pipeline"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ActivationMeeting(Base):
    """crm.activation_meetings — one row per scheduled/occurred onboarding call.

    Overlap of scheduled windows per activator is also enforced in Postgres by an
    exclusion constraint (see migration 002).
    """

    __tablename__ = "activation_meetings"
    __table_args__ = (
        CheckConstraint(_in_check("status", MEETING_STATUSES), name="ck_meeting_status"),
        CheckConstraint("scheduled_end_at > scheduled_start_at", name="ck_meeting_window"),
        Index("ix_meetings_activator_status", "activator_user_id", "status"),
        Index("ix_meetings_lead", "crm_lead_id"),
        Index("ix_meetings_reminder_due", "status", "scheduled_start_at"),
        {"schema": "crm"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    trial_pipeline_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.trial_pipeline.id", ondelete="SET NULL"),
        nullable=True,
    )
    crm_lead_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.leads.id", ondelete="SET NULL"),
        nullable=True,
    )
    # Loose UUID references, no FK enforced
    activator_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    scheduled_by_sdr_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)

    scheduled_start_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    scheduled_end_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    scheduled_timezone: Mapped[str] = mapped_column(Text, nullable=False, server_default="UTC")
    status: Mapped[str] = mapped_column(
        Text, default="scheduled", server_default="scheduled", nullable=False
    )
    rescheduled_from_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.activation_meetings.id"),
        nullable=True,
    )
    reminder_24h_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Attendee info
    attendee_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attendee_role: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attendee_email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attendee_phone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    website_platform: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    goal: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    outcome_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, server_default=func.now(), nullable=False
    )

    trial_pipeline: Mapped[Optional["TrialPipeline"]] = relationship(
        "TrialPipeline", back_populates="meetings"
    )
    rescheduled_from: Mapped[Optional["ActivationMeeting"]] = relationship(
        "ActivationMeeting", remote_side="ActivationMeeting.id"
    )


class ActivationEvent(Base):
    """crm.activation_events — append-only audit log for a pipeline."""

    __tablename__ = "activation_events"
    __table_args__ = (
        Index("ix_activation_events_pipeline", "trial_pipeline_id", "created_at"),
        {"schema": "crm"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    trial_pipeline_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.trial_pipeline.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    # NULL actor means the system did it (batch jobs)
    actor_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, default=dict, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, server_default=func.now(), nullable=False
    )

    trial_pipeline: Mapped["TrialPipeline"] = relationship(
        "TrialPipeline", back_populates="events"
    )


# ===========================================================================
# Reporting
# ===========================================================================


class WeeklyPerformance(Base):
    """crm.weekly_performance — one scoring row per user, role and period."""

    __tablename__ = "weekly_performance"
    __table_args__ = (
        UniqueConstraint("user_id", "period_start", "role", name="uq_weekly_performance_user_period"),
        CheckConstraint(_in_check("role", PERFORMANCE_ROLES), name="ck_weekly_performance_role"),
        CheckConstraint(_in_check("score_band", SCORE_BANDS), name="ck_weekly_performance_band"),
        CheckConstraint(_in_check("trend", TRENDS), name="ck_weekly_performance_trend"),
        {"schema": "crm"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    role: Mapped[str] = mapped_column(Text, nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    hours_worked: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=False)
    dials: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    conversations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    meetings_booked: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    meetings_attended: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    installs_completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stalled_installs: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rate_pct: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)

    expected_min: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=False)
    expected_max: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=False)
    score_band: Mapped[str] = mapped_column(Text, nullable=False)
    trend: Mapped[str] = mapped_column(Text, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, server_default=func.now(), nullable=False
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

__all__ = [
    "Base",
    "UTCDateTime",
    # crm-owned
    "Lead",
    "UserProfile",
    "CallLog",
    # activation core
    "TrialPipeline",
    "ActivationMeeting",
    "ActivationEvent",
    # reporting
    "WeeklyPerformance",
]
