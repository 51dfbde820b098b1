"""Initial schema: crm leads, users, calls, trial pipeline, meetings, events, scoring.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = True, default_now: bool = False) -> sa.Column:
    if default_now:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, server_default=sa.text("now()"))
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS crm")

    # ─── CRM-owned rows ──────────────────────────────────────────────────────

    op.create_table(
        "leads",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.Text, nullable=True),
        sa.Column("contact_name", sa.Text, nullable=True),
        sa.Column("email", sa.Text, nullable=True),
        sa.Column("phone", sa.Text, nullable=True),
        sa.Column("website", sa.Text, nullable=True),
        sa.Column("badge_key", sa.Text, nullable=True),
        _ts("next_follow_up_at"),
        _ts("last_contacted_at"),
        _ts("created_at", nullable=False, default_now=True),
        schema="crm",
    )

    op.create_table(
        "user_profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.Text, nullable=False),
        sa.Column("full_name", sa.Text, nullable=True),
        sa.Column("sdr_code", sa.Text, nullable=True),
        sa.Column("is_activator", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        sa.UniqueConstraint("email", name="uq_user_profiles_email"),
        schema="crm",
    )

    op.create_table(
        "call_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("crm_lead_id", postgresql.UUID(as_uuid=True), nullable=True),
        _ts("initiated_at", nullable=False),
        sa.Column("duration_seconds", sa.Integer, nullable=False, server_default="0"),
        schema="crm",
    )
    op.create_index("ix_call_logs_user_initiated", "call_logs", ["user_id", "initiated_at"], schema="crm")

    # ─── Trial activation core ───────────────────────────────────────────────

    op.create_table(
        "trial_pipeline",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "crm_lead_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("crm.leads.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_account_id", sa.Text, nullable=True),
        sa.Column("owner_sdr_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("first_touch_code", sa.Text, nullable=True),
        sa.Column("last_touch_code", sa.Text, nullable=True),
        sa.Column("assigned_activator_id", postgresql.UUID(as_uuid=True), nullable=True),
        _ts("trial_started_at", nullable=False),
        _ts("password_set_at"),
        _ts("first_login_at"),
        _ts("calculator_modified_at"),
        _ts("embed_copied_at"),
        _ts("first_lead_received_at"),
        _ts("converted_at"),
        sa.Column("status", sa.Text, nullable=False, server_default="queued"),
        sa.Column("kill_reason", sa.Text, nullable=True),
        sa.Column("kill_note", sa.Text, nullable=True),
        _ts("killed_at"),
        sa.Column("no_show_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reschedule_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("followup_variant", sa.Text, nullable=False),
        _ts("next_follow_up_at"),
        sa.Column("followup_owner_role", sa.Text, nullable=True),
        sa.Column("badge_key", sa.Text, nullable=True),
        _ts("last_event_at"),
        _ts("created_at", nullable=False, default_now=True),
        _ts("updated_at", nullable=False, default_now=True),
        sa.UniqueConstraint("crm_lead_id", name="uq_trial_pipeline_lead"),
        sa.CheckConstraint(
            "status IN ('queued','in_progress','scheduled','attended','no_show',"
            "'blocked','activated','killed')",
            name="ck_trial_pipeline_status",
        ),
        sa.CheckConstraint(
            "kill_reason IS NULL OR kill_reason IN ('stalled_install','repeated_no_show',"
            "'excessive_reschedules','no_access','no_response','no_technical_owner',"
            "'no_urgency','other')",
            name="ck_trial_pipeline_kill_reason",
        ),
        sa.CheckConstraint("followup_variant IN ('A','B')", name="ck_trial_pipeline_variant"),
        sa.CheckConstraint("(killed_at IS NULL) = (kill_reason IS NULL)", name="ck_trial_pipeline_kill_pair"),
        sa.CheckConstraint(
            "status <> 'activated' OR "
            "(calculator_modified_at IS NOT NULL AND first_lead_received_at IS NOT NULL)",
            name="ck_trial_pipeline_activation_milestones",
        ),
        sa.CheckConstraint(
            "no_show_count >= 0 AND reschedule_count >= 0", name="ck_trial_pipeline_counters"
        ),
        schema="crm",
    )
    op.create_index("ix_trial_pipeline_status", "trial_pipeline", ["status"], schema="crm")
    op.create_index("ix_trial_pipeline_owner", "trial_pipeline", ["owner_sdr_id"], schema="crm")
    op.create_index(
        "ix_trial_pipeline_external_account", "trial_pipeline", ["external_account_id"], schema="crm"
    )

    op.create_table(
        "activation_meetings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "trial_pipeline_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("crm.trial_pipeline.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "crm_lead_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("crm.leads.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("activator_user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("scheduled_by_sdr_user_id", postgresql.UUID(as_uuid=True), nullable=True),
        _ts("scheduled_start_at", nullable=False),
        _ts("scheduled_end_at", nullable=False),
        sa.Column("scheduled_timezone", sa.Text, nullable=False, server_default="UTC"),
        sa.Column("status", sa.Text, nullable=False, server_default="scheduled"),
        sa.Column(
            "rescheduled_from_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("crm.activation_meetings.id"),
            nullable=True,
        ),
        _ts("reminder_24h_sent_at"),
        sa.Column("attendee_name", sa.Text, nullable=True),
        sa.Column("attendee_role", sa.Text, nullable=True),
        sa.Column("attendee_email", sa.Text, nullable=True),
        sa.Column("attendee_phone", sa.Text, nullable=True),
        sa.Column("website_platform", sa.Text, nullable=True),
        sa.Column("goal", sa.Text, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        _ts("completed_at"),
        sa.Column("outcome_notes", sa.Text, nullable=True),
        _ts("created_at", nullable=False, default_now=True),
        sa.CheckConstraint(
            "status IN ('scheduled','completed','no_show','rescheduled','canceled')",
            name="ck_meeting_status",
        ),
        sa.CheckConstraint("scheduled_end_at > scheduled_start_at", name="ck_meeting_window"),
        schema="crm",
    )
    op.create_index(
        "ix_meetings_activator_status", "activation_meetings", ["activator_user_id", "status"], schema="crm"
    )
    op.create_index("ix_meetings_lead", "activation_meetings", ["crm_lead_id"], schema="crm")
    op.create_index(
        "ix_meetings_reminder_due", "activation_meetings", ["status", "scheduled_start_at"], schema="crm"
    )

    op.create_table(
        "activation_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "trial_pipeline_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("crm.trial_pipeline.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.Text, nullable=False),
        sa.Column("actor_user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=False),
        _ts("created_at", nullable=False, default_now=True),
        schema="crm",
    )
    op.create_index(
        "ix_activation_events_pipeline", "activation_events", ["trial_pipeline_id", "created_at"], schema="crm"
    )

    # ─── Reporting ───────────────────────────────────────────────────────────

    op.create_table(
        "weekly_performance",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("role", sa.Text, nullable=False),
        _ts("period_start", nullable=False),
        _ts("period_end", nullable=False),
        sa.Column("hours_worked", sa.Numeric(8, 2), nullable=False),
        sa.Column("dials", sa.Integer, nullable=False),
        sa.Column("conversations", sa.Integer, nullable=False),
        sa.Column("meetings_booked", sa.Integer, nullable=False),
        sa.Column("meetings_attended", sa.Integer, nullable=False),
        sa.Column("installs_completed", sa.Integer, nullable=False),
        sa.Column("stalled_installs", sa.Integer, nullable=False),
        sa.Column("rate_pct", sa.Numeric(6, 2), nullable=False),
        sa.Column("expected_min", sa.Numeric(8, 2), nullable=False),
        sa.Column("expected_max", sa.Numeric(8, 2), nullable=False),
        sa.Column("score_band", sa.Text, nullable=False),
        sa.Column("trend", sa.Text, nullable=False),
        _ts("computed_at", nullable=False, default_now=True),
        sa.UniqueConstraint("user_id", "period_start", "role", name="uq_weekly_performance_user_period"),
        sa.CheckConstraint("role IN ('sdr','activator')", name="ck_weekly_performance_role"),
        sa.CheckConstraint(
            "score_band IN ('green','yellow','orange','red')", name="ck_weekly_performance_band"
        ),
        sa.CheckConstraint("trend IN ('up','flat','down')", name="ck_weekly_performance_trend"),
        schema="crm",
    )


def downgrade() -> None:
    op.drop_table("weekly_performance", schema="crm")
    op.drop_index("ix_activation_events_pipeline", table_name="activation_events", schema="crm")
    op.drop_table("activation_events", schema="crm")
    op.drop_index("ix_meetings_reminder_due", table_name="activation_meetings", schema="crm")
    op.drop_index("ix_meetings_lead", table_name="activation_meetings", schema="crm")
    op.drop_index("ix_meetings_activator_status", table_name="activation_meetings", schema="crm")
    op.drop_table("activation_meetings", schema="crm")
    op.drop_index("ix_trial_pipeline_external_account", table_name="trial_pipeline", schema="crm")
    op.drop_index("ix_trial_pipeline_owner", table_name="trial_pipeline", schema="crm")
    op.drop_index("ix_trial_pipeline_status", table_name="trial_pipeline", schema="crm")
    op.drop_table("trial_pipeline", schema="crm")
    op.drop_index("ix_call_logs_user_initiated", table_name="call_logs", schema="crm")
    op.drop_table("call_logs", schema="crm")
    op.drop_table("user_profiles", schema="crm")
    op.drop_table("leads", schema="crm")
