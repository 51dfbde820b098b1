"""Repository layer for the trial activation pipeline.

Module-level async functions over an AsyncSession, one module per aggregate:
- leads: get, save_contact_fields, update_fields
- trials: get, get_by_lead, upsert_on_trial_start, record_milestone, transition,
          kill, kill_matching, record_no_show, record_reschedule, set_assigned_activator
- meetings: find_overlapping, create, update_if_status, link_to_pipeline,
            next_scheduled, get_due_for_reminder, claim_for_reminder, mark_reminder_sent, get_chain
- events: append, list_for_pipeline, count
- performance: scoring inputs and upsert_snapshot
"""
