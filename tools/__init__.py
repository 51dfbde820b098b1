from .product_api import (
    provision_trial, log_contact_attempt, sync_workflow,
    map_status, map_kill_reason, map_contact_result, map_next_action,
)
from .messaging import send_email, send_sms

__all__ = [
    "provision_trial", "log_contact_attempt", "sync_workflow",
    "map_status", "map_kill_reason", "map_contact_result", "map_next_action",
    "send_email", "send_sms",
]
