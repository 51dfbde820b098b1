"""Trial pipeline status rules.

    queued       -> in_progress | killed
    in_progress  -> scheduled | killed
    scheduled    -> attended | no_show | scheduled | killed
    attended     -> activated | blocked | killed
    no_show      -> scheduled | killed
    blocked      -> scheduled | activated | killed

activated and killed are terminal. Kill is legal from every non-terminal state.
"""
from activation.errors import AlreadyTerminal, InvalidTransition

TERMINAL = frozenset({"activated", "killed"})

TRANSITIONS: dict[str, frozenset] = {
    "queued": frozenset({"in_progress", "killed"}),
    "in_progress": frozenset({"scheduled", "killed"}),
    "scheduled": frozenset({"attended", "no_show", "scheduled", "killed"}),
    "attended": frozenset({"activated", "blocked", "killed"}),
    "no_show": frozenset({"scheduled", "killed"}),
    "blocked": frozenset({"scheduled", "activated", "killed"}),
    "activated": frozenset(),
    "killed": frozenset(),
}

ACTIVATION_MILESTONES = ("calculator_modified_at", "first_lead_received_at")


def can_transition(current: str, requested: str) -> bool:
    return requested in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, requested: str) -> None:
    """Raise AlreadyTerminal or InvalidTransition unless current -> requested is legal."""
    if current in TERMINAL:
        raise AlreadyTerminal(current)
    if not can_transition(current, requested):
        raise InvalidTransition(current, requested)


def missing_activation_milestones(pipeline) -> list[str]:
    return [field for field in ACTIVATION_MILESTONES if getattr(pipeline, field) is None]


def ensure_can_activate(pipeline) -> None:
    """Activation needs the transition plus both activation milestones."""
    ensure_transition(pipeline.status, "activated")
    missing = missing_activation_milestones(pipeline)
    if missing:
        raise InvalidTransition(
            pipeline.status,
            "activated",
            f"Cannot activate before {' and '.join(missing)} is recorded",
        )
