"""
ECO Status Machine

Holds the transition table and the side effects that fire on entering a
status.  Pure functions; nothing here touches the session.

    draft        → submitted
    submitted    → under_review, rejected
    under_review → approved, rejected, submitted
    approved     → implementing, rejected
    implementing → completed, approved
    completed    → (terminal)
    rejected     → submitted

Usage:
    from ecoflow.services.status_machine import validate_transition

    validate_transition(eco.status, "submitted")   # raises on illegal moves
"""

from datetime import datetime

from ecoflow.core.actor import Actor
from ecoflow.core.exceptions import InvalidTransitionError, ValidationError
from ecoflow.models.change_order import ECO_STATUSES

ECO_TRANSITIONS = {
    "draft": ["submitted"],
    "submitted": ["under_review", "rejected"],
    "under_review": ["approved", "rejected", "submitted"],
    "approved": ["implementing", "rejected"],
    "implementing": ["completed", "approved"],
    "completed": [],
    "rejected": ["submitted"],
}

# Entering one of these statuses writes a new version; the others mutate the
# latest row in place.
VERSIONED_STATUSES = frozenset({"submitted", "approved", "completed"})

# Statuses in which requester content may still be edited.
EDITABLE_STATUSES = frozenset({"draft", "rejected"})


def _check_known(status: str, field: str) -> None:
    if status not in ECO_TRANSITIONS:
        raise ValidationError(
            f"Unknown status: {status}",
            details={field: f"must be one of: {', '.join(ECO_STATUSES)}"},
        )


def allowed_targets(status: str) -> list[str]:
    """Sorted legal targets from *status* (empty for terminal states)."""
    _check_known(status, "status")
    return sorted(ECO_TRANSITIONS[status])


def validate_transition(current: str, requested: str) -> None:
    """Raise unless ``current → requested`` is in the table."""
    _check_known(current, "current_status")
    _check_known(requested, "status")
    if requested not in ECO_TRANSITIONS[current]:
        raise InvalidTransitionError(current, requested, allowed_targets(current))


def is_transition_allowed(current: str, requested: str) -> bool:
    return requested in ECO_TRANSITIONS.get(current, [])


def versioning_required(target: str) -> bool:
    _check_known(target, "status")
    return target in VERSIONED_STATUSES


def entry_side_effects(chain_state, target: str, actor: Actor, now: datetime) -> dict:
    """
    Field updates that accompany entering *target*.

    *chain_state* is the current latest row (or anything exposing the
    approval/execution attributes).  Approval and execution stamps are set
    the first time the chain enters ``approved`` / ``completed`` and never
    overwritten afterwards.
    """
    updates = {}
    if target == "approved" and chain_state.approved_by_id is None:
        updates["approved_by_id"] = actor.id
        updates["approved_by_name"] = actor.display_name
        updates["approval_date"] = now
    elif target == "completed" and chain_state.executed_by_id is None:
        updates["executed_by_id"] = actor.id
        updates["executed_by_name"] = actor.display_name
        updates["executed_at"] = now
    return updates
