"""
ECO status machine tests:
  - Legal transitions pass, illegal ones raise with the allowed set
  - Unknown status names are validation errors
  - Versioning policy per target
  - Approval / execution stamps set only on first entry
"""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from ecoflow.core.actor import Actor
from ecoflow.core.exceptions import InvalidTransitionError, ValidationError
from ecoflow.services.status_machine import (
    ECO_TRANSITIONS,
    allowed_targets,
    entry_side_effects,
    is_transition_allowed,
    validate_transition,
    versioning_required,
)

ALL_STATUSES = list(ECO_TRANSITIONS)
LEGAL = [(src, dst) for src, targets in ECO_TRANSITIONS.items() for dst in targets]
ILLEGAL = [
    (src, dst) for src in ALL_STATUSES for dst in ALL_STATUSES
    if dst not in ECO_TRANSITIONS[src]
]


class TestTransitionTable:

    @pytest.mark.parametrize("current,target", LEGAL)
    def test_legal_transition_passes(self, current, target):
        validate_transition(current, target)

    @pytest.mark.parametrize("current,target", ILLEGAL)
    def test_illegal_transition_raises_with_allowed(self, current, target):
        with pytest.raises(InvalidTransitionError) as exc:
            validate_transition(current, target)
        assert exc.value.allowed == sorted(ECO_TRANSITIONS[current])
        assert exc.value.current == current
        assert exc.value.requested == target

    def test_submitted_to_completed_lists_allowed(self):
        with pytest.raises(InvalidTransitionError) as exc:
            validate_transition("submitted", "completed")
        assert exc.value.allowed == ["rejected", "under_review"]
        assert "Allowed transitions: rejected, under_review" in str(exc.value)

    def test_completed_is_terminal(self):
        assert allowed_targets("completed") == []
        with pytest.raises(InvalidTransitionError) as exc:
            validate_transition("completed", "implementing")
        assert exc.value.allowed == []
        assert "none" in str(exc.value)

    def test_invalid_transition_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            validate_transition("draft", "approved")

    def test_unknown_target_status(self):
        with pytest.raises(ValidationError) as exc:
            validate_transition("draft", "archived")
        assert not isinstance(exc.value, InvalidTransitionError)
        assert "status" in exc.value.details

    def test_unknown_current_status(self):
        with pytest.raises(ValidationError):
            allowed_targets("shelved")

    def test_is_transition_allowed_never_raises(self):
        assert is_transition_allowed("rejected", "submitted") is True
        assert is_transition_allowed("rejected", "draft") is False
        assert is_transition_allowed("shelved", "draft") is False


class TestVersioningPolicy:

    @pytest.mark.parametrize("target", ["submitted", "approved", "completed"])
    def test_versioned_targets(self, target):
        assert versioning_required(target) is True

    @pytest.mark.parametrize("target", ["under_review", "rejected", "implementing"])
    def test_in_place_targets(self, target):
        assert versioning_required(target) is False


class TestEntrySideEffects:

    NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    ACTOR = Actor(id="u-1", name="Ada")

    def _state(self, **kw):
        base = {"approved_by_id": None, "executed_by_id": None}
        base.update(kw)
        return SimpleNamespace(**base)

    def test_first_approval_stamps(self):
        updates = entry_side_effects(self._state(), "approved", self.ACTOR, self.NOW)
        assert updates == {
            "approved_by_id": "u-1",
            "approved_by_name": "Ada",
            "approval_date": self.NOW,
        }

    def test_second_approval_keeps_original_stamp(self):
        updates = entry_side_effects(self._state(approved_by_id="u-0"), "approved", self.ACTOR, self.NOW)
        assert updates == {}

    def test_completion_stamps_execution(self):
        updates = entry_side_effects(self._state(approved_by_id="u-0"), "completed", self.ACTOR, self.NOW)
        assert updates["executed_by_id"] == "u-1"
        assert updates["executed_at"] == self.NOW

    @pytest.mark.parametrize("target", ["submitted", "under_review", "rejected", "implementing"])
    def test_other_targets_have_no_side_effects(self, target):
        assert entry_side_effects(self._state(), target, self.ACTOR, self.NOW) == {}
