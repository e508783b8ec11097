"""
ECO workflow tests:
  - create / edit / change status / approve / comment / delete end to end
  - Version-per-transition policy and approval stamps
  - Boundary behaviors (edit mid-review, multi-version delete, no-op edit)
  - Risk enrichment on first submission, and scorer failures absorbed
"""

import threading
import time
from unittest.mock import Mock

import pytest

from ecoflow.ai.gateway import LLMGateway, LLMProvider
from ecoflow.ai.risk_scorer import ECORiskScorer
from ecoflow.core.actor import Actor
from ecoflow.core.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from ecoflow.models import db
from ecoflow.models.change_order import ChangeOrder
from ecoflow.services.eco_log import list_audit_trail, list_comments, list_version_comments


def _create_eco(workflow, actor, product_id, **content):
    payload = {"title": "Revise bracket tolerance", "product_id": product_id}
    payload.update(content)
    return workflow.create(payload, actor)


def _row_count(chain_root_id):
    return db.session.query(ChangeOrder).filter_by(chain_root_id=chain_root_id).count()


def _to_under_review(workflow, eco, actor):
    workflow.change_status(eco["id"], "submitted", actor)
    return workflow.change_status(eco["id"], "under_review", actor)


def _risk_threads():
    return {t for t in threading.enumerate() if t.name.startswith("eco-risk") and t.is_alive()}


class _StalledProvider(LLMProvider):
    """Never answers; gives up when the per-call timeout runs out."""

    def __init__(self):
        super().__init__(api_key="unused")
        self.timeouts = []

    def chat(self, messages, model, **kwargs):
        self.timeouts.append(kwargs["timeout"])
        threading.Event().wait(kwargs["timeout"])
        raise TimeoutError("read timed out")


# ═════════════════════════════════════════════════════════════════════════════
# Create
# ═════════════════════════════════════════════════════════════════════════════


class TestCreate:

    def test_create_writes_version_one_in_draft(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id, priority="high")
        assert eco["version"] == 1
        assert eco["status"] == "draft"
        assert eco["is_latest"] is True
        assert eco["chain_root_id"] == eco["id"]
        assert eco["parent_id"] is None
        assert eco["priority"] == "high"
        assert eco["requested_by_id"] == "u-requester"
        assert eco["requested_by_name"] == "Rita Requester"
        assert eco["product"]["sku"] == "BRK-100"

    def test_create_applies_defaults(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        assert eco["priority"] == "medium"
        assert eco["change_type"] == "standard"

    def test_create_writes_audit_entry(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        trail = list_audit_trail(db.session, eco["id"])
        assert len(trail) == 1
        assert trail[0]["action"] == "CREATE"
        assert trail[0]["new_value"] == "v1"
        assert trail[0]["diff"]["status"] == {"old": None, "new": "draft"}

    def test_create_stores_structured_payloads(self, workflow, requester, product, bom):
        eco = _create_eco(
            workflow, requester, product.id,
            bom_id=bom.id,
            proposed_changes={"Unit Cost": {"from": 125, "to": 185}},
            impact_analysis={"summary": "New supplier", "impactAreas": ["Supply"]},
            compliance_checks={"ISO 9001": True},
            effective_date="2026-09-01",
        )
        assert eco["bom_id"] == bom.id
        assert eco["proposed_changes"] == [
            {"kind": "field_change", "field": "Unit Cost", "before": 125, "after": 185},
        ]
        assert eco["impact_analysis"]["affected_areas"] == ["Supply"]
        assert eco["compliance_checks"][0]["status"] == "passed"
        assert eco["effective_date"] == "2026-09-01"

    def test_create_with_missing_product(self, workflow, requester):
        with pytest.raises(NotFoundError) as exc:
            _create_eco(workflow, requester, "no-such-product")
        assert exc.value.resource == "Product"
        assert db.session.query(ChangeOrder).count() == 0

    def test_create_with_missing_bom(self, workflow, requester, product):
        with pytest.raises(NotFoundError) as exc:
            _create_eco(workflow, requester, product.id, bom_id="no-such-bom")
        assert exc.value.resource == "Bom"

    def test_create_requires_title(self, workflow, requester, product):
        with pytest.raises(ValidationError):
            workflow.create({"product_id": product.id}, requester)

    def test_create_rejects_unknown_priority(self, workflow, requester, product):
        with pytest.raises(ValidationError):
            _create_eco(workflow, requester, product.id, priority="urgent")


# ═════════════════════════════════════════════════════════════════════════════
# Status changes
# ═════════════════════════════════════════════════════════════════════════════


class TestChangeStatus:

    def test_submit_creates_version_two(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        v2 = workflow.change_status(eco["id"], "submitted", requester)

        assert v2["version"] == 2
        assert v2["status"] == "submitted"
        assert v2["is_latest"] is True
        assert v2["parent_id"] == eco["id"]
        assert v2["title"] == eco["title"]

        v1 = db.session.get(ChangeOrder, eco["id"])
        assert v1.is_latest is False
        assert v1.status == "draft"

    def test_submitted_to_completed_is_rejected(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        workflow.change_status(eco["id"], "submitted", requester)

        with pytest.raises(InvalidTransitionError) as exc:
            workflow.change_status(eco["id"], "completed", requester)
        assert exc.value.allowed == ["rejected", "under_review"]
        assert _row_count(eco["id"]) == 2

    def test_under_review_in_place_then_approved_versions(self, workflow, requester, reviewer, product):
        eco = _create_eco(workflow, requester, product.id)
        v2 = _to_under_review(workflow, eco, reviewer)
        assert v2["version"] == 2
        assert v2["status"] == "under_review"
        assert _row_count(eco["id"]) == 2

        v3 = workflow.change_status(eco["id"], "approved", reviewer)
        assert v3["version"] == 3
        assert v3["approved_by_id"] == "u-reviewer"
        assert v3["approved_by_name"] == "Rob Reviewer"
        assert v3["approval_date"] is not None

    def test_full_lifecycle_to_completed(self, workflow, requester, reviewer, product):
        eco = _create_eco(workflow, requester, product.id)
        _to_under_review(workflow, eco, reviewer)
        workflow.change_status(eco["id"], "approved", reviewer)
        implementing = workflow.change_status(eco["id"], "implementing", requester)
        assert implementing["version"] == 3

        done = workflow.change_status(eco["id"], "completed", requester)
        assert done["version"] == 4
        assert done["executed_by_id"] == "u-requester"
        assert done["executed_at"] is not None
        assert done["approved_by_id"] == "u-reviewer"

        with pytest.raises(InvalidTransitionError) as exc:
            workflow.change_status(eco["id"], "implementing", requester)
        assert exc.value.allowed == []

    def test_reapproval_keeps_first_approver(self, workflow, requester, reviewer, product):
        eco = _create_eco(workflow, requester, product.id)
        _to_under_review(workflow, eco, reviewer)
        first = workflow.change_status(eco["id"], "approved", reviewer)
        workflow.change_status(eco["id"], "implementing", requester)

        other = Actor(id="u-other", name="Olga Other")
        again = workflow.change_status(eco["id"], "approved", other)
        assert again["version"] == first["version"] + 1
        assert again["approved_by_id"] == "u-reviewer"
        # stored timestamps come back without tzinfo on SQLite
        assert again["approval_date"][:19] == first["approval_date"][:19]

    def test_any_version_id_addresses_the_chain(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        v2 = workflow.change_status(eco["id"], "submitted", requester)
        v2b = workflow.change_status(v2["id"], "under_review", requester)
        assert v2b["id"] == v2["id"]

    def test_status_comment_attached_to_new_version(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        v2 = workflow.change_status(eco["id"], "submitted", requester, comment="Ready for review")

        comments = list_version_comments(db.session, v2["id"])
        assert [c["content"] for c in comments] == ["Status changed to submitted: Ready for review"]
        assert list_version_comments(db.session, eco["id"]) == []

    def test_audit_records_status_and_version(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        workflow.change_status(eco["id"], "submitted", requester)

        entries = list_audit_trail(db.session, eco["id"], action="UPDATE_STATUS")
        assert len(entries) == 1
        assert entries[0]["old_value"] == "draft"
        assert entries[0]["new_value"] == "submitted"
        assert entries[0]["diff"]["version"] == {"old": 1, "new": 2}

    def test_unknown_chain(self, workflow, requester):
        with pytest.raises(NotFoundError):
            workflow.change_status("missing", "submitted", requester)

    def test_unknown_status(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        with pytest.raises(ValidationError):
            workflow.change_status(eco["id"], "archived", requester)


# ═════════════════════════════════════════════════════════════════════════════
# Approval
# ═════════════════════════════════════════════════════════════════════════════


class TestRecordApproval:

    def test_rejection_mutates_in_place_with_comment(self, workflow, requester, reviewer, product):
        eco = _create_eco(workflow, requester, product.id)
        v2 = _to_under_review(workflow, eco, reviewer)

        result = workflow.record_approval(eco["id"], reviewer, approved=False, comment="insufficient analysis")
        assert result.approved is False
        assert result.change_order["status"] == "rejected"
        assert result.change_order["id"] == v2["id"]
        assert result.comment == "insufficient analysis"
        assert result.decided_at is not None

        comments = list_version_comments(db.session, v2["id"])
        assert [c["content"] for c in comments] == ["ECO rejected: insufficient analysis"]
        assert comments[0]["author_id"] == "u-reviewer"

    def test_approval_creates_version(self, workflow, requester, reviewer, product):
        eco = _create_eco(workflow, requester, product.id)
        _to_under_review(workflow, eco, reviewer)

        result = workflow.record_approval(eco["id"], reviewer, approved=True)
        assert result.change_order["version"] == 3
        assert result.change_order["approved_by_id"] == "u-reviewer"
        comments = list_comments(db.session, eco["id"])
        assert [c["content"] for c in comments] == ["ECO approved"]

    def test_approval_from_draft_is_invalid(self, workflow, requester, reviewer, product):
        eco = _create_eco(workflow, requester, product.id)
        with pytest.raises(InvalidTransitionError):
            workflow.record_approval(eco["id"], reviewer, approved=True)
        assert list_comments(db.session, eco["id"]) == []

    def test_result_serializes(self, workflow, requester, reviewer, product):
        eco = _create_eco(workflow, requester, product.id)
        _to_under_review(workflow, eco, reviewer)
        data = workflow.record_approval(eco["id"], reviewer, approved=True, comment="ok").to_dict()
        assert data["approved"] is True
        assert data["comment"] == "ok"
        assert isinstance(data["decided_at"], str)


# ═════════════════════════════════════════════════════════════════════════════
# Content edits
# ═════════════════════════════════════════════════════════════════════════════


class TestEditContent:

    def test_edit_draft_creates_version(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        editor = Actor(id="u-editor", name="Eve Editor")
        v2 = workflow.edit_content(eco["id"], {"title": "Revise bracket tolerance ±0.05"}, editor)

        assert v2["version"] == 2
        assert v2["status"] == "draft"
        assert v2["title"] == "Revise bracket tolerance ±0.05"
        assert v2["requested_by_id"] == "u-editor"

        entries = list_audit_trail(db.session, eco["id"], action="CREATE_VERSION")
        assert len(entries) == 1
        assert entries[0]["old_value"] == "v1"
        assert entries[0]["new_value"] == "v2"
        assert set(entries[0]["diff"]) == {"title"}

    def test_edit_while_submitted_fails(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        workflow.change_status(eco["id"], "submitted", requester)
        with pytest.raises(ValidationError):
            workflow.edit_content(eco["id"], {"title": "Too late"}, requester)
        assert _row_count(eco["id"]) == 2

    def test_no_op_edit_writes_nothing(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id, description="Tighten hole tolerance")
        same = workflow.edit_content(
            eco["id"], {"title": "Revise bracket tolerance", "description": "Tighten hole tolerance"}, requester,
        )
        assert same["id"] == eco["id"]
        assert same["version"] == 1
        assert _row_count(eco["id"]) == 1
        assert len(list_audit_trail(db.session, eco["id"])) == 1

    def test_edit_after_rejection_returns_to_draft(self, workflow, requester, reviewer, product):
        eco = _create_eco(workflow, requester, product.id)
        workflow.change_status(eco["id"], "submitted", requester)
        workflow.change_status(eco["id"], "rejected", reviewer)

        v3 = workflow.edit_content(eco["id"], {"reason": "Addressed review findings"}, requester)
        assert v3["version"] == 3
        assert v3["status"] == "draft"
        assert v3["reason"] == "Addressed review findings"

    def test_edit_with_resubmission_status(self, workflow, requester, reviewer, product):
        eco = _create_eco(workflow, requester, product.id)
        workflow.change_status(eco["id"], "submitted", requester)
        workflow.change_status(eco["id"], "rejected", reviewer)

        v3 = workflow.edit_content(eco["id"], {"title": "Reworked", "status": "submitted"}, requester)
        assert v3["status"] == "submitted"
        assert v3["version"] == 3

    def test_edit_into_submitted_is_scored_and_audited(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        v2 = workflow.edit_content(eco["id"], {"title": "Emergency bracket swap"}, requester, status="submitted")

        assert v2["status"] == "submitted"
        assert v2["version"] == 2
        # scored on the edited title
        assert v2["risk_score"] == 5.0
        assert v2["key_risks"] == ["Change touches emergency considerations"]

        versioned = list_audit_trail(db.session, eco["id"], action="CREATE_VERSION")
        assert [(e["old_value"], e["new_value"]) for e in versioned] == [("v1", "v2")]
        status_entries = list_audit_trail(db.session, eco["id"], action="UPDATE_STATUS")
        assert len(status_entries) == 1
        assert status_entries[0]["change_order_id"] == v2["id"]
        assert (status_entries[0]["old_value"], status_entries[0]["new_value"]) == ("draft", "submitted")
        assert status_entries[0]["diff"]["version"] == {"old": 1, "new": 2}

    def test_edit_in_draft_writes_no_status_entry(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        workflow.risk_scorer = Mock()
        workflow.edit_content(eco["id"], {"title": "Retitled"}, requester)
        workflow.risk_scorer.analyze.assert_not_called()
        assert list_audit_trail(db.session, eco["id"], action="UPDATE_STATUS") == []

    def test_status_keyword_wins_over_content_status(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        v2 = workflow.edit_content(
            eco["id"], {"title": "Retitled", "status": "draft"}, requester, status="submitted",
        )
        assert v2["status"] == "submitted"
        assert v2["title"] == "Retitled"

    def test_edit_with_illegal_status(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        with pytest.raises(InvalidTransitionError):
            workflow.edit_content(eco["id"], {"title": "Skip ahead"}, requester, status="approved")
        assert _row_count(eco["id"]) == 1

    def test_status_only_edit_delegates_to_status_change(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        v2 = workflow.edit_content(eco["id"], {}, requester, status="submitted")
        assert v2["status"] == "submitted"
        assert v2["version"] == 2
        assert len(list_audit_trail(db.session, eco["id"], action="UPDATE_STATUS")) == 1

    def test_edit_with_missing_bom(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        with pytest.raises(NotFoundError):
            workflow.edit_content(eco["id"], {"bom_id": "no-such-bom"}, requester)

    def test_edit_unknown_chain(self, workflow, requester):
        with pytest.raises(NotFoundError):
            workflow.edit_content("missing", {"title": "x"}, requester)


# ═════════════════════════════════════════════════════════════════════════════
# Comments
# ═════════════════════════════════════════════════════════════════════════════


class TestComments:

    def test_comment_attaches_to_latest(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        v2 = workflow.change_status(eco["id"], "submitted", requester)

        comment = workflow.add_comment(eco["id"], requester, "  Looks good  ")
        assert comment["change_order_id"] == v2["id"]
        assert comment["chain_root_id"] == eco["id"]
        assert comment["content"] == "Looks good"
        assert comment["author_name"] == "Rita Requester"

    def test_empty_comment(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        with pytest.raises(ValidationError):
            workflow.add_comment(eco["id"], requester, "   ")

    def test_comment_too_long(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        with pytest.raises(ValidationError):
            workflow.add_comment(eco["id"], requester, "x" * 5001)

    def test_comment_on_missing_chain(self, workflow, requester):
        with pytest.raises(NotFoundError):
            workflow.add_comment("missing", requester, "hello")


# ═════════════════════════════════════════════════════════════════════════════
# Delete
# ═════════════════════════════════════════════════════════════════════════════


class TestDelete:

    def test_delete_single_draft(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        workflow.add_comment(eco["id"], requester, "scratch")

        result = workflow.delete(eco["id"], requester)
        assert result == {"deleted": True, "chain_root_id": eco["id"]}
        assert _row_count(eco["id"]) == 0
        assert list_comments(db.session, eco["id"]) == []
        assert list_audit_trail(db.session, eco["id"]) == []
        with pytest.raises(NotFoundError):
            workflow.get_version_history(eco["id"])

    def test_delete_with_two_versions(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        workflow.edit_content(eco["id"], {"title": "Second draft"}, requester)
        with pytest.raises(ValidationError):
            workflow.delete(eco["id"], requester)
        assert _row_count(eco["id"]) == 2

    def test_delete_by_non_requester(self, workflow, requester, reviewer, product):
        eco = _create_eco(workflow, requester, product.id)
        with pytest.raises(ForbiddenError):
            workflow.delete(eco["id"], reviewer)
        assert _row_count(eco["id"]) == 1

    def test_delete_missing(self, workflow, requester):
        with pytest.raises(NotFoundError):
            workflow.delete("missing", requester)


# ═════════════════════════════════════════════════════════════════════════════
# History
# ═════════════════════════════════════════════════════════════════════════════


class TestVersionHistory:

    def test_history_is_ordered_linked_list(self, workflow, requester, reviewer, product):
        eco = _create_eco(workflow, requester, product.id)
        _to_under_review(workflow, eco, reviewer)
        v3 = workflow.change_status(eco["id"], "approved", reviewer)

        history = workflow.get_version_history(v3["id"])
        assert [h["version"] for h in history] == [1, 2, 3]
        assert [h["is_latest"] for h in history] == [False, False, True]
        assert [h["status"] for h in history] == ["draft", "under_review", "approved"]

        assert history[0]["parent_id"] is None
        assert [h["parent_id"] for h in history[1:]] == [h["id"] for h in history[:-1]]
        assert {h["chain_root_id"] for h in history} == {eco["id"]}


# ═════════════════════════════════════════════════════════════════════════════
# Risk enrichment
# ═════════════════════════════════════════════════════════════════════════════


class TestRiskEnrichment:

    def test_submit_is_scored(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id)
        v2 = workflow.change_status(eco["id"], "submitted", requester)
        assert v2["risk_score"] == 2.0
        assert v2["predicted_delay"] == 0
        assert v2["key_risks"] == ["Routine change with limited exposure"]
        assert eco["risk_score"] is None

    def test_high_risk_keywords_raise_score(self, workflow, requester, product):
        eco = _create_eco(workflow, requester, product.id, change_type="emergency", priority="critical")
        v2 = workflow.change_status(eco["id"], "submitted", requester)
        assert v2["risk_score"] == 7.0
        assert v2["predicted_delay"] == 14

    def test_only_first_submission_is_scored(self, workflow, requester, reviewer, product):
        eco = _create_eco(workflow, requester, product.id)
        workflow.change_status(eco["id"], "submitted", requester)
        workflow.change_status(eco["id"], "under_review", reviewer)

        workflow.risk_scorer = Mock()
        workflow.change_status(eco["id"], "submitted", reviewer)
        workflow.risk_scorer.analyze.assert_not_called()

    def test_scorer_failure_is_absorbed(self, workflow, requester, product):
        workflow.risk_scorer = Mock()
        workflow.risk_scorer.analyze.side_effect = ServiceUnavailableError("risk-scoring", "all down")
        eco = _create_eco(workflow, requester, product.id)

        v2 = workflow.change_status(eco["id"], "submitted", requester)
        assert v2["status"] == "submitted"
        assert v2["version"] == 2
        assert v2["risk_score"] is None

    def test_scorer_timeout_is_absorbed(self, workflow, requester, product):
        def _slow(summary):
            time.sleep(0.5)

        workflow.risk_scorer = Mock()
        workflow.risk_scorer.analyze.side_effect = _slow
        workflow.risk_timeout = 0.05
        eco = _create_eco(workflow, requester, product.id)

        v2 = workflow.change_status(eco["id"], "submitted", requester)
        assert v2["status"] == "submitted"
        assert v2["risk_score"] is None

    def test_stalled_provider_fails_inside_request_budget(self, workflow, requester, product):
        provider = _StalledProvider()
        gateway = LLMGateway(providers={"slow": provider}, chain=["slow"], request_timeout=0.05)
        workflow.risk_scorer = ECORiskScorer(gateway)
        workflow.risk_timeout = 2.0
        before = _risk_threads()

        for i in range(3):
            eco = _create_eco(workflow, requester, product.id, title=f"Bracket batch {i}")
            v2 = workflow.change_status(eco["id"], "submitted", requester)
            assert v2["status"] == "submitted"
            assert v2["risk_score"] is None

        assert _risk_threads() - before == set()
        assert len(provider.timeouts) == 3
        assert all(0 < t <= 0.05 for t in provider.timeouts)
        assert gateway.circuit_state("slow")["failures"] == 3

    def test_timed_out_worker_exits_once_scorer_returns(self, workflow, requester, product):
        release = threading.Event()
        workflow.risk_scorer = Mock()
        workflow.risk_scorer.analyze.side_effect = lambda summary: release.wait(5)
        workflow.risk_timeout = 0.05
        before = _risk_threads()

        eco = _create_eco(workflow, requester, product.id)
        assert workflow.change_status(eco["id"], "submitted", requester)["risk_score"] is None

        leftover = _risk_threads() - before
        release.set()
        for thread in leftover:
            thread.join(timeout=2)
        assert not any(t.is_alive() for t in leftover)

    def test_scoring_disabled(self, workflow, requester, product):
        workflow.risk_scorer = None
        eco = _create_eco(workflow, requester, product.id)
        v2 = workflow.change_status(eco["id"], "submitted", requester)
        assert v2["risk_score"] is None
