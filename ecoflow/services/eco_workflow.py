"""
ECO Workflow Service

Single entry point for every write to an ECO chain:

    create            → version 1 in draft            (CREATE audit)
    edit_content      → new version from draft/rejected (CREATE_VERSION audit,
                        plus UPDATE_STATUS when the edit moves status)
    change_status     → in place or new version       (UPDATE_STATUS audit)
    record_approval   → approved / rejected + summary comment
    add_comment       → discussion entry on the latest version
    delete            → whole chain, draft single-version only

Each operation loads the current latest row, validates, optionally scores
risk (draft → submitted only, outside the transaction and bounded by a
timeout), lets the version engine pick the write shape, and then writes
everything in one transaction through ChainRepository.run_atomic.  Domain
events are published only after the commit.

Usage:
    from flask import current_app

    workflow = current_app.extensions["ecoflow"]
    eco = workflow.create({"title": "Swap bracket alloy", "product_id": pid}, actor)
    workflow.change_status(eco["id"], "submitted", actor)
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone

from ecoflow.core.actor import Actor
from ecoflow.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from ecoflow.services import events
from ecoflow.services.chain_repository import ChainRepository
from ecoflow.services.events import DomainEvent, EventBus
from ecoflow.services.reference_validators import ReferenceValidator
from ecoflow.services.status_machine import EDITABLE_STATUSES, validate_transition
from ecoflow.services.version_engine import (
    NO_OP,
    ChangeIntent,
    VersionDecision,
    content_diff,
    decide,
    normalize_content,
)

logger = logging.getLogger(__name__)

COMMENT_MAX = 5000


@dataclass(frozen=True)
class ApprovalResult:
    change_order: dict
    approved: bool
    decided_at: datetime
    comment: str | None = None

    def to_dict(self) -> dict:
        return {
            "change_order": self.change_order,
            "approved": self.approved,
            "decided_at": self.decided_at.isoformat(),
            "comment": self.comment,
        }


def _utcnow():
    return datetime.now(timezone.utc)


class ECOWorkflowService:
    def __init__(
        self,
        repository: ChainRepository,
        *,
        product_validator: ReferenceValidator,
        bom_validator: ReferenceValidator,
        risk_scorer=None,
        event_bus: EventBus | None = None,
        risk_timeout: float = 10.0,
        default_priority: str = "medium",
        default_change_type: str = "standard",
    ) -> None:
        self.repository = repository
        self.product_validator = product_validator
        self.bom_validator = bom_validator
        self.risk_scorer = risk_scorer
        self.event_bus = event_bus or EventBus()
        self.risk_timeout = risk_timeout
        self.default_priority = default_priority
        self.default_change_type = default_change_type

    # ── Lookup helpers ───────────────────────────────────────────────────────

    def _resolve(self, chain_id: str) -> str:
        root = self.repository.resolve_chain_root(chain_id)
        if root is None:
            raise NotFoundError(resource="ChangeOrder", resource_id=chain_id)
        return root

    def _latest(self, chain_root_id: str):
        eco = self.repository.get_latest(chain_root_id)
        if eco is None:
            raise NotFoundError(resource="ChangeOrder", resource_id=chain_root_id)
        return eco

    def _check_references(self, content: dict) -> None:
        product_id = content.get("product_id")
        if product_id is not None and not self.product_validator.exists(product_id):
            raise NotFoundError(resource="Product", resource_id=product_id)
        bom_id = content.get("bom_id")
        if bom_id is not None and not self.bom_validator.exists(bom_id):
            raise NotFoundError(resource="Bom", resource_id=bom_id)

    @staticmethod
    def _ensure_editable(eco) -> None:
        if eco.status not in EDITABLE_STATUSES:
            raise ValidationError(
                f"ECO content can only be edited in draft or rejected status (current: {eco.status})",
                details={"status": eco.status},
            )

    def _publish(self, name: str, eco: dict, actor: Actor, **payload) -> None:
        self.event_bus.publish(DomainEvent(
            name=name,
            chain_root_id=eco["chain_root_id"],
            eco_id=eco.get("id"),
            actor_id=actor.id,
            payload=payload,
        ))

    def _apply(self, latest, decision: VersionDecision):
        """Write *decision* against *latest*; flush only."""
        if decision.creates_version:
            self.repository.retire(latest.id)
            return self.repository.insert(decision.values)
        return self.repository.mutate_in_place(latest.id, latest.status, decision.values)

    # ── Risk scoring ─────────────────────────────────────────────────────────

    @staticmethod
    def _needs_scoring(current_status: str, target: str | None) -> bool:
        # first time the request becomes visible for review
        return current_status == "draft" and target == "submitted"

    def _risk_summary(self, eco, content: dict | None = None) -> dict:
        """What the reviewer will see: *eco* with pending *content* laid over it."""
        content = content or {}
        product = eco.product
        if content.get("product_id") not in (None, eco.product_id):
            product = self.repository.get_product(content["product_id"])
        changes = content.get("proposed_changes", eco.proposed_changes)
        return {
            "id": eco.id,
            "title": content.get("title", eco.title),
            "description": content.get("description", eco.description),
            "change_type": content.get("change_type", eco.change_type),
            "priority": content.get("priority", eco.priority),
            "product": product.to_dict() if product else None,
            "proposed_changes": [c.to_dict() for c in (changes or ())],
        }

    def _score_risk(self, eco, content: dict | None = None) -> dict:
        """
        Enrichment for *eco*, or ``{}`` if scoring failed or timed out.

        The gateway's own request budget makes provider calls fail in time;
        the executor timeout here is the backstop for a scorer that ignores
        it.  A finished worker is joined before returning.
        """
        if self.risk_scorer is None:
            return {}
        summary = self._risk_summary(eco, content)
        log_extra = {"eco_id": eco.id, "chain_id": eco.chain_root_id}
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="eco-risk")
        future = executor.submit(self.risk_scorer.analyze, summary)
        timed_out = False
        try:
            result = future.result(timeout=self.risk_timeout)
        except TimeoutError:
            timed_out = True
            logger.warning("ECO risk analysis timed out after %ss", self.risk_timeout, extra=log_extra)
            return {}
        except Exception as e:
            logger.warning("ECO risk analysis failed: %s", e, extra=log_extra)
            return {}
        finally:
            executor.shutdown(wait=not timed_out, cancel_futures=True)
        return result.as_enrichment()

    # ── Create ───────────────────────────────────────────────────────────────

    def create(self, content: dict, actor: Actor) -> dict:
        values = normalize_content(content, creating=True)
        values.setdefault("priority", self.default_priority)
        values.setdefault("change_type", self.default_change_type)
        self._check_references(values)

        def work():
            eco = self.repository.insert_root({
                **values,
                "status": "draft",
                "requested_by_id": actor.id,
                "requested_by_name": actor.display_name,
            })
            self.repository.write_audit(
                change_order=eco,
                action="CREATE",
                actor_id=actor.id,
                new_value="v1",
                diff={"status": {"old": None, "new": "draft"}, "title": {"old": None, "new": eco.title}},
            )
            return eco.to_dict()

        eco = self.repository.run_atomic("create", work)
        logger.info(
            "ECO created: %s", eco["title"],
            extra={"chain_id": eco["chain_root_id"], "eco_id": eco["id"], "version": 1, "actor_id": actor.id},
        )
        self._publish(events.ECO_CREATED, eco, actor, version=1)
        return eco

    # ── Edit content ─────────────────────────────────────────────────────────

    def edit_content(self, chain_id: str, new_content: dict, actor: Actor, *, status: str | None = None) -> dict:
        """
        Apply a requester edit.

        Differing content always produces a new version whose status is
        *status* (or ``draft``).  With no differing content the call is a
        no-op, or a plain status change when *status* differs.  A status
        carried along with the edit is audited and scored exactly like one
        made through ``change_status``.
        """
        new_content = dict(new_content)
        content_status = new_content.pop("status", None)
        status = status or content_status

        root = self._resolve(chain_id)
        current = self._latest(root)
        self._ensure_editable(current)

        content = normalize_content(new_content)
        if status is not None and status not in ("draft", current.status):
            validate_transition(current.status, status)

        if not content_diff(current, content):
            if status is None or status == current.status:
                logger.debug("ECO edit is a no-op", extra={"chain_id": root, "eco_id": current.id})
                return current.to_dict()
            return self.change_status(root, status, actor)

        self._check_references(content)
        enrichment = {}
        if self._needs_scoring(current.status, status):
            enrichment = self._score_risk(current, content)
        now = _utcnow()

        def work():
            latest = self._latest(root)
            self._ensure_editable(latest)
            decision = decide(latest, ChangeIntent(
                actor=actor, content=content, status=status, enrichment=enrichment, at=now,
            ))
            if decision.kind == NO_OP:
                return latest.to_dict(), latest.status, False
            previous_status, previous_version = latest.status, latest.version
            eco = self._apply(latest, decision)
            self.repository.write_audit(
                change_order=eco,
                action="CREATE_VERSION",
                actor_id=actor.id,
                old_value=f"v{previous_version}",
                new_value=f"v{eco.version}",
                diff=decision.diff,
            )
            if eco.status != previous_status:
                self.repository.write_audit(
                    change_order=eco,
                    action="UPDATE_STATUS",
                    actor_id=actor.id,
                    old_value=previous_status,
                    new_value=eco.status,
                    diff={
                        "status": {"old": previous_status, "new": eco.status},
                        "version": {"old": previous_version, "new": eco.version},
                    },
                )
            return eco.to_dict(), previous_status, True

        eco, previous_status, written = self.repository.run_atomic("edit_content", work)
        if not written:
            return eco

        logger.info(
            "ECO version %d created", eco["version"],
            extra={
                "chain_id": root, "eco_id": eco["id"], "version": eco["version"],
                "from_status": previous_status, "to_status": eco["status"], "actor_id": actor.id,
            },
        )
        self._publish(events.ECO_VERSION_CREATED, eco, actor, version=eco["version"])
        if eco["status"] != previous_status:
            self._publish(
                events.ECO_STATUS_CHANGED, eco, actor,
                from_status=previous_status, to_status=eco["status"],
            )
        return eco

    # ── Status changes ───────────────────────────────────────────────────────

    def change_status(self, chain_id: str, target_status: str, actor: Actor, comment: str | None = None) -> dict:
        comment_text = f"Status changed to {target_status}: {comment}" if comment else None
        eco, _ = self._change_status(chain_id, target_status, actor, comment_text=comment_text)
        return eco

    def _change_status(
        self,
        chain_id: str,
        target: str,
        actor: Actor,
        *,
        comment_text: str | None = None,
        operation: str = "change_status",
    ) -> tuple[dict, datetime]:
        root = self._resolve(chain_id)
        current = self._latest(root)
        validate_transition(current.status, target)

        enrichment = {}
        if self._needs_scoring(current.status, target):
            enrichment = self._score_risk(current)

        now = _utcnow()

        def work():
            latest = self._latest(root)
            validate_transition(latest.status, target)
            decision = decide(latest, ChangeIntent(actor=actor, status=target, enrichment=enrichment, at=now))
            previous_status, previous_version = latest.status, latest.version
            eco = self._apply(latest, decision)
            diff = dict(decision.diff)
            if decision.creates_version:
                diff["version"] = {"old": previous_version, "new": eco.version}
            self.repository.write_audit(
                change_order=eco,
                action="UPDATE_STATUS",
                actor_id=actor.id,
                old_value=previous_status,
                new_value=target,
                diff=diff,
            )
            if comment_text:
                self.repository.append_comment(
                    change_order=eco,
                    author_id=actor.id,
                    author_name=actor.display_name,
                    content=comment_text,
                )
            return eco.to_dict(), previous_status, decision.creates_version

        eco, previous_status, versioned = self.repository.run_atomic(operation, work)

        logger.info(
            "ECO status updated",
            extra={
                "chain_id": root, "eco_id": eco["id"], "version": eco["version"],
                "from_status": previous_status, "to_status": target, "actor_id": actor.id,
            },
        )
        if versioned:
            self._publish(events.ECO_VERSION_CREATED, eco, actor, version=eco["version"])
        self._publish(
            events.ECO_STATUS_CHANGED, eco, actor,
            from_status=previous_status, to_status=target,
        )
        return eco, now

    def record_approval(self, chain_id: str, actor: Actor, approved: bool, comment: str | None = None) -> ApprovalResult:
        """Approve or reject; the decision comment lands in the same transaction."""
        target = "approved" if approved else "rejected"
        text = f"ECO {target}: {comment}" if comment else f"ECO {target}"
        eco, decided_at = self._change_status(
            chain_id, target, actor, comment_text=text, operation="record_approval",
        )
        return ApprovalResult(change_order=eco, approved=approved, decided_at=decided_at, comment=comment)

    # ── Comments ─────────────────────────────────────────────────────────────

    def add_comment(self, chain_id: str, actor: Actor, text: str) -> dict:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Comment content is required", details={"content": "required"})
        if len(text) > COMMENT_MAX:
            raise ValidationError(
                f"Comment must be ≤ {COMMENT_MAX} characters",
                details={"content": f"max {COMMENT_MAX} characters"},
            )
        root = self._resolve(chain_id)

        def work():
            latest = self._latest(root)
            comment = self.repository.append_comment(
                change_order=latest,
                author_id=actor.id,
                author_name=actor.display_name,
                content=text,
            )
            return comment.to_dict()

        return self.repository.run_atomic("add_comment", work)

    # ── Delete ───────────────────────────────────────────────────────────────

    def delete(self, chain_id: str, actor: Actor) -> dict:
        root = self._resolve(chain_id)

        def work():
            latest = self._latest(root)
            versions = self.repository.count_versions(root)
            if versions != 1 or latest.status != "draft":
                raise ValidationError(
                    "Only draft ECOs without further versions can be deleted",
                    details={"status": latest.status, "versions": versions},
                )
            if latest.requested_by_id != actor.id:
                raise ForbiddenError("Only the requester can delete this ECO", actor_id=actor.id)
            snapshot = latest.to_dict()
            self.repository.delete_chain(root)
            return snapshot

        eco = self.repository.run_atomic("delete", work)
        logger.info(
            "ECO deleted",
            extra={"chain_id": root, "eco_id": eco["id"], "actor_id": actor.id},
        )
        self._publish(events.ECO_DELETED, eco, actor)
        return {"deleted": True, "chain_root_id": root}

    # ── History ──────────────────────────────────────────────────────────────

    def get_version_history(self, chain_id: str) -> list[dict]:
        root = self._resolve(chain_id)
        return [eco.to_summary() for eco in self.repository.list_chain(root)]


def build_eco_workflow(app) -> ECOWorkflowService:
    """Wire the workflow from *app*'s config; stored in ``app.extensions``."""
    from ecoflow.ai.gateway import LLMGateway
    from ecoflow.ai.risk_scorer import ECORiskScorer
    from ecoflow.models import db
    from ecoflow.services.reference_validators import bom_validator, product_validator

    cfg = app.config
    risk_scorer = None
    if cfg.get("ECO_RISK_SCORING_ENABLED", True):
        risk_scorer = ECORiskScorer(LLMGateway.from_config(cfg))

    return ECOWorkflowService(
        ChainRepository(db.session, max_retries=cfg.get("ECO_TX_MAX_RETRIES", 2)),
        product_validator=product_validator(db.session),
        bom_validator=bom_validator(db.session),
        risk_scorer=risk_scorer,
        event_bus=EventBus(),
        risk_timeout=cfg.get("ECO_RISK_TIMEOUT_SECONDS", 10.0),
        default_priority=cfg.get("ECO_DEFAULT_PRIORITY", "medium"),
        default_change_type=cfg.get("ECO_DEFAULT_CHANGE_TYPE", "standard"),
    )
