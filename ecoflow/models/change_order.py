"""
ECO Lifecycle Engine
Change-order domain model.

Models:
    - ChangeOrder: one row per version of an engineering change order.

A chain is every row sharing ``chain_root_id`` (the id of version 1).
Versions run 1..N, each row's ``parent_id`` points at the previous version,
and exactly one row per chain carries ``is_latest = True``.  Superseded rows
are never edited again except for clearing ``is_latest``.
"""

import uuid
from datetime import datetime, timezone

from ecoflow.models import db
from ecoflow.models.reference import Bom, Product  # noqa: F401  (relationship targets)
from ecoflow.models.column_types import (
    ComplianceCheckList,
    FieldChangeList,
    ImpactAnalysisType,
    StringList,
)

__all__ = [
    "ECO_STATUSES",
    "CHANGE_TYPES",
    "PRIORITIES",
    "CONTENT_FIELDS",
    "ENRICHMENT_FIELDS",
    "WORKFLOW_FIELDS",
    "ChangeOrder",
]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Constants ────────────────────────────────────────────────────────────────

ECO_STATUSES = (
    "draft", "submitted", "under_review", "approved",
    "implementing", "completed", "rejected",
)

CHANGE_TYPES = ("standard", "emergency", "deviation")

PRIORITIES = ("low", "medium", "normal", "high", "critical")

# Fields a requester edits.  A differing value in any of these produces a
# new version; everything else on the row is workflow or enrichment data.
CONTENT_FIELDS = (
    "title",
    "description",
    "reason",
    "change_type",
    "priority",
    "product_id",
    "bom_id",
    "proposed_changes",
    "impact_analysis",
    "compliance_checks",
    "effective_date",
)

ENRICHMENT_FIELDS = ("risk_score", "predicted_delay", "key_risks")

WORKFLOW_FIELDS = (
    "status",
    "requested_by_id", "requested_by_name",
    "approved_by_id", "approved_by_name", "approval_date",
    "executed_by_id", "executed_by_name", "executed_at",
)


class ChangeOrder(db.Model):
    """One version of an engineering change order."""

    __tablename__ = "change_orders"
    __table_args__ = (
        db.UniqueConstraint("chain_root_id", "version", name="uq_eco_chain_version"),
        db.Index(
            "uq_eco_chain_latest", "chain_root_id",
            unique=True,
            sqlite_where=db.text("is_latest = 1"),
            postgresql_where=db.text("is_latest = true"),
        ),
        db.Index("idx_eco_status_latest", "status", "is_latest"),
        db.Index("idx_eco_product", "product_id"),
    )

    # ── Chain identity ───────────────────────────────────────────────────
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    chain_root_id = db.Column(
        db.String(36), nullable=False, index=True,
        comment="id of version 1; equal to id on the root row",
    )
    parent_id = db.Column(
        db.String(36), db.ForeignKey("change_orders.id", ondelete="SET NULL"),
        nullable=True,
        comment="id of the previous version; NULL for version 1",
    )
    version = db.Column(db.Integer, nullable=False, default=1)
    is_latest = db.Column(db.Boolean, nullable=False, default=True)

    # ── Content ──────────────────────────────────────────────────────────
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    reason = db.Column(db.Text, nullable=True)
    change_type = db.Column(
        db.String(20), nullable=False, default="standard",
        comment="standard | emergency | deviation",
    )
    priority = db.Column(
        db.String(20), nullable=False, default="medium",
        comment="low | medium | normal | high | critical",
    )
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
    )
    bom_id = db.Column(
        db.String(36), db.ForeignKey("boms.id", ondelete="SET NULL"),
        nullable=True,
    )
    proposed_changes = db.Column(FieldChangeList, nullable=True)
    impact_analysis = db.Column(ImpactAnalysisType, nullable=True)
    compliance_checks = db.Column(ComplianceCheckList, nullable=True)
    effective_date = db.Column(db.Date, nullable=True)

    # ── Workflow ─────────────────────────────────────────────────────────
    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | submitted | under_review | approved | implementing | completed | rejected",
    )
    requested_by_id = db.Column(db.String(36), nullable=False)
    requested_by_name = db.Column(db.String(150), nullable=True)
    approved_by_id = db.Column(db.String(36), nullable=True)
    approved_by_name = db.Column(db.String(150), nullable=True)
    approval_date = db.Column(db.DateTime(timezone=True), nullable=True)
    executed_by_id = db.Column(db.String(36), nullable=True)
    executed_by_name = db.Column(db.String(150), nullable=True)
    executed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Risk enrichment ──────────────────────────────────────────────────
    risk_score = db.Column(db.Float, nullable=True, comment="1–10")
    predicted_delay = db.Column(db.Integer, nullable=True, comment="days")
    key_risks = db.Column(StringList, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    product = db.relationship("Product", lazy="joined")
    bom = db.relationship("Bom", lazy="select")

    # ── Helpers ──────────────────────────────────────────────────────────

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "chain_root_id": self.chain_root_id,
            "parent_id": self.parent_id,
            "version": self.version,
            "is_latest": self.is_latest,
            "status": self.status,
            "title": self.title,
            "requested_by_id": self.requested_by_id,
            "requested_by_name": self.requested_by_name,
            "created_at": _iso(self.created_at),
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "chain_root_id": self.chain_root_id,
            "parent_id": self.parent_id,
            "version": self.version,
            "is_latest": self.is_latest,
            "title": self.title,
            "description": self.description,
            "reason": self.reason,
            "change_type": self.change_type,
            "priority": self.priority,
            "product_id": self.product_id,
            "product": self.product.to_dict() if self.product else None,
            "bom_id": self.bom_id,
            "proposed_changes": [c.to_dict() for c in (self.proposed_changes or ())],
            "impact_analysis": self.impact_analysis.to_dict() if self.impact_analysis else None,
            "compliance_checks": [c.to_dict() for c in (self.compliance_checks or ())],
            "effective_date": _iso(self.effective_date),
            "status": self.status,
            "requested_by_id": self.requested_by_id,
            "requested_by_name": self.requested_by_name,
            "approved_by_id": self.approved_by_id,
            "approved_by_name": self.approved_by_name,
            "approval_date": _iso(self.approval_date),
            "executed_by_id": self.executed_by_id,
            "executed_by_name": self.executed_by_name,
            "executed_at": _iso(self.executed_at),
            "risk_score": self.risk_score,
            "predicted_delay": self.predicted_delay,
            "key_risks": list(self.key_risks or []),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ChangeOrder {self.chain_root_id} v{self.version} [{self.status}]>"
