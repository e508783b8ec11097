"""
ECO Lifecycle Engine
Audit & discussion domain model.

Models:
    - ECOAuditEntry: immutable, append-only trail of version/status events.
    - ECOComment: immutable discussion entry attached to one version.

Both rows carry the stored ``chain_root_id`` so a chain's whole trail can be
read without walking parent links.  Neither is ever updated or deleted
except by the cascade when its chain is removed.
"""

import uuid
from datetime import UTC, datetime

from ecoflow.models import db
from ecoflow.models.column_types import FieldDiff

AUDIT_ACTIONS = frozenset({"CREATE", "CREATE_VERSION", "UPDATE_STATUS"})


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(UTC)


def _iso(value):
    return value.isoformat() if value else None


def _version_fk():
    return db.Column(
        db.String(36),
        db.ForeignKey("change_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )


class ECOAuditEntry(db.Model):
    """
    One row per lifecycle event on a chain.

    ``old_value`` / ``new_value`` hold the short form (status name or
    ``v{n}``); ``diff`` carries the field-level old→new snapshot.
    """

    __tablename__ = "eco_audit_entries"
    __table_args__ = (
        db.Index("idx_eco_audit_chain", "chain_root_id", "timestamp"),
        db.Index("idx_eco_audit_action", "action"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    change_order_id = _version_fk()
    chain_root_id = db.Column(db.String(36), nullable=False)

    action = db.Column(db.String(30), nullable=False, comment="CREATE | CREATE_VERSION | UPDATE_STATUS")
    actor_id = db.Column(db.String(36), nullable=False)
    old_value = db.Column(db.String(100))
    new_value = db.Column(db.String(100))
    diff = db.Column("diff_json", FieldDiff(), default=dict, comment="JSON: {field: {old, new}}")
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "change_order_id": self.change_order_id,
            "chain_root_id": self.chain_root_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "diff": self.diff or {},
            "timestamp": _iso(self.timestamp),
        }

    def __repr__(self):
        return f"<ECOAuditEntry {self.action} v={self.change_order_id[:8]}>"


class ECOComment(db.Model):
    __tablename__ = "eco_comments"
    __table_args__ = (
        db.Index("idx_eco_comment_chain", "chain_root_id", "created_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    change_order_id = _version_fk()
    chain_root_id = db.Column(db.String(36), nullable=False)
    author_id = db.Column(db.String(36), nullable=False)
    author_name = db.Column(db.String(150))
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "change_order_id": self.change_order_id,
            "chain_root_id": self.chain_root_id,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "content": self.content,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ECOComment by {self.author_id} v={self.change_order_id[:8]}>"


# ── Convenience writers (flush only; callers own the transaction) ───────────


def write_audit(
    *,
    change_order,
    action: str,
    actor_id: str,
    old_value: str | None = None,
    new_value: str | None = None,
    diff: dict | None = None,
    session=None,
) -> ECOAuditEntry:
    """Append a single audit row for *change_order* and return it.

    *session* defaults to ``db.session``; ChainRepository passes its own so
    the row commits with the version it describes.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    session = db.session if session is None else session

    entry = ECOAuditEntry(
        change_order_id=change_order.id,
        chain_root_id=change_order.chain_root_id,
        action=action,
        actor_id=str(actor_id),
        old_value=old_value,
        new_value=new_value,
        diff=diff or {},
    )
    session.add(entry)
    session.flush()
    return entry


def append_comment(
    *,
    change_order,
    author_id: str,
    author_name: str | None,
    content: str,
    session=None,
) -> ECOComment:
    session = db.session if session is None else session
    comment = ECOComment(
        change_order_id=change_order.id,
        chain_root_id=change_order.chain_root_id,
        author_id=str(author_id),
        author_name=author_name,
        content=content,
    )
    session.add(comment)
    session.flush()
    return comment
