"""Read side of the ECO audit trail and discussion log."""

from sqlalchemy import select

from ecoflow.models.audit import ECOAuditEntry, ECOComment


def list_comments(session, chain_root_id: str) -> list[dict]:
    """Every comment on the chain, oldest first, across all versions."""
    stmt = (
        select(ECOComment)
        .where(ECOComment.chain_root_id == chain_root_id)
        .order_by(ECOComment.created_at.asc(), ECOComment.id.asc())
    )
    return [c.to_dict() for c in session.execute(stmt).scalars()]


def list_version_comments(session, change_order_id: str) -> list[dict]:
    stmt = (
        select(ECOComment)
        .where(ECOComment.change_order_id == change_order_id)
        .order_by(ECOComment.created_at.asc(), ECOComment.id.asc())
    )
    return [c.to_dict() for c in session.execute(stmt).scalars()]


def list_audit_trail(session, chain_root_id: str, *, action: str | None = None) -> list[dict]:
    stmt = select(ECOAuditEntry).where(ECOAuditEntry.chain_root_id == chain_root_id)
    if action:
        stmt = stmt.where(ECOAuditEntry.action == action)
    stmt = stmt.order_by(ECOAuditEntry.timestamp.asc(), ECOAuditEntry.id.asc())
    return [e.to_dict() for e in session.execute(stmt).scalars()]
