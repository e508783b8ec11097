"""
ECO read-side queries.

List / detail / stats views over ``change_orders``.  Read-only; every
function takes the session explicitly so it can run outside the workflow.
"""

import math

from sqlalchemy import func, or_, select

from ecoflow.core.exceptions import NotFoundError, ValidationError
from ecoflow.models.change_order import ChangeOrder
from ecoflow.services.eco_log import list_version_comments

_SORTABLE = {
    "created_at": ChangeOrder.created_at,
    "updated_at": ChangeOrder.updated_at,
    "title": ChangeOrder.title,
    "priority": ChangeOrder.priority,
    "status": ChangeOrder.status,
    "version": ChangeOrder.version,
    "risk_score": ChangeOrder.risk_score,
}

_FILTERABLE = ("status", "priority", "change_type", "product_id")

MAX_PER_PAGE = 100


def _positive_int(value, name: str) -> int:
    """Page arguments arrive as query-string text; below 1 clamps to 1."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", details={name: str(value)})
    return max(1, number)


def list_change_orders(
    session,
    filters: dict | None = None,
    *,
    page: int = 1,
    per_page: int = 20,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    latest_only: bool = True,
) -> dict:
    """
    Paginated change orders.

    ``filters`` may hold status / priority / change_type / product_id
    (exact match) and ``search`` (LIKE over title and description).
    """
    filters = filters or {}
    if sort_by not in _SORTABLE:
        raise ValidationError(
            f"Cannot sort by {sort_by}",
            details={"sort_by": f"must be one of: {', '.join(sorted(_SORTABLE))}"},
        )
    if sort_order not in ("asc", "desc"):
        raise ValidationError("sort_order must be asc or desc", details={"sort_order": sort_order})

    page = _positive_int(page, "page")
    per_page = min(_positive_int(per_page, "per_page"), MAX_PER_PAGE)

    stmt = select(ChangeOrder)
    if latest_only:
        stmt = stmt.where(ChangeOrder.is_latest.is_(True))
    for name in _FILTERABLE:
        if filters.get(name):
            stmt = stmt.where(getattr(ChangeOrder, name) == filters[name])

    search = (filters.get("search") or "").strip()
    if search:
        q = f"%{search[:200]}%"
        stmt = stmt.where(or_(ChangeOrder.title.ilike(q), ChangeOrder.description.ilike(q)))

    count_stmt = select(func.count()).select_from(stmt.subquery())
    total = session.execute(count_stmt).scalar_one()

    column = _SORTABLE[sort_by]
    stmt = stmt.order_by(column.asc() if sort_order == "asc" else column.desc(), ChangeOrder.id.asc())
    stmt = stmt.offset((page - 1) * per_page).limit(per_page)

    items = session.execute(stmt).unique().scalars().all()

    return {
        "items": [eco.to_dict() for eco in items],
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": math.ceil(total / per_page) if total else 0,
    }


def get_change_order(session, eco_id: str) -> dict:
    """One version with its comments and the summaries of its siblings."""
    eco = session.get(ChangeOrder, eco_id)
    if eco is None:
        raise NotFoundError(resource="ChangeOrder", resource_id=eco_id)

    versions = session.execute(
        select(ChangeOrder)
        .where(ChangeOrder.chain_root_id == eco.chain_root_id)
        .order_by(ChangeOrder.version.asc())
    ).unique().scalars().all()

    data = eco.to_dict()
    data["comments"] = list_version_comments(session, eco.id)
    data["versions"] = [v.to_summary() for v in versions]
    return data


def get_stats(session) -> dict:
    """Counts over latest versions, grouped by status, priority and change type."""
    latest = ChangeOrder.is_latest.is_(True)

    def _grouped(column):
        rows = session.execute(
            select(column, func.count(ChangeOrder.id)).where(latest).group_by(column)
        ).all()
        return {key: count for key, count in rows}

    total = session.execute(select(func.count(ChangeOrder.id)).where(latest)).scalar_one()
    return {
        "total": total,
        "by_status": _grouped(ChangeOrder.status),
        "by_priority": _grouped(ChangeOrder.priority),
        "by_change_type": _grouped(ChangeOrder.change_type),
    }
