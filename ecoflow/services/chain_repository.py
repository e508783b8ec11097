"""
ECO Chain Repository

All reads and writes of ``change_orders`` rows go through this class.  The
orchestrator never issues its own statements.

Guarantees:
  - ``get_latest`` always re-reads from the database (``populate_existing``);
    nothing is cached across calls.
  - ``retire`` and ``mutate_in_place`` are compare-and-swap updates: they
    only match a row that is still the latest (and, for in-place writes,
    still in the status the caller loaded).  A lost race raises
    ConflictError instead of silently writing a second latest row.
  - Audit and comment rows go through the same session, so
    ``run_atomic`` commits them with the versions they describe.
  - ``run_atomic`` commits a unit of work or rolls all of it back.
    OperationalError is retried up to ``max_retries`` times, then surfaced
    as TransientStoreError.  IntegrityError (the partial unique index on
    ``chain_root_id WHERE is_latest``) surfaces as ConflictError.

Usage:
    repo = ChainRepository(db.session, max_retries=2)
    eco = repo.run_atomic("edit_content", lambda: ...)
"""

import logging
import time
import uuid
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from ecoflow.core.exceptions import ConflictError, TransientStoreError
from ecoflow.models.audit import ECOAuditEntry, ECOComment, append_comment, write_audit
from ecoflow.models.change_order import ChangeOrder
from ecoflow.models.reference import Product

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRY_BACKOFF_SECONDS = 0.05


class ChainRepository:
    def __init__(self, session, *, max_retries: int = 2) -> None:
        self.session = session
        self.max_retries = max_retries

    # ── Reads ────────────────────────────────────────────────────────────────

    def get_by_id(self, version_id: str) -> ChangeOrder | None:
        return self.session.get(ChangeOrder, version_id, populate_existing=True)

    def resolve_chain_root(self, chain_id: str) -> str | None:
        """Map a chain root id or any version id to the chain root id."""
        return self.session.execute(
            select(ChangeOrder.chain_root_id).where(ChangeOrder.id == chain_id)
        ).scalar_one_or_none()

    def get_latest(self, chain_root_id: str) -> ChangeOrder | None:
        stmt = (
            select(ChangeOrder)
            .where(ChangeOrder.chain_root_id == chain_root_id, ChangeOrder.is_latest.is_(True))
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def list_chain(self, chain_root_id: str) -> list[ChangeOrder]:
        stmt = (
            select(ChangeOrder)
            .where(ChangeOrder.chain_root_id == chain_root_id)
            .order_by(ChangeOrder.version.asc())
            .execution_options(populate_existing=True)
        )
        return list(self.session.execute(stmt).scalars())

    def count_versions(self, chain_root_id: str) -> int:
        return self.session.execute(
            select(func.count(ChangeOrder.id)).where(ChangeOrder.chain_root_id == chain_root_id)
        ).scalar_one()

    def get_product(self, product_id: str) -> Product | None:
        return self.session.get(Product, product_id)

    def list_chain_roots(self) -> list[str]:
        stmt = select(ChangeOrder.chain_root_id).distinct().order_by(ChangeOrder.chain_root_id)
        return list(self.session.execute(stmt).scalars())

    # ── Writes (flush only; run inside run_atomic) ───────────────────────────

    def insert(self, values: dict) -> ChangeOrder:
        eco = ChangeOrder(**values)
        self.session.add(eco)
        self.session.flush()
        return eco

    def insert_root(self, values: dict) -> ChangeOrder:
        """Write version 1 of a new chain."""
        eco_id = values.get("id") or str(uuid.uuid4())
        eco = ChangeOrder(**{
            **values,
            "id": eco_id,
            "chain_root_id": eco_id,
            "parent_id": None,
            "version": 1,
            "is_latest": True,
        })
        self.session.add(eco)
        self.session.flush()
        return eco

    def retire(self, version_id: str) -> None:
        """Clear ``is_latest`` on *version_id*; must run before the successor is inserted."""
        result = self.session.execute(
            update(ChangeOrder)
            .where(ChangeOrder.id == version_id, ChangeOrder.is_latest.is_(True))
            # superseded rows keep their timestamps
            .values(is_latest=False, updated_at=ChangeOrder.updated_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("ChangeOrder", "is_latest", version_id)

    def mutate_in_place(self, version_id: str, expected_status: str, values: dict) -> ChangeOrder:
        result = self.session.execute(
            update(ChangeOrder)
            .where(
                ChangeOrder.id == version_id,
                ChangeOrder.is_latest.is_(True),
                ChangeOrder.status == expected_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("ChangeOrder", "status", expected_status)
        return self.get_by_id(version_id)

    def delete_chain(self, chain_root_id: str) -> int:
        self.session.execute(delete(ECOComment).where(ECOComment.chain_root_id == chain_root_id))
        self.session.execute(delete(ECOAuditEntry).where(ECOAuditEntry.chain_root_id == chain_root_id))
        result = self.session.execute(
            delete(ChangeOrder).where(ChangeOrder.chain_root_id == chain_root_id)
        )
        return result.rowcount

    def write_audit(self, **fields) -> ECOAuditEntry:
        return write_audit(session=self.session, **fields)

    def append_comment(self, **fields) -> ECOComment:
        return append_comment(session=self.session, **fields)

    # ── Transactions ─────────────────────────────────────────────────────────

    def run_atomic(self, operation: str, work: Callable[[], T]) -> T:
        """Run *work* and commit; roll back everything on failure."""
        attempt = 0
        while True:
            attempt += 1
            try:
                result = work()
                self.session.commit()
                return result
            except IntegrityError as exc:
                self.session.rollback()
                logger.warning(
                    "Integrity violation during %s: %s", operation, exc.orig,
                    extra={"operation": operation},
                )
                raise ConflictError("ChangeOrder", "is_latest") from exc
            except OperationalError as exc:
                self.session.rollback()
                if attempt > self.max_retries:
                    logger.error(
                        "Store unavailable during %s after %d attempt(s)", operation, attempt,
                        extra={"operation": operation},
                    )
                    raise TransientStoreError(operation, attempt) from exc
                logger.warning(
                    "Transient store error during %s (attempt %d): %s", operation, attempt, exc.orig,
                    extra={"operation": operation},
                )
                time.sleep(_RETRY_BACKOFF_SECONDS * attempt)
            except Exception:
                self.session.rollback()
                raise
