"""Existence checks for the entities a change order points at."""

from typing import Protocol

from sqlalchemy import select

from ecoflow.models.reference import Bom, Product


class ReferenceValidator(Protocol):
    def exists(self, entity_id: str) -> bool: ...


class SqlReferenceValidator:
    """``exists`` over one reference table's primary key."""

    def __init__(self, session, model) -> None:
        self.session = session
        self.model = model

    def exists(self, entity_id: str) -> bool:
        if not entity_id:
            return False
        return self.session.execute(
            select(self.model.id).where(self.model.id == entity_id)
        ).first() is not None


def product_validator(session) -> SqlReferenceValidator:
    return SqlReferenceValidator(session, Product)


def bom_validator(session) -> SqlReferenceValidator:
    return SqlReferenceValidator(session, Bom)
