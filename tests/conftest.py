"""
Shared pytest fixtures for the ECO lifecycle engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - requester / reviewer: Actor identities
    - product / bom: Pre-created reference rows
    - workflow: Fresh ECOWorkflowService wired from the testing config
"""

import pytest

from ecoflow import create_app
from ecoflow.core.actor import Actor
from ecoflow.models import db as _db
from ecoflow.models.reference import Bom, Product
from ecoflow.services.eco_workflow import build_eco_workflow


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def requester():
    return Actor(id="u-requester", name="Rita Requester")


@pytest.fixture()
def reviewer():
    return Actor(id="u-reviewer", name="Rob Reviewer")


@pytest.fixture()
def product():
    p = Product(sku="BRK-100", name="Mounting Bracket", category="Structural", cost=12.5)
    _db.session.add(p)
    _db.session.commit()
    return p


@pytest.fixture()
def bom(product):
    b = Bom(product_id=product.id, name="Bracket assembly", version="2.1")
    _db.session.add(b)
    _db.session.commit()
    return b


@pytest.fixture()
def workflow(app):
    """Workflow built per test so event subscriptions never leak."""
    return build_eco_workflow(app)
