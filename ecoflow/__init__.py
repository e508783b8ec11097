"""
ECO Lifecycle Engine
Flask Application Factory.

Usage:
    from ecoflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_migrate import Migrate

from ecoflow.config import config
from ecoflow.models import db
from ecoflow.middleware.logging_config import configure_logging

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.  The ECO workflow service
        is available as ``app.extensions["ecoflow"]``.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Models (register tables on db.metadata) ─────────────────────────
    from ecoflow.models import audit, change_order, reference  # noqa: F401

    if not app.config.get("TESTING"):
        os.makedirs(app.instance_path, exist_ok=True)  # dev SQLite file lives here

    with app.app_context():
        db.create_all()

    # ── ECO workflow ─────────────────────────────────────────────────────
    from ecoflow.services.eco_workflow import build_eco_workflow
    app.extensions["ecoflow"] = build_eco_workflow(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("verify-chains")
    def verify_chains_cmd():
        """Report ECO chains that break the version-chain rules."""
        from ecoflow.services.chain_integrity import verify_chains

        report = verify_chains(app.extensions["ecoflow"].repository)
        if not report:
            click.echo("All ECO chains are consistent.")
            return
        for chain_root_id, problems in report.items():
            for problem in problems:
                click.echo(f"{chain_root_id}: {problem}", err=True)
        logger.error("verify-chains found %d inconsistent chain(s)", len(report))
        raise click.exceptions.Exit(1)

    return app
