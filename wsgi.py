"""
Flask-Migrate / Alembic entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi verify-chains
"""

from ecoflow import create_app

app = create_app()
