"""
Flask-Migrate / Alembic and WSGI entry point.

Usage:
    flask --app wsgi db upgrade
    gunicorn wsgi:app
"""

from ticket_tracker import create_app

app = create_app()
