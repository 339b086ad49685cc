"""
WSGI / Flask CLI entry point for the QMS change management core.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi seed-propagation-rules
    flask --app wsgi run-job approval_escalation_sweep
"""

from app import create_app

app = create_app()
