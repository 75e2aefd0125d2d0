"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db migrate -m "description"
    flask --app wsgi seed-workflow
    flask --app wsgi run-escalations
    flask --app wsgi run-due-jobs
"""

from app import create_app

app = create_app()
