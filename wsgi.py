"""
WSGI entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi sla-sweep
"""

from exception_tracker import create_app

app = create_app()
