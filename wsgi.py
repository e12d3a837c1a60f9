"""
WSGI / Flask CLI entry point.

Usage:
    flask --app wsgi run
    flask --app wsgi recompute-weights --year 2025-2026
    flask --app wsgi db migrate -m "description"
    gunicorn wsgi:app
"""

from kpiboard import create_app

app = create_app()
