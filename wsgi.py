"""
WSGI entry point (gunicorn) and Flask CLI target.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi create-user --email ana@example.com --name "Ana Ruiz" --role Interventoría
"""

from app import create_app

app = create_app()
