# Overview: WSGI/CLI entry point (FLASK_APP=wsgi.py).

from tillbook import create_app

app = create_app()
