#!/usr/bin/env python3
"""WSGI entry point for production deployment.

- Gunicorn: gunicorn wsgi:application
- Waitress: waitress-serve --port=8080 wsgi:application
"""

from emsdash.flask_app import create_app

application = create_app()

if __name__ == "__main__":
    application.run()
