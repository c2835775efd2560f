"""Flask wrapper around the WSGI router.

Flask contributes the CLI and hosting conventions; every request still flows
through :func:`emsdash.server.app` so routing, gates and rendering live in one
place.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict

import click
from flask import Flask, request

from emsdash import config
from emsdash.db import db_connect, default_org_id, ensure_bootstrap, init_db
from emsdash.errors import ActionError
from emsdash.org import create_user
from emsdash.server import app as wsgi_app

logger = logging.getLogger(__name__)

ALL_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH"]


def _call_wsgi(environ: Dict[str, Any]):
    captured: Dict[str, Any] = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = headers
        return lambda _chunk: None

    body = b"".join(wsgi_app(environ, start_response))
    return body, captured.get("status", "200 OK"), captured.get("headers", [])


def create_app() -> Flask:
    config.configure_logging()
    flask_app = Flask(__name__, static_folder=None, template_folder=None)
    flask_app.config["SECRET_KEY"] = config.SECRET_KEY
    flask_app.config["SESSION_COOKIE_SECURE"] = config.COOKIE_SECURE
    flask_app.config["SESSION_COOKIE_HTTPONLY"] = True
    flask_app.config["SESSION_COOKIE_SAMESITE"] = "Lax"

    @flask_app.before_request
    def bootstrap():
        # Liveness must answer even when the database cannot be reached.
        if request.path == "/healthz":
            return None
        ensure_bootstrap()
        return None

    @flask_app.route("/", defaults={"path": ""}, methods=ALL_METHODS)
    @flask_app.route("/<path:path>", methods=ALL_METHODS)
    def catch_all(path):
        body, status, headers = _call_wsgi(request.environ)
        response = flask_app.make_response((body, int(status.split()[0])))
        response.headers.clear()
        for name, value in headers:
            response.headers.add(name, value)
        return response

    @flask_app.cli.command("init-db")
    def init_db_command():
        """Create the schema and seed the default organization."""
        init_db()
        click.echo(f"Database initialized ({config.DB_BACKEND}).")

    @flask_app.cli.command("create-admin")
    @click.option("--email", required=True)
    @click.option("--password", required=True)
    @click.option("--first-name", default="Admin")
    @click.option("--last-name", default="User")
    def create_admin_command(email, password, first_name, last_name):
        """Create an active admin account in the default organization."""
        init_db()
        conn = db_connect()
        try:
            org_id = default_org_id(conn)
            form = {"email": email, "password": password, "first_name": first_name, "last_name": last_name, "role": "admin"}
            try:
                result = create_user(conn, org_id, None, form)
            except ActionError as exc:
                conn.rollback()
                raise click.ClickException(exc.message)
            conn.commit()
        finally:
            conn.close()
        click.echo(f"Created admin {email} (user {result['user_id']}).")

    return flask_app


if __name__ == "__main__":
    # Development server only; production hosts import wsgi.application.
    create_app().run(
        host=config.HOST,
        port=config.PORT,
        debug=os.environ.get("FLASK_DEBUG", "0") == "1",
        threaded=True,
    )
