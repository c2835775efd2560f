#!/usr/bin/env python3
"""Fast end-to-end smoke test for local/dev CI.

Runs in-process WSGI calls (no HTTP server) against a throwaway SQLite file:
health, sign-in as the seeded admin, one API write and the main pages.
"""

import io
import json
import os
import sys
import tempfile
from pathlib import Path
from urllib.parse import urlencode

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("EMSDASH_DB_PATH", str(Path(tempfile.mkdtemp()) / "smoke.db"))

from emsdash import config
from emsdash.db import ensure_bootstrap
from emsdash.server import app


def run_request(path="/healthz", method="GET", body=b"", cookie="", content_type="application/x-www-form-urlencoded", headers=None):
    """Execute a minimal WSGI request against the app callable."""
    status_holder = {}

    def start_response(status, response_headers):
        status_holder["status"] = status
        status_holder["headers"] = response_headers

    path, _, query = path.partition("?")
    environ = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "QUERY_STRING": query,
        "wsgi.input": io.BytesIO(body),
        "CONTENT_LENGTH": str(len(body)),
        "CONTENT_TYPE": content_type,
        "REMOTE_ADDR": "127.0.0.1",
        "HTTP_USER_AGENT": "smoke-test",
        "HTTP_HOST": "localhost",
        "HTTP_COOKIE": cookie,
    }
    environ.update(headers or {})
    payload = b"".join(app(environ, start_response))
    return status_holder["status"], status_holder["headers"], payload.decode("utf-8", errors="ignore")


def main():
    ensure_bootstrap()
    status, _headers, body = run_request("/healthz")
    assert status.startswith("200"), f"health failed: {status}"
    assert "ok" in body.lower(), "health payload missing"

    status, _headers, body = run_request("/readyz")
    assert status.startswith("200"), f"readiness failed: {status} {body}"

    login = json.dumps({"email": config.ADMIN_EMAIL, "password": config.ADMIN_PASSWORD}).encode()
    status, headers, body = run_request("/api/auth/login", "POST", login, content_type="application/json")
    assert status.startswith("200"), f"login failed: {status} {body}"
    csrf = json.loads(body)["csrf"]
    cookie = next(value.split(";", 1)[0] for name, value in headers if name == "Set-Cookie")

    form = urlencode({"name": "Smoke Clinical", "department_type": "clinical", "csrf_token": csrf}).encode()
    status, _headers, body = run_request("/api/departments", "POST", form, cookie=cookie)
    assert status.startswith("200"), f"department create failed: {status} {body}"

    for page in ("/dashboard", "/dashboard/smoke-clinical", "/scorecards", "/qi/campaigns", "/field-training", "/admin/departments"):
        status, _headers, body = run_request(page, cookie=cookie)
        assert status.startswith("200"), f"{page} failed: {status}"
    print("SMOKE_OK")


if __name__ == "__main__":
    main()
