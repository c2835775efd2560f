"""Pytest fixtures for the EMS dashboard tests.

Every test that touches the database gets its own SQLite file under
``tmp_path``; HTTP tests drive the WSGI app in-process.
"""

import io
import json
from urllib.parse import urlencode

import pytest

from emsdash import auth, config, db, org
from emsdash.server import app

STRONG_PASSWORD = "Testing!2026"


@pytest.fixture
def database(tmp_path, monkeypatch):
    """Fresh, bootstrapped SQLite database for one test."""
    monkeypatch.setattr(config, "DB_PATH", tmp_path / "test.db")
    monkeypatch.setattr(config, "DB_BACKEND", "sqlite")
    monkeypatch.setattr(db, "BOOTSTRAPPED", False)
    # Hashing cost is irrelevant for tests; keep the suite fast.
    monkeypatch.setattr(auth, "PBKDF2_ITERATIONS", 1000)
    db.ensure_bootstrap()
    return tmp_path / "test.db"


@pytest.fixture
def conn(database):
    connection = db.db_connect()
    yield connection
    connection.close()


@pytest.fixture
def org_id(conn) -> int:
    return db.default_org_id(conn)


@pytest.fixture
def admin_id(conn) -> int:
    return int(conn.execute("SELECT id FROM users WHERE email = ?", (config.ADMIN_EMAIL,)).fetchone()["id"])


@pytest.fixture
def make_user(conn, org_id, admin_id):
    """Create and commit an active member with the given role."""

    def _make(role: str, email: str = None, **extra) -> int:
        form = {
            "email": email or f"{role}{_make.counter}@example.org",
            "password": STRONG_PASSWORD,
            "first_name": role.title(),
            "last_name": f"User{_make.counter}",
            "role": role,
        }
        form.update(extra)
        _make.counter += 1
        user_id = org.create_user(conn, org_id, admin_id, form)["user_id"]
        conn.commit()
        return user_id

    _make.counter = 1
    return _make


class Result:
    def __init__(self, status: str, headers, body: bytes):
        self.status = status
        self.status_code = int(status.split()[0])
        self.headers = headers
        self.body = body
        self.text = body.decode("utf-8", errors="ignore")

    def header(self, name: str):
        for key, value in self.headers:
            if key.lower() == name.lower():
                return value
        return None

    def json(self):
        return json.loads(self.text)


class Client:
    """Minimal cookie-keeping WSGI client."""

    def __init__(self):
        self.cookies = {}
        self.csrf = ""

    def request(self, method, path, data=None, json_body=None, headers=None):
        captured = {}

        def start_response(status, response_headers, exc_info=None):
            captured["status"] = status
            captured["headers"] = response_headers

        path, _, query = path.partition("?")
        if json_body is not None:
            body = json.dumps(json_body).encode()
            content_type = "application/json"
        else:
            body = urlencode(data or {}, doseq=True).encode()
            content_type = "application/x-www-form-urlencoded"
        environ = {
            "REQUEST_METHOD": method,
            "PATH_INFO": path,
            "QUERY_STRING": query,
            "wsgi.input": io.BytesIO(body),
            "CONTENT_LENGTH": str(len(body)),
            "CONTENT_TYPE": content_type,
            "REMOTE_ADDR": "127.0.0.1",
            "HTTP_USER_AGENT": "pytest",
            "HTTP_HOST": "localhost",
            "HTTP_COOKIE": "; ".join(f"{k}={v}" for k, v in self.cookies.items()),
        }
        environ.update(headers or {})
        payload = b"".join(app(environ, start_response))
        result = Result(captured["status"], captured["headers"], payload)
        for name, value in result.headers:
            if name != "Set-Cookie":
                continue
            pair = value.split(";", 1)[0]
            key, _, cookie_value = pair.partition("=")
            if cookie_value:
                self.cookies[key] = cookie_value
            else:
                self.cookies.pop(key, None)
        return result

    def get(self, path, **kwargs):
        return self.request("GET", path, **kwargs)

    def post(self, path, data=None, csrf=True, **kwargs):
        data = dict(data or {})
        if csrf and self.csrf:
            data.setdefault("csrf_token", self.csrf)
        return self.request("POST", path, data=data, **kwargs)

    def login(self, email=None, password=None):
        result = self.request(
            "POST",
            "/api/auth/login",
            json_body={"email": email or config.ADMIN_EMAIL, "password": password or config.ADMIN_PASSWORD},
        )
        assert result.status_code == 200, result.text
        self.csrf = result.json()["csrf"]
        return result


@pytest.fixture
def client(database):
    return Client()


@pytest.fixture
def admin_client(client):
    client.login()
    return client


@pytest.fixture
def department(conn, org_id, admin_id):
    """A committed clinical department with two divisions."""
    dept = org.create_department(conn, org_id, admin_id, {"name": "Clinical Quality", "department_type": "clinical"})
    north = org.create_division(conn, org_id, admin_id, {"department_id": dept["department_id"], "name": "North"})
    south = org.create_division(conn, org_id, admin_id, {"department_id": dept["department_id"], "name": "South"})
    conn.commit()
    return {
        "id": dept["department_id"],
        "slug": dept["slug"],
        "north_id": north["division_id"],
        "south_id": south["division_id"],
    }
