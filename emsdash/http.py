"""Request/response primitives shared by the WSGI router and the service gates."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, quote, unquote

from werkzeug.datastructures import FileStorage, MultiDict
from werkzeug.formparser import parse_form_data

from emsdash import config

logger = logging.getLogger(__name__)

BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


class Request:
    """Thin wrapper over the WSGI environ with lazy body parsing.

    Form and multipart bodies are parsed by werkzeug. JSON bodies are exposed
    both as ``json`` and through ``form`` so handlers read one mapping.
    """

    def __init__(self, environ: dict):
        self.environ = environ
        self.method = environ.get("REQUEST_METHOD", "GET").upper()
        self.path = environ.get("PATH_INFO", "/") or "/"
        self.query = {k: v[0] for k, v in parse_qs(environ.get("QUERY_STRING", ""), keep_blank_values=True).items()}
        self.cookies = self._parse_cookies(environ.get("HTTP_COOKIE", ""))
        self._form: Optional[Dict[str, Any]] = None
        self._form_multi: Optional[MultiDict] = None
        self._files: Optional[Dict[str, FileStorage]] = None
        self._json: Optional[Dict[str, Any]] = None
        self._malformed_json = False

    def _parse_cookies(self, raw_cookie: str) -> Dict[str, str]:
        cookies: Dict[str, str] = {}
        if not raw_cookie:
            return cookies
        for token in raw_cookie.split(";"):
            if "=" not in token:
                continue
            key, value = token.split("=", 1)
            cookies[key.strip()] = unquote(value.strip())
        return cookies

    @property
    def form(self) -> Dict[str, Any]:
        if self._form is None:
            self._parse_body()
        return self._form or {}

    @property
    def files(self) -> Dict[str, FileStorage]:
        if self._files is None:
            self._parse_body()
        return self._files or {}

    @property
    def json(self) -> Optional[Dict[str, Any]]:
        if self._form is None:
            self._parse_body()
        return self._json

    @property
    def malformed_json(self) -> bool:
        """True when a JSON body was sent but is not a JSON object."""
        if self._form is None:
            self._parse_body()
        return self._malformed_json

    def form_list(self, key: str) -> List[Any]:
        if self._form is None:
            self._parse_body()
        if self._json is not None:
            value = self._json.get(key)
            if value is None:
                return []
            return list(value) if isinstance(value, (list, tuple)) else [value]
        if self._form_multi is not None:
            return self._form_multi.getlist(key)
        return []

    @property
    def is_api(self) -> bool:
        return self.path.startswith("/api/")

    @property
    def client_ip(self) -> str:
        forwarded = self.environ.get("HTTP_X_FORWARDED_FOR", "")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return self.environ.get("REMOTE_ADDR", "") or ""

    @property
    def user_agent(self) -> str:
        return (self.environ.get("HTTP_USER_AGENT", "") or "")[:200]

    def _parse_body(self) -> None:
        self._form = {}
        self._files = {}
        if self.method not in BODY_METHODS:
            return
        content_type = self.environ.get("CONTENT_TYPE", "") or ""
        if "application/json" in content_type:
            try:
                length = int(self.environ.get("CONTENT_LENGTH") or 0)
            except ValueError:
                length = 0
            raw = self.environ["wsgi.input"].read(length) if length else b""
            try:
                payload = json.loads(raw.decode("utf-8")) if raw else {}
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.info("Malformed JSON body on %s", self.path)
                payload = None
            self._malformed_json = not isinstance(payload, dict)
            self._json = payload if isinstance(payload, dict) else {}
            self._form = dict(self._json)
            return
        _stream, form, files = parse_form_data(self.environ)
        self._form_multi = form
        self._form = {key: form.get(key) for key in form.keys()}
        self._files = {key: files.get(key) for key in files.keys()}


class Response:
    """Simple response object that centralizes security headers."""

    def __init__(
        self,
        body: Any = "",
        status: str = "200 OK",
        content_type: str = "text/html; charset=utf-8",
        headers: Optional[List[Tuple[str, str]]] = None,
    ):
        self.body = body.encode("utf-8") if isinstance(body, str) else body
        self.status = status
        self.content_type = content_type
        self.headers = headers or []

    @property
    def status_code(self) -> int:
        return int(self.status.split()[0])

    def wsgi(self, start_response):
        sec_headers = [
            ("Content-Type", self.content_type),
            ("X-Frame-Options", "DENY"),
            ("X-Content-Type-Options", "nosniff"),
            ("Referrer-Policy", "strict-origin-when-cross-origin"),
            ("Cache-Control", "no-store"),
            ("Permissions-Policy", "camera=(), microphone=(), geolocation=()"),
            (
                "Content-Security-Policy",
                "default-src 'self'; style-src 'self'; script-src 'self'; img-src 'self' data:; base-uri 'self'; form-action 'self'",
            ),
        ]
        start_response(self.status, sec_headers + self.headers)
        return [self.body]


def redirect(location: str, cookies: Optional[List[str]] = None) -> Response:
    headers = [("Location", location)]
    for cookie in cookies or []:
        headers.append(("Set-Cookie", cookie))
    return Response("", status="302 Found", headers=headers)


def json_response(payload: object, status: str = "200 OK", cookies: Optional[List[str]] = None) -> Response:
    headers = [("Set-Cookie", cookie) for cookie in cookies or []]
    return Response(
        json.dumps(payload, default=str),
        status=status,
        content_type="application/json; charset=utf-8",
        headers=headers,
    )


def csv_response(content: str, filename: str) -> Response:
    headers = [("Content-Disposition", f"attachment; filename={filename}")]
    return Response(content, headers=headers, content_type="text/csv; charset=utf-8")


def set_cookie(name: str, value: str, max_age: Optional[int] = None, path: str = "/") -> str:
    parts = [f"{name}={quote(value)}", f"Path={path}", "HttpOnly", "SameSite=Lax"]
    if config.COOKIE_SECURE:
        parts.append("Secure")
    if max_age is not None:
        parts.append(f"Max-Age={max_age}")
    return "; ".join(parts)


def clear_cookie(name: str, path: str = "/") -> str:
    parts = [f"{name}=", "Max-Age=0", f"Path={path}", "HttpOnly", "SameSite=Lax"]
    if config.COOKIE_SECURE:
        parts.append("Secure")
    return "; ".join(parts)
