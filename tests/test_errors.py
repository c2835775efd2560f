"""Tests for action results and JSON error responses."""

import json
import sqlite3

import pytest

from emsdash.errors import (
    DUPLICATE_ERROR,
    GENERIC_ERROR,
    NotFoundError,
    PermissionDenied,
    ValidationError,
    api_bad_request,
    api_forbidden,
    api_not_found,
    api_server_error,
    error_status,
    run_action,
)
from emsdash.http import redirect


def _raise(exc):
    raise exc


class TestRunAction:
    """Service outcomes as ``{"ok": ...}`` results."""

    def test_success_merges_result(self):
        assert run_action("test", lambda: {"id": 4}) == {"ok": True, "id": 4}

    def test_none_result(self):
        assert run_action("test", lambda: None) == {"ok": True}

    def test_arguments_are_forwarded(self):
        outcome = run_action("test", lambda a, b=0: {"total": a + b}, 2, b=3)
        assert outcome["total"] == 5

    def test_validation_error(self):
        outcome = run_action("test", _raise, ValidationError("Name is required."))
        assert outcome == {"ok": False, "error": "Name is required.", "status": "400 Bad Request"}

    def test_not_found(self):
        outcome = run_action("test", _raise, NotFoundError("Metric"))
        assert outcome["error"] == "Metric not found"
        assert outcome["status"] == "404 Not Found"

    def test_unique_violation_is_conflict(self):
        exc = sqlite3.IntegrityError("UNIQUE constraint failed: departments.slug")
        outcome = run_action("test", _raise, exc)
        assert outcome["error"] == DUPLICATE_ERROR
        assert outcome["status"] == "409 Conflict"

    def test_unexpected_error_hides_details(self, caplog):
        outcome = run_action("POST /api/things", _raise, RuntimeError("no such table: secrets"))
        assert outcome == {"ok": False, "error": GENERIC_ERROR, "status": "500 Internal Server Error"}
        assert "POST /api/things failed" in caplog.text

    def test_response_passes_through(self):
        response = redirect("/dashboard")
        assert run_action("test", lambda: response) is response


class TestApiHelpers:
    @pytest.mark.parametrize(
        "response, status, error",
        [
            (api_bad_request("Bad input"), 400, "Bad input"),
            (api_forbidden(), 403, "Insufficient permissions"),
            (api_not_found("Campaign"), 404, "Campaign not found"),
            (api_server_error(), 500, GENERIC_ERROR),
        ],
    )
    def test_json_bodies(self, response, status, error):
        assert response.status_code == status
        assert response.content_type.startswith("application/json")
        assert json.loads(response.body) == {"ok": False, "error": error}

    def test_error_status(self):
        assert error_status(PermissionDenied()) == "403 Forbidden"
        assert error_status(ValueError("x")) == "500 Internal Server Error"
