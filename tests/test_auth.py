"""Tests for passwords, login throttling, accounts and the role matrix."""

import datetime as dt

import pytest

from emsdash import auth, config
from emsdash.auth import (
    LoginThrottled,
    authenticate,
    change_password,
    check_login_allowed,
    record_login_attempt,
    register_user,
    validate_password_strength,
)
from emsdash.errors import ActionError, ValidationError
from emsdash.permissions import has_permission, parse_role, permissions_for_role
from emsdash.utils import iso, utcnow

from conftest import STRONG_PASSWORD


class TestPasswordStrength:
    """Password policy."""

    def test_strong_password_passes(self):
        assert validate_password_strength("Abcdef1!") == []

    def test_each_rule_reported(self):
        errors = validate_password_strength("abc")
        assert len(errors) == 4
        assert "Must be at least 8 characters" in errors

    def test_hash_round_trip(self):
        digest, salt = auth.hash_password("Secret!123")
        assert auth.verify_password("Secret!123", digest, salt)
        assert not auth.verify_password("secret!123", digest, salt)


class TestPermissions:
    """Role matrix."""

    def test_admin_only_permissions(self):
        for permission in ("manage_users", "manage_metric_defs", "view_audit_log"):
            assert has_permission("admin", permission)
            assert not has_permission("manager", permission)

    def test_field_training_roles(self):
        assert has_permission("fto", "create_edit_own_dors")
        assert not has_permission("fto", "view_all_trainees")
        assert has_permission("supervisor", "view_all_trainees")
        assert has_permission("trainee", "access_field_training")
        assert not has_permission("trainee", "view_own_trainees")

    def test_dashboard_roles(self):
        assert has_permission("data_entry", "view_dashboard")
        assert has_permission("data_entry", "upload_batch_data")
        assert not has_permission("fto", "view_dashboard")

    def test_unknown_role_has_nothing(self):
        assert permissions_for_role("visitor") == []
        assert not has_permission(None, "view_dashboard")

    def test_parse_role(self):
        assert parse_role("MANAGER") == "manager"
        assert parse_role("root") == "data_entry"


class TestLoginThrottling:
    """Rate limiting and lockout."""

    def _fail(self, conn, identifier, count, when=None):
        for _ in range(count):
            conn.execute(
                "INSERT INTO login_attempts (identifier, success, reason, ip_address, user_agent, created_at) VALUES (?, 0, 'bad', '', '', ?)",
                (identifier, iso(when or utcnow())),
            )

    def test_allowed_without_failures(self, conn):
        assert check_login_allowed(conn, "nobody@example.org") == {"allowed": True}

    def test_rate_limited_after_five_failures(self, conn):
        self._fail(conn, "x@example.org", 5)
        gate = check_login_allowed(conn, "x@example.org")
        assert gate["allowed"] is False
        assert gate["reason"] == "rate_limited"
        assert 1 <= gate["retry_after"] <= 15 * 60

    def test_old_failures_do_not_count(self, conn):
        self._fail(conn, "x@example.org", 5, utcnow() - dt.timedelta(minutes=20))
        assert check_login_allowed(conn, "x@example.org")["allowed"] is True

    def test_lockout_after_ten_failures(self, conn):
        self._fail(conn, "x@example.org", 10, utcnow() - dt.timedelta(minutes=16))
        gate = check_login_allowed(conn, "x@example.org")
        assert gate["reason"] == "account_locked"

    def test_authenticate_raises_throttled(self, conn):
        self._fail(conn, config.ADMIN_EMAIL, 5)
        with pytest.raises(LoginThrottled) as excinfo:
            authenticate(conn, config.ADMIN_EMAIL, config.ADMIN_PASSWORD)
        assert excinfo.value.status.startswith("429")

    def test_bad_password_recorded(self, conn):
        with pytest.raises(ActionError):
            authenticate(conn, config.ADMIN_EMAIL, "wrong")
        count = conn.execute("SELECT COUNT(*) FROM login_attempts WHERE success = 0").fetchone()[0]
        assert count == 1

    def test_success_returns_user(self, conn):
        user = authenticate(conn, config.ADMIN_EMAIL.upper(), config.ADMIN_PASSWORD)
        assert user["email"] == config.ADMIN_EMAIL

    def test_record_login_attempt(self, conn):
        record_login_attempt(conn, "a@example.org", True, ip="10.0.0.1")
        row = conn.execute("SELECT success, ip_address FROM login_attempts").fetchone()
        assert (row["success"], row["ip_address"]) == (1, "10.0.0.1")


class TestAccounts:
    """Registration, approval and password changes."""

    def test_registration_is_pending(self, conn, org_id):
        form = {"email": "new@example.org", "first_name": "New", "last_name": "Medic", "password": STRONG_PASSWORD}
        user_id = register_user(conn, org_id, form)["user_id"]
        row = conn.execute("SELECT status FROM users WHERE id = ?", (user_id,)).fetchone()
        assert row["status"] == "pending"
        with pytest.raises(ActionError):
            authenticate(conn, "new@example.org", STRONG_PASSWORD)

    def test_registration_cannot_request_admin(self, conn, org_id):
        form = {
            "email": "sneaky@example.org",
            "first_name": "S",
            "last_name": "N",
            "password": STRONG_PASSWORD,
            "role": "admin",
        }
        user_id = register_user(conn, org_id, form)["user_id"]
        role = conn.execute("SELECT role FROM memberships WHERE user_id = ?", (user_id,)).fetchone()["role"]
        assert role == "fto"

    def test_approve_activates(self, conn, org_id, admin_id):
        form = {"email": "p@example.org", "first_name": "P", "last_name": "Q", "password": STRONG_PASSWORD}
        user_id = register_user(conn, org_id, form)["user_id"]
        auth.approve_user(conn, org_id, admin_id, user_id, role="supervisor")
        assert authenticate(conn, "p@example.org", STRONG_PASSWORD)["id"] == user_id
        role = conn.execute("SELECT role FROM memberships WHERE user_id = ?", (user_id,)).fetchone()["role"]
        assert role == "supervisor"

    def test_reject_deletes(self, conn, org_id, admin_id):
        form = {"email": "r@example.org", "first_name": "R", "last_name": "S", "password": STRONG_PASSWORD}
        user_id = register_user(conn, org_id, form)["user_id"]
        auth.reject_user(conn, org_id, admin_id, user_id)
        assert conn.execute("SELECT id FROM users WHERE id = ?", (user_id,)).fetchone() is None

    def test_weak_password_rejected(self, conn, org_id):
        form = {"email": "w@example.org", "first_name": "W", "last_name": "X", "password": "password"}
        with pytest.raises(ValidationError, match="Password must be"):
            register_user(conn, org_id, form)

    def test_change_password_bumps_session_version(self, conn, admin_id):
        before = conn.execute("SELECT session_version FROM users WHERE id = ?", (admin_id,)).fetchone()[0]
        change_password(conn, admin_id, config.ADMIN_PASSWORD, "Another!2027", "Another!2027")
        after = conn.execute("SELECT session_version FROM users WHERE id = ?", (admin_id,)).fetchone()[0]
        assert after == before + 1
        assert authenticate(conn, config.ADMIN_EMAIL, "Another!2027")["id"] == admin_id

    def test_change_password_requires_current(self, conn, admin_id):
        with pytest.raises(ValidationError, match="Current password is incorrect"):
            change_password(conn, admin_id, "nope", "Another!2027", "Another!2027")
