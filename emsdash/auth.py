"""Passwords, login throttling, sessions and the request gates built on them."""

from __future__ import annotations

import base64
import datetime as dt
import hashlib
import hmac
import logging
import math
import re
import secrets
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from emsdash import config
from emsdash.audit import log_action
from emsdash.errors import ActionError, NotFoundError, PermissionDenied, ValidationError, api_forbidden
from emsdash.http import Request, Response, json_response, redirect, set_cookie
from emsdash.permissions import USER_ROLES, has_permission, parse_role
from emsdash.utils import iso, sign_value, snapshot_row, token_hash, utcnow, verify_signed_value

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 310_000
PASSWORD_REQUIREMENTS = (
    "Password must be at least 8 characters and include uppercase, lowercase, a number, and a special character."
)

RATE_LIMIT_WINDOW = dt.timedelta(minutes=15)
RATE_LIMIT_MAX_ATTEMPTS = 5
LOCKOUT_WINDOW = dt.timedelta(hours=1)
LOCKOUT_MAX_ATTEMPTS = 10
LOCKOUT_DURATION = dt.timedelta(minutes=30)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class LoginThrottled(ActionError):
    status = "429 Too Many Requests"

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


def hash_password(password: str, salt_b64: Optional[str] = None) -> Tuple[str, str]:
    salt = base64.b64decode(salt_b64) if salt_b64 else secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return base64.b64encode(digest).decode("utf-8"), base64.b64encode(salt).decode("utf-8")


def verify_password(password: str, expected_hash: str, salt_b64: str) -> bool:
    if not expected_hash or not salt_b64:
        return False
    computed, _ = hash_password(password, salt_b64)
    return hmac.compare_digest(computed, expected_hash)


def validate_password_strength(password: str) -> List[str]:
    errors: List[str] = []
    if len(password) < 8:
        errors.append("Must be at least 8 characters")
    if not re.search(r"[A-Z]", password):
        errors.append("Must include at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Must include at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Must include at least one number")
    if not re.search(r"[^A-Za-z0-9]", password):
        errors.append("Must include at least one special character")
    return errors


def require_strong_password(password: str, confirm: Optional[str] = None) -> None:
    errors = validate_password_strength(password)
    if errors:
        raise ValidationError(f"{PASSWORD_REQUIREMENTS} ({'; '.join(errors)})")
    if confirm is not None and password != confirm:
        raise ValidationError("Passwords do not match.")


def display_name(row: Optional[Mapping[str, Any]]) -> str:
    if not row:
        return ""
    name = f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip()
    return name or str(row.get("email") or "")


# Login throttling


def _parse_ts(value: object) -> dt.datetime:
    parsed = dt.datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def check_login_allowed(conn, identifier: str, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
    """Decide whether ``identifier`` may attempt a login right now.

    Ten failures inside an hour lock the account for 30 minutes, counted from
    the tenth most recent failure. Otherwise five failures inside 15 minutes
    rate-limit further attempts until the oldest of them ages out. A database
    error fails open so an outage never locks everyone out.
    """
    now = now or utcnow()
    try:
        lockout_start = iso(now - LOCKOUT_WINDOW)
        failures = conn.execute(
            """
            SELECT created_at FROM login_attempts
            WHERE identifier = ? AND success = 0 AND created_at >= ?
            ORDER BY created_at DESC
            """,
            (identifier, lockout_start),
        ).fetchall()
        if len(failures) >= LOCKOUT_MAX_ATTEMPTS:
            nth_failure = _parse_ts(failures[LOCKOUT_MAX_ATTEMPTS - 1]["created_at"])
            expires_at = nth_failure + LOCKOUT_DURATION
            if now < expires_at:
                retry_after = math.ceil((expires_at - now).total_seconds())
                return {"allowed": False, "reason": "account_locked", "retry_after": retry_after}

        window_start = now - RATE_LIMIT_WINDOW
        recent = [_parse_ts(row["created_at"]) for row in failures if _parse_ts(row["created_at"]) >= window_start]
        if len(recent) >= RATE_LIMIT_MAX_ATTEMPTS:
            oldest = min(recent)
            retry_after = math.ceil((oldest + RATE_LIMIT_WINDOW - now).total_seconds())
            return {"allowed": False, "reason": "rate_limited", "retry_after": max(1, retry_after)}
    except Exception:
        logger.exception("Login rate limit check failed for %s", identifier)
    return {"allowed": True}


def record_login_attempt(
    conn,
    identifier: str,
    success: bool,
    reason: Optional[str] = None,
    ip: str = "",
    user_agent: str = "",
) -> None:
    conn.execute(
        """
        INSERT INTO login_attempts (identifier, success, reason, ip_address, user_agent, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (identifier, 1 if success else 0, reason, ip, user_agent[:200], iso()),
    )


def authenticate(conn, email: str, password: str, ip: str = "", user_agent: str = "") -> Dict[str, Any]:
    identifier = str(email or "").strip().lower()
    gate = check_login_allowed(conn, identifier)
    if not gate["allowed"]:
        minutes = max(1, math.ceil(gate["retry_after"] / 60))
        if gate["reason"] == "account_locked":
            message = f"Account temporarily locked after repeated failed logins. Try again in {minutes} minutes."
        else:
            message = f"Too many login attempts. Try again in {minutes} minutes."
        raise LoginThrottled(message, gate["retry_after"])

    user = conn.execute("SELECT * FROM users WHERE email = ?", (identifier,)).fetchone()
    if not user or not verify_password(password or "", str(user["password_hash"] or ""), str(user["password_salt"] or "")):
        record_login_attempt(conn, identifier, False, "invalid_credentials", ip, user_agent)
        raise ValidationError("Invalid email or password.")
    if user["status"] == "pending":
        record_login_attempt(conn, identifier, False, "pending_approval", ip, user_agent)
        raise ValidationError("Your account is awaiting administrator approval.")
    if user["status"] == "disabled" or not user["is_active"]:
        record_login_attempt(conn, identifier, False, "disabled", ip, user_agent)
        raise ValidationError("This account has been disabled. Contact an administrator.")

    record_login_attempt(conn, identifier, True, None, ip, user_agent)
    conn.execute("UPDATE users SET last_login_at = ? WHERE id = ?", (iso(), user["id"]))
    return snapshot_row(user) or {}


# Sessions


def create_session(conn, user_id: int, ip: str, user_agent: str) -> Tuple[str, str]:
    raw_token = secrets.token_urlsafe(32)
    csrf = secrets.token_urlsafe(24)
    version_row = conn.execute("SELECT session_version FROM users WHERE id = ?", (user_id,)).fetchone()
    version = int(version_row["session_version"]) if version_row else 1
    expires = utcnow() + dt.timedelta(days=config.SESSION_DAYS)
    conn.execute(
        """
        INSERT INTO sessions (user_id, token_hash, csrf_token, session_version, expires_at, created_at, last_seen_at, ip_address, user_agent)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (user_id, token_hash(raw_token), csrf, version, expires.isoformat(), iso(), iso(), ip, user_agent[:200]),
    )
    return raw_token, csrf


def destroy_session(conn, raw_token: str) -> None:
    if raw_token:
        conn.execute("DELETE FROM sessions WHERE token_hash = ?", (token_hash(raw_token),))


def anonymous_context() -> Dict[str, Any]:
    return {"user": None, "memberships": [], "active_org": None, "org_id": None, "role": None, "csrf": "", "session_id": None}


def get_auth_context(conn, req: Request) -> Dict[str, Any]:
    """Resolve the signed-in user, their memberships and the active organization.

    A session is dropped when it has expired, the user is no longer active, or
    the user's ``session_version`` moved on after a password change or reset.
    """
    token = req.cookies.get("session_token")
    if not token:
        return anonymous_context()

    session = conn.execute(
        """
        SELECT s.id, s.csrf_token, s.expires_at, s.session_version AS token_version,
               u.id AS user_id, u.email, u.first_name, u.last_name, u.status, u.is_active,
               u.is_superuser, u.session_version
        FROM sessions s
        JOIN users u ON u.id = s.user_id
        WHERE s.token_hash = ?
        """,
        (token_hash(token),),
    ).fetchone()
    if not session:
        return anonymous_context()

    try:
        expires_at = _parse_ts(session["expires_at"])
    except ValueError:
        expires_at = utcnow() - dt.timedelta(days=1)

    stale = int(session["token_version"] or 0) != int(session["session_version"] or 0)
    if expires_at < utcnow() or not session["is_active"] or session["status"] != "active" or stale:
        conn.execute("DELETE FROM sessions WHERE id = ?", (session["id"],))
        conn.commit()
        return anonymous_context()

    conn.execute("UPDATE sessions SET last_seen_at = ? WHERE id = ?", (iso(), session["id"]))

    memberships = conn.execute(
        """
        SELECT m.organization_id, m.role, o.name, o.slug
        FROM memberships m
        JOIN organizations o ON o.id = m.organization_id
        WHERE m.user_id = ?
        ORDER BY m.created_at, o.name
        """,
        (session["user_id"],),
    ).fetchall()
    if not memberships:
        return anonymous_context()

    selected_org = req.query.get("org_id") or verify_signed_value(req.cookies.get("active_org", ""))
    active = None
    for m in memberships:
        if selected_org and str(m["organization_id"]) == str(selected_org):
            active = m
            break
    if not active:
        active = memberships[0]

    user = {
        "id": int(session["user_id"]),
        "email": session["email"],
        "first_name": session["first_name"],
        "last_name": session["last_name"],
        "name": display_name(snapshot_row(session)),
        "is_superuser": bool(session["is_superuser"]),
    }
    return {
        "user": user,
        "memberships": memberships,
        "active_org": active,
        "org_id": int(active["organization_id"]),
        "role": str(active["role"]),
        "csrf": session["csrf_token"],
        "session_id": int(session["id"]),
    }


def switch_organization(ctx: Dict[str, Any], org_id: Any) -> str:
    """Return the signed ``active_org`` cookie for one of the caller's organizations."""
    for m in ctx.get("memberships") or []:
        if str(m["organization_id"]) == str(org_id):
            return set_cookie("active_org", sign_value(str(m["organization_id"])), max_age=config.SESSION_DAYS * 86400)
    raise PermissionDenied("You are not a member of that organization.")


# Request gates


def require_auth(ctx: Dict[str, Any], req: Request) -> Optional[Response]:
    if ctx.get("user"):
        return None
    if req.is_api:
        return json_response({"ok": False, "error": "Authentication required"}, status="401 Unauthorized")
    return redirect("/login")


def require_permission(ctx: Dict[str, Any], permission: str, req: Request) -> Optional[Response]:
    if has_permission(ctx.get("role"), permission):
        return None
    if req.is_api:
        return api_forbidden()
    return Response("<h1>403 Forbidden</h1><p>You do not have access to this page.</p>", status="403 Forbidden")


def origin_matches_host(req: Request) -> bool:
    origin = req.environ.get("HTTP_ORIGIN", "")
    if not origin or origin == "null":
        return not origin
    host = req.environ.get("HTTP_HOST") or f"{req.environ.get('SERVER_NAME', '')}:{req.environ.get('SERVER_PORT', '')}"
    return urlsplit(origin).netloc.lower() == str(host).lower()


def validate_csrf(req: Request, ctx: Dict[str, Any]) -> bool:
    if req.method not in {"POST", "PUT", "PATCH", "DELETE"}:
        return True
    if not origin_matches_host(req):
        logger.warning("Rejected cross-origin %s %s from %s", req.method, req.path, req.environ.get("HTTP_ORIGIN"))
        return False
    csrf = req.form.get("csrf_token") or req.environ.get("HTTP_X_CSRF_TOKEN", "")
    expected = str(ctx.get("csrf") or "")
    return bool(csrf and expected and hmac.compare_digest(str(csrf), expected))


# Account lifecycle


def register_user(conn, org_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    """Create a pending account that an admin must approve before it can sign in."""
    email = str(form.get("email") or "").strip().lower()
    first_name = str(form.get("first_name") or "").strip()[:80]
    last_name = str(form.get("last_name") or "").strip()[:80]
    password = str(form.get("password") or "")
    if not EMAIL_RE.match(email):
        raise ValidationError("Enter a valid email address.")
    if not first_name or not last_name:
        raise ValidationError("First and last name are required.")
    require_strong_password(password, str(form.get("password_confirm", password)))
    role = parse_role(form.get("role"), default="fto")
    if role == "admin":
        role = "fto"
    if conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone():
        raise ValidationError("An account with that email already exists.")

    pw_hash, pw_salt = hash_password(password)
    cur = conn.execute(
        """
        INSERT INTO users (email, first_name, last_name, password_hash, password_salt, status, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, 'pending', 1, ?, ?)
        """,
        (email, first_name, last_name, pw_hash, pw_salt, iso(), iso()),
    )
    user_id = int(cur.lastrowid)
    conn.execute(
        "INSERT INTO memberships (user_id, organization_id, role, created_at) VALUES (?, ?, ?, ?)",
        (user_id, org_id, role, iso()),
    )
    log_action(conn, org_id, user_id, "REGISTER", "User", user_id, f"Registration requested for {email} as {role}")
    return {"user_id": user_id}


def _org_user(conn, org_id: int, user_id: int):
    row = conn.execute(
        """
        SELECT u.*, m.role FROM users u
        JOIN memberships m ON m.user_id = u.id AND m.organization_id = ?
        WHERE u.id = ?
        """,
        (org_id, user_id),
    ).fetchone()
    if not row:
        raise NotFoundError("User")
    return row


def approve_user(conn, org_id: int, actor_id: int, user_id: int, role: Optional[str] = None) -> Dict[str, Any]:
    user = _org_user(conn, org_id, user_id)
    if user["status"] != "pending":
        raise ValidationError("Only pending accounts can be approved.")
    conn.execute("UPDATE users SET status = 'active', is_active = 1, updated_at = ? WHERE id = ?", (iso(), user_id))
    if role and role in USER_ROLES:
        conn.execute(
            "UPDATE memberships SET role = ? WHERE user_id = ? AND organization_id = ?",
            (role, user_id, org_id),
        )
    log_action(conn, org_id, actor_id, "APPROVE", "User", user_id, f"Approved {user['email']}")
    return {"user_id": user_id}


def reject_user(conn, org_id: int, actor_id: int, user_id: int) -> Dict[str, Any]:
    user = _org_user(conn, org_id, user_id)
    if user["status"] != "pending":
        raise ValidationError("Only pending accounts can be rejected.")
    conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
    log_action(conn, org_id, actor_id, "REJECT", "User", user_id, f"Rejected registration for {user['email']}")
    return {"user_id": user_id}


def change_password(
    conn,
    user_id: int,
    current_password: str,
    new_password: str,
    confirm_password: str,
    keep_session_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Change the caller's password and sign out every other session."""
    user = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    if not user:
        raise NotFoundError("User")
    if not verify_password(current_password or "", str(user["password_hash"]), str(user["password_salt"])):
        raise ValidationError("Current password is incorrect.")
    require_strong_password(new_password, confirm_password)
    if verify_password(new_password, str(user["password_hash"]), str(user["password_salt"])):
        raise ValidationError("New password must be different from the current password.")

    pw_hash, pw_salt = hash_password(new_password)
    new_version = int(user["session_version"] or 1) + 1
    conn.execute(
        "UPDATE users SET password_hash = ?, password_salt = ?, session_version = ?, updated_at = ? WHERE id = ?",
        (pw_hash, pw_salt, new_version, iso(), user_id),
    )
    if keep_session_id:
        conn.execute("DELETE FROM sessions WHERE user_id = ? AND id != ?", (user_id, keep_session_id))
        conn.execute("UPDATE sessions SET session_version = ? WHERE id = ?", (new_version, keep_session_id))
    else:
        conn.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))
    membership = conn.execute("SELECT organization_id FROM memberships WHERE user_id = ? ORDER BY id LIMIT 1", (user_id,)).fetchone()
    log_action(
        conn,
        int(membership["organization_id"]) if membership else None,
        user_id,
        "PASSWORD_CHANGE",
        "User",
        user_id,
        "Password changed",
    )
    return {"user_id": user_id}


def admin_reset_password(conn, org_id: int, actor_id: int, user_id: int, new_password: str) -> Dict[str, Any]:
    """Set a new password for a member and invalidate all of their sessions."""
    user = _org_user(conn, org_id, user_id)
    require_strong_password(new_password)
    pw_hash, pw_salt = hash_password(new_password)
    conn.execute(
        """
        UPDATE users SET password_hash = ?, password_salt = ?, session_version = session_version + 1, updated_at = ?
        WHERE id = ?
        """,
        (pw_hash, pw_salt, iso(), user_id),
    )
    conn.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))
    log_action(conn, org_id, actor_id, "PASSWORD_RESET", "User", user_id, f"Password reset for {user['email']}")
    return {"user_id": user_id}
