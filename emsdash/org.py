"""Organization structure admin: departments, divisions, regions, categories and users."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from emsdash import validation as v
from emsdash.audit import compute_changes, log_action
from emsdash.auth import EMAIL_RE, display_name, hash_password, require_strong_password
from emsdash.db import get_scoped_row
from emsdash.errors import NotFoundError, ValidationError
from emsdash.pagination import paginated_query
from emsdash.permissions import USER_ROLES
from emsdash.utils import iso, rows_to_dicts, slugify, snapshot_row, to_int

logger = logging.getLogger(__name__)

DEPARTMENT_TYPES = ("quality", "clinical", "education", "operations")
TRAINEE_STATUSES = ("active", "completed", "separated", "remediation")


def _slug_for(form: Mapping[str, Any], name: str) -> str:
    slug = slugify(form.get("slug") or name)
    if not slug:
        raise ValidationError("Name must contain letters or numbers.")
    return slug


def _assert_slug_free(conn, table: str, org_id: int, slug: str, label: str, exclude_id: Optional[int] = None) -> None:
    row = conn.execute(f"SELECT id FROM {table} WHERE organization_id = ? AND slug = ?", (org_id, slug)).fetchone()
    if row and (exclude_id is None or int(row["id"]) != int(exclude_id)):
        raise ValidationError(f'A {label} with the slug "{slug}" already exists.')


# Departments


def list_departments(conn, org_id: int, active_only: bool = False) -> List[Dict[str, Any]]:
    sql = """
        SELECT d.*,
               (SELECT COUNT(*) FROM divisions dv WHERE dv.department_id = d.id) AS division_count,
               (SELECT COUNT(*) FROM metric_definitions m WHERE m.department_id = d.id AND m.is_active = 1) AS metric_count
        FROM departments d
        WHERE d.organization_id = ?
    """
    if active_only:
        sql += " AND d.is_active = 1"
    sql += " ORDER BY d.sort_order, d.name"
    return rows_to_dicts(conn.execute(sql, (org_id,)).fetchall())


def get_department(conn, org_id: int, department_id: Any) -> Dict[str, Any]:
    return snapshot_row(get_scoped_row(conn, "departments", org_id, department_id, "Department"))


def get_department_by_slug(conn, org_id: int, slug: str) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM departments WHERE organization_id = ? AND slug = ?", (org_id, slug)).fetchone()
    if not row:
        raise NotFoundError("Department")
    return snapshot_row(row)


def _department_fields(form: Mapping[str, Any]) -> Dict[str, Any]:
    name = v.text(form, "name", "Name", max_len=100, required=True)
    return {
        "name": name,
        "slug": _slug_for(form, name),
        "department_type": v.choice(form, "department_type", "Type", DEPARTMENT_TYPES, default="quality"),
        "description": v.text(form, "description", "Description", max_len=500),
        "sort_order": v.integer(form, "sort_order", "Sort order", default=0, minimum=0),
    }


def create_department(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _department_fields(form)
    _assert_slug_free(conn, "departments", org_id, fields["slug"], "department")
    cur = conn.execute(
        """
        INSERT INTO departments (organization_id, name, slug, department_type, description, sort_order, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
        """,
        (org_id, fields["name"], fields["slug"], fields["department_type"], fields["description"], fields["sort_order"], iso(), iso()),
    )
    department_id = int(cur.lastrowid)
    log_action(conn, org_id, actor_id, "CREATE", "Department", department_id, f'Created department "{fields["name"]}" ({fields["department_type"]})')
    return {"department_id": department_id, "slug": fields["slug"]}


def update_department(conn, org_id: int, actor_id: int, department_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = get_department(conn, org_id, department_id)
    fields = _department_fields(form)
    _assert_slug_free(conn, "departments", org_id, fields["slug"], "department", exclude_id=before["id"])
    conn.execute(
        """
        UPDATE departments SET name = ?, slug = ?, department_type = ?, description = ?, sort_order = ?, updated_at = ?
        WHERE id = ? AND organization_id = ?
        """,
        (fields["name"], fields["slug"], fields["department_type"], fields["description"], fields["sort_order"], iso(), before["id"], org_id),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "Department", before["id"],
        f'Updated department "{fields["name"]}"', compute_changes(before, fields, fields.keys()),
    )
    return {"department_id": before["id"], "slug": fields["slug"]}


def set_department_active(conn, org_id: int, actor_id: int, department_id: Any, active: bool) -> Dict[str, Any]:
    dept = get_department(conn, org_id, department_id)
    conn.execute("UPDATE departments SET is_active = ?, updated_at = ? WHERE id = ?", (1 if active else 0, iso(), dept["id"]))
    verb = "Activated" if active else "Deactivated"
    log_action(conn, org_id, actor_id, "UPDATE", "Department", dept["id"], f'{verb} department "{dept["name"]}"')
    return {"department_id": dept["id"]}


# Divisions and regions


def list_divisions(conn, org_id: int, department_id: Any = None, active_only: bool = False) -> List[Dict[str, Any]]:
    clauses = ["dv.organization_id = ?"]
    params: List[Any] = [org_id]
    if department_id:
        clauses.append("dv.department_id = ?")
        params.append(department_id)
    if active_only:
        clauses.append("dv.is_active = 1")
    rows = conn.execute(
        f"""
        SELECT dv.*, d.name AS department_name,
               (SELECT COUNT(*) FROM regions r WHERE r.division_id = dv.id) AS region_count
        FROM divisions dv
        JOIN departments d ON d.id = dv.department_id
        WHERE {' AND '.join(clauses)}
        ORDER BY d.sort_order, dv.sort_order, dv.name
        """,
        tuple(params),
    ).fetchall()
    return rows_to_dicts(rows)


def get_division(conn, org_id: int, division_id: Any) -> Dict[str, Any]:
    return snapshot_row(get_scoped_row(conn, "divisions", org_id, division_id, "Division"))


def _division_fields(conn, org_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    department_id = to_int(form.get("department_id"))
    if not department_id:
        raise ValidationError("Department is required.")
    get_department(conn, org_id, department_id)
    name = v.text(form, "name", "Division name", max_len=100, required=True)
    return {
        "department_id": department_id,
        "name": name,
        "slug": _slug_for(form, name),
        "sort_order": v.integer(form, "sort_order", "Sort order", default=0, minimum=0),
    }


def create_division(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _division_fields(conn, org_id, form)
    _assert_slug_free(conn, "divisions", org_id, fields["slug"], "division")
    cur = conn.execute(
        """
        INSERT INTO divisions (organization_id, department_id, name, slug, sort_order, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, 1, ?, ?)
        """,
        (org_id, fields["department_id"], fields["name"], fields["slug"], fields["sort_order"], iso(), iso()),
    )
    division_id = int(cur.lastrowid)
    log_action(conn, org_id, actor_id, "CREATE", "Division", division_id, f'Created division "{fields["name"]}"')
    return {"division_id": division_id, "slug": fields["slug"]}


def update_division(conn, org_id: int, actor_id: int, division_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = get_division(conn, org_id, division_id)
    fields = _division_fields(conn, org_id, form)
    _assert_slug_free(conn, "divisions", org_id, fields["slug"], "division", exclude_id=before["id"])
    conn.execute(
        "UPDATE divisions SET department_id = ?, name = ?, slug = ?, sort_order = ?, updated_at = ? WHERE id = ?",
        (fields["department_id"], fields["name"], fields["slug"], fields["sort_order"], iso(), before["id"]),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "Division", before["id"],
        f'Updated division "{fields["name"]}"', compute_changes(before, fields, fields.keys()),
    )
    return {"division_id": before["id"]}


def set_division_active(conn, org_id: int, actor_id: int, division_id: Any, active: bool) -> Dict[str, Any]:
    division = get_division(conn, org_id, division_id)
    conn.execute("UPDATE divisions SET is_active = ?, updated_at = ? WHERE id = ?", (1 if active else 0, iso(), division["id"]))
    verb = "Activated" if active else "Deactivated"
    log_action(conn, org_id, actor_id, "UPDATE", "Division", division["id"], f'{verb} division "{division["name"]}"')
    return {"division_id": division["id"]}


def list_regions(conn, org_id: int, division_id: Any = None, active_only: bool = False) -> List[Dict[str, Any]]:
    clauses = ["r.organization_id = ?"]
    params: List[Any] = [org_id]
    if division_id:
        clauses.append("r.division_id = ?")
        params.append(division_id)
    if active_only:
        clauses.append("r.is_active = 1")
    rows = conn.execute(
        f"""
        SELECT r.*, dv.name AS division_name
        FROM regions r
        JOIN divisions dv ON dv.id = r.division_id
        WHERE {' AND '.join(clauses)}
        ORDER BY dv.sort_order, dv.name, r.name
        """,
        tuple(params),
    ).fetchall()
    return rows_to_dicts(rows)


def get_region(conn, org_id: int, region_id: Any) -> Dict[str, Any]:
    return snapshot_row(get_scoped_row(conn, "regions", org_id, region_id, "Region"))


def _region_fields(conn, org_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    division_id = to_int(form.get("division_id"))
    if not division_id:
        raise ValidationError("Division is required.")
    get_division(conn, org_id, division_id)
    return {
        "division_id": division_id,
        "name": v.text(form, "name", "Region name", max_len=100, required=True),
        "role": v.text(form, "role", "Role", max_len=100),
    }


def create_region(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _region_fields(conn, org_id, form)
    cur = conn.execute(
        """
        INSERT INTO regions (organization_id, division_id, name, role, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, 1, ?, ?)
        """,
        (org_id, fields["division_id"], fields["name"], fields["role"], iso(), iso()),
    )
    region_id = int(cur.lastrowid)
    log_action(conn, org_id, actor_id, "CREATE", "Region", region_id, f'Created region "{fields["name"]}"')
    return {"region_id": region_id}


def update_region(conn, org_id: int, actor_id: int, region_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = get_region(conn, org_id, region_id)
    fields = _region_fields(conn, org_id, form)
    conn.execute(
        "UPDATE regions SET division_id = ?, name = ?, role = ?, updated_at = ? WHERE id = ?",
        (fields["division_id"], fields["name"], fields["role"], iso(), before["id"]),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "Region", before["id"],
        f'Updated region "{fields["name"]}"', compute_changes(before, fields, fields.keys()),
    )
    return {"region_id": before["id"]}


def set_region_active(conn, org_id: int, actor_id: int, region_id: Any, active: bool) -> Dict[str, Any]:
    region = get_region(conn, org_id, region_id)
    conn.execute("UPDATE regions SET is_active = ?, updated_at = ? WHERE id = ?", (1 if active else 0, iso(), region["id"]))
    verb = "Activated" if active else "Deactivated"
    log_action(conn, org_id, actor_id, "UPDATE", "Region", region["id"], f'{verb} region "{region["name"]}"')
    return {"region_id": region["id"]}


# Categories


def list_categories(conn, org_id: int) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM categories WHERE organization_id = ? ORDER BY sort_order, name",
        (org_id,),
    ).fetchall()
    return rows_to_dicts(rows)


def _category_fields(form: Mapping[str, Any]) -> Dict[str, Any]:
    name = v.text(form, "name", "Name", max_len=100, required=True)
    color = str(form.get("color") or "#4b5563").strip()
    if not (len(color) == 7 and color.startswith("#")):
        raise ValidationError("Color must be a hex value like #1d4ed8.")
    return {
        "name": name,
        "slug": _slug_for(form, name),
        "color": color,
        "sort_order": v.integer(form, "sort_order", "Sort order", default=0, minimum=0),
    }


def create_category(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _category_fields(form)
    _assert_slug_free(conn, "categories", org_id, fields["slug"], "category")
    cur = conn.execute(
        "INSERT INTO categories (organization_id, name, slug, color, sort_order, is_active, created_at) VALUES (?, ?, ?, ?, ?, 1, ?)",
        (org_id, fields["name"], fields["slug"], fields["color"], fields["sort_order"], iso()),
    )
    category_id = int(cur.lastrowid)
    log_action(conn, org_id, actor_id, "CREATE", "Category", category_id, f'Created category "{fields["name"]}"')
    return {"category_id": category_id}


def update_category(conn, org_id: int, actor_id: int, category_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = snapshot_row(get_scoped_row(conn, "categories", org_id, category_id, "Category"))
    fields = _category_fields(form)
    _assert_slug_free(conn, "categories", org_id, fields["slug"], "category", exclude_id=before["id"])
    conn.execute(
        "UPDATE categories SET name = ?, slug = ?, color = ?, sort_order = ? WHERE id = ?",
        (fields["name"], fields["slug"], fields["color"], fields["sort_order"], before["id"]),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "Category", before["id"],
        f'Updated category "{fields["name"]}"', compute_changes(before, fields, fields.keys()),
    )
    return {"category_id": before["id"]}


def delete_category(conn, org_id: int, actor_id: int, category_id: Any) -> Dict[str, Any]:
    category = get_scoped_row(conn, "categories", org_id, category_id, "Category")
    conn.execute("DELETE FROM categories WHERE id = ?", (category["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "Category", category["id"], f'Deleted category "{category["name"]}"')
    return {"category_id": int(category["id"])}


# Users


def list_users(conn, org_id: int, filters: Mapping[str, Any], page: int, page_size: int) -> Dict[str, Any]:
    clauses = ["m.organization_id = ?"]
    params: List[Any] = [org_id]
    role = str(filters.get("role") or "").strip()
    if role in USER_ROLES:
        clauses.append("m.role = ?")
        params.append(role)
    status = str(filters.get("status") or "").strip()
    if status in ("pending", "active", "disabled"):
        clauses.append("u.status = ?")
        params.append(status)
    search = str(filters.get("q") or "").strip().lower()
    if search:
        clauses.append("(LOWER(u.email) LIKE ? OR LOWER(u.first_name || ' ' || u.last_name) LIKE ?)")
        params.extend([f"%{search}%", f"%{search}%"])
    base_sql = f"""
        SELECT u.id, u.email, u.first_name, u.last_name, u.status, u.is_active, u.employee_id,
               u.division_id, u.trainee_status, u.last_login_at, u.created_at, m.role
        FROM users u
        JOIN memberships m ON m.user_id = u.id
        WHERE {' AND '.join(clauses)}
    """
    result = paginated_query(conn, base_sql, params, page, page_size, order_by="u.last_name, u.first_name, u.id")
    items = rows_to_dicts(result["items"])
    for item in items:
        item["name"] = display_name(item)
    return {"items": items, "pagination": result["pagination"]}


def get_member(conn, org_id: int, user_id: Any) -> Dict[str, Any]:
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
    member = snapshot_row(row)
    member.pop("password_hash", None)
    member.pop("password_salt", None)
    member["name"] = display_name(member)
    return member


def _profile_fields(conn, org_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    division_id = to_int(form.get("division_id"))
    if division_id:
        get_division(conn, org_id, division_id)
    trainee_status = str(form.get("trainee_status") or "").strip() or None
    if trainee_status and trainee_status not in TRAINEE_STATUSES:
        raise ValidationError(f"Trainee status must be one of: {', '.join(TRAINEE_STATUSES)}.")
    return {
        "first_name": v.text(form, "first_name", "First name", max_len=80, required=True),
        "last_name": v.text(form, "last_name", "Last name", max_len=80, required=True),
        "employee_id": v.text(form, "employee_id", "Employee ID", max_len=40),
        "badge_number": v.text(form, "badge_number", "Badge number", max_len=40),
        "phone": v.text(form, "phone", "Phone", max_len=40),
        "division_id": division_id,
        "trainee_status": trainee_status,
        "hire_date": v.date(form, "hire_date", "Hire date"),
        "start_date": v.date(form, "start_date", "Start date"),
        "notes": v.text(form, "notes", "Notes", max_len=2000),
    }


def create_user(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    """Admin-created accounts are active immediately with the chosen role."""
    email = str(form.get("email") or "").strip().lower()
    if not EMAIL_RE.match(email):
        raise ValidationError("Enter a valid email address.")
    role = v.choice(form, "role", "Role", USER_ROLES, default="data_entry")
    profile = _profile_fields(conn, org_id, form)
    password = str(form.get("password") or "")
    require_strong_password(password)
    if role == "trainee" and not profile["trainee_status"]:
        profile["trainee_status"] = "active"

    existing = conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
    if existing:
        raise ValidationError("An account with that email already exists.")

    pw_hash, pw_salt = hash_password(password)
    cur = conn.execute(
        """
        INSERT INTO users (email, first_name, last_name, password_hash, password_salt, status, is_active,
                           employee_id, badge_number, phone, division_id, trainee_status, hire_date, start_date, notes,
                           created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, 'active', 1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            email, profile["first_name"], profile["last_name"], pw_hash, pw_salt,
            profile["employee_id"], profile["badge_number"], profile["phone"], profile["division_id"],
            profile["trainee_status"], profile["hire_date"], profile["start_date"], profile["notes"],
            iso(), iso(),
        ),
    )
    user_id = int(cur.lastrowid)
    conn.execute(
        "INSERT INTO memberships (user_id, organization_id, role, created_at) VALUES (?, ?, ?, ?)",
        (user_id, org_id, role, iso()),
    )
    log_action(conn, org_id, actor_id, "CREATE", "User", user_id, f"Created user {email} as {role}")
    return {"user_id": user_id}


def update_user(conn, org_id: int, actor_id: int, user_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = get_member(conn, org_id, user_id)
    role = v.choice(form, "role", "Role", USER_ROLES, default=before["role"])
    profile = _profile_fields(conn, org_id, form)
    if int(before["id"]) == int(actor_id) and before["role"] == "admin" and role != "admin":
        raise ValidationError("You cannot remove your own admin role.")
    conn.execute(
        """
        UPDATE users SET first_name = ?, last_name = ?, employee_id = ?, badge_number = ?, phone = ?, division_id = ?,
                         trainee_status = ?, hire_date = ?, start_date = ?, notes = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            profile["first_name"], profile["last_name"], profile["employee_id"], profile["badge_number"],
            profile["phone"], profile["division_id"], profile["trainee_status"], profile["hire_date"],
            profile["start_date"], profile["notes"], iso(), before["id"],
        ),
    )
    conn.execute("UPDATE memberships SET role = ? WHERE user_id = ? AND organization_id = ?", (role, before["id"], org_id))
    after = dict(profile, role=role)
    log_action(
        conn, org_id, actor_id, "UPDATE", "User", before["id"],
        f"Updated user {before['email']}", compute_changes(before, after, after.keys()),
    )
    return {"user_id": before["id"]}


def set_user_active(conn, org_id: int, actor_id: int, user_id: Any, active: bool) -> Dict[str, Any]:
    """Disable or re-enable an account. Disabling drops every session at once."""
    member = get_member(conn, org_id, user_id)
    if int(member["id"]) == int(actor_id) and not active:
        raise ValidationError("You cannot disable your own account.")
    if member["status"] == "pending":
        raise ValidationError("Approve or reject pending accounts instead.")
    status = "active" if active else "disabled"
    conn.execute(
        "UPDATE users SET status = ?, is_active = ?, session_version = session_version + 1, updated_at = ? WHERE id = ?",
        (status, 1 if active else 0, iso(), member["id"]),
    )
    if not active:
        conn.execute("DELETE FROM sessions WHERE user_id = ?", (member["id"],))
    verb = "Enabled" if active else "Disabled"
    log_action(conn, org_id, actor_id, "UPDATE", "User", member["id"], f"{verb} user {member['email']}")
    return {"user_id": member["id"]}


def pending_users(conn, org_id: int) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT u.id, u.email, u.first_name, u.last_name, u.created_at, m.role
        FROM users u JOIN memberships m ON m.user_id = u.id
        WHERE m.organization_id = ? AND u.status = 'pending'
        ORDER BY u.created_at
        """,
        (org_id,),
    ).fetchall()
    return rows_to_dicts(rows)
