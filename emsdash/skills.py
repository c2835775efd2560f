"""Skills checklist: categories, skills, ordered steps and per-trainee sign-offs."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from emsdash import validation as v
from emsdash.audit import compute_changes, log_action
from emsdash.db import get_scoped_row
from emsdash.errors import NotFoundError, ValidationError
from emsdash.org import _assert_slug_free, _slug_for, get_member
from emsdash.permissions import FTO_ROLES
from emsdash.utils import iso, round_half_up, rows_to_dicts, snapshot_row, to_int, today

logger = logging.getLogger(__name__)

MAX_STEPS = 20


# Categories


def list_skill_categories(conn, org_id: int, active_only: bool = False) -> List[Dict[str, Any]]:
    sql = """
        SELECT c.*, (SELECT COUNT(*) FROM skills s WHERE s.category_id = c.id) AS skill_count
        FROM skill_categories c WHERE c.organization_id = ?
    """
    if active_only:
        sql += " AND c.is_active = 1"
    return rows_to_dicts(conn.execute(sql + " ORDER BY c.sort_order, c.name", (org_id,)).fetchall())


def _category_fields(form: Mapping[str, Any]) -> Dict[str, Any]:
    name = v.text(form, "name", "Category name", max_len=100, required=True)
    return {
        "name": name,
        "slug": _slug_for(form, name),
        "description": v.text(form, "description", "Description", max_len=500),
        "sort_order": v.integer(form, "sort_order", "Sort order", default=0, minimum=0),
        "is_active": v.flag(form, "is_active", default=True),
    }


def create_skill_category(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _category_fields(form)
    _assert_slug_free(conn, "skill_categories", org_id, fields["slug"], "skill category")
    cur = conn.execute(
        """
        INSERT INTO skill_categories (organization_id, name, slug, description, sort_order, is_active, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (org_id, fields["name"], fields["slug"], fields["description"], fields["sort_order"], fields["is_active"], iso()),
    )
    log_action(conn, org_id, actor_id, "CREATE", "SkillCategory", cur.lastrowid, f'Created skill category "{fields["name"]}"')
    return {"category_id": int(cur.lastrowid)}


def update_skill_category(conn, org_id: int, actor_id: int, category_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = snapshot_row(get_scoped_row(conn, "skill_categories", org_id, category_id, "Skill category"))
    fields = _category_fields(form)
    _assert_slug_free(conn, "skill_categories", org_id, fields["slug"], "skill category", exclude_id=before["id"])
    conn.execute(
        "UPDATE skill_categories SET name = ?, slug = ?, description = ?, sort_order = ?, is_active = ? WHERE id = ?",
        (fields["name"], fields["slug"], fields["description"], fields["sort_order"], fields["is_active"], before["id"]),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "SkillCategory", before["id"],
        f'Updated skill category "{fields["name"]}"', compute_changes(before, fields, fields.keys()),
    )
    return {"category_id": before["id"]}


def delete_skill_category(conn, org_id: int, actor_id: int, category_id: Any) -> Dict[str, Any]:
    category = snapshot_row(get_scoped_row(conn, "skill_categories", org_id, category_id, "Skill category"))
    conn.execute("DELETE FROM skill_categories WHERE id = ?", (category["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "SkillCategory", category["id"], f'Deleted skill category "{category["name"]}"')
    return {"category_id": category["id"]}


# Skills


def list_skills(conn, org_id: int, category_id: Any = None, active_only: bool = False) -> List[Dict[str, Any]]:
    clauses = ["s.organization_id = ?"]
    params: List[Any] = [org_id]
    if to_int(category_id):
        clauses.append("s.category_id = ?")
        params.append(to_int(category_id))
    if active_only:
        clauses.append("s.is_active = 1")
    rows = conn.execute(
        f"""
        SELECT s.*, c.name AS category_name,
               (SELECT COUNT(*) FROM skill_steps st WHERE st.skill_id = s.id) AS step_count
        FROM skills s JOIN skill_categories c ON c.id = s.category_id
        WHERE {' AND '.join(clauses)}
        ORDER BY c.sort_order, s.sort_order, s.name
        """,
        tuple(params),
    ).fetchall()
    return rows_to_dicts(rows)


def get_skill(conn, org_id: int, skill_id: Any) -> Dict[str, Any]:
    skill = snapshot_row(get_scoped_row(conn, "skills", org_id, skill_id, "Skill"))
    skill["steps"] = rows_to_dicts(
        conn.execute("SELECT * FROM skill_steps WHERE skill_id = ? ORDER BY step_number", (skill["id"],)).fetchall()
    )
    return skill


def _skill_fields(conn, org_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    category_id = v.integer(form, "category_id", "Category")
    if not category_id:
        raise ValidationError("Category is required.")
    get_scoped_row(conn, "skill_categories", org_id, category_id, "Skill category")
    name = v.text(form, "name", "Skill name", max_len=200, required=True)
    return {
        "category_id": category_id,
        "name": name,
        "slug": _slug_for(form, name),
        "description": v.text(form, "description", "Description", max_len=500),
        "is_critical": v.flag(form, "is_critical"),
        "sort_order": v.integer(form, "sort_order", "Sort order", default=0, minimum=0),
        "is_active": v.flag(form, "is_active", default=True),
    }


def create_skill(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _skill_fields(conn, org_id, form)
    _assert_slug_free(conn, "skills", org_id, fields["slug"], "skill")
    columns = list(fields.keys())
    cur = conn.execute(
        f"""
        INSERT INTO skills (organization_id, {', '.join(columns)}, created_at)
        VALUES (?, {', '.join('?' for _ in columns)}, ?)
        """,
        (org_id, *fields.values(), iso()),
    )
    log_action(conn, org_id, actor_id, "CREATE", "Skill", cur.lastrowid, f'Created skill "{fields["name"]}"')
    return {"skill_id": int(cur.lastrowid)}


def update_skill(conn, org_id: int, actor_id: int, skill_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = snapshot_row(get_scoped_row(conn, "skills", org_id, skill_id, "Skill"))
    fields = _skill_fields(conn, org_id, form)
    _assert_slug_free(conn, "skills", org_id, fields["slug"], "skill", exclude_id=before["id"])
    assignments = ", ".join(f"{c} = ?" for c in fields)
    conn.execute(f"UPDATE skills SET {assignments} WHERE id = ?", (*fields.values(), before["id"]))
    log_action(
        conn, org_id, actor_id, "UPDATE", "Skill", before["id"],
        f'Updated skill "{fields["name"]}"', compute_changes(before, fields, fields.keys()),
    )
    return {"skill_id": before["id"]}


def delete_skill(conn, org_id: int, actor_id: int, skill_id: Any) -> Dict[str, Any]:
    skill = snapshot_row(get_scoped_row(conn, "skills", org_id, skill_id, "Skill"))
    conn.execute("DELETE FROM skills WHERE id = ?", (skill["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "Skill", skill["id"], f'Deleted skill "{skill["name"]}"')
    return {"skill_id": skill["id"]}


# Steps


def _step_fields(form: Mapping[str, Any]) -> Dict[str, Any]:
    step_number = v.integer(form, "step_number", "Step number", minimum=1, maximum=MAX_STEPS)
    if step_number is None:
        raise ValidationError("Step number is required.")
    return {
        "step_number": step_number,
        "description": v.text(form, "description", "Description", max_len=500, required=True),
        "is_required": v.flag(form, "is_required", default=True),
    }


def _step_taken(conn, skill_id: int, step_number: int, exclude_id: Optional[int] = None) -> None:
    row = conn.execute("SELECT id FROM skill_steps WHERE skill_id = ? AND step_number = ?", (skill_id, step_number)).fetchone()
    if row and (exclude_id is None or int(row["id"]) != int(exclude_id)):
        raise ValidationError(f"Step #{step_number} already exists for this skill.")


def _get_step(conn, org_id: int, step_id: Any) -> Dict[str, Any]:
    row = conn.execute(
        """
        SELECT st.* FROM skill_steps st JOIN skills s ON s.id = st.skill_id
        WHERE st.id = ? AND s.organization_id = ?
        """,
        (to_int(step_id), org_id),
    ).fetchone()
    if not row:
        raise NotFoundError("Step")
    return snapshot_row(row)


def create_step(conn, org_id: int, actor_id: int, skill_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    skill = snapshot_row(get_scoped_row(conn, "skills", org_id, skill_id, "Skill"))
    fields = _step_fields(form)
    _step_taken(conn, skill["id"], fields["step_number"])
    count = conn.execute("SELECT COUNT(*) FROM skill_steps WHERE skill_id = ?", (skill["id"],)).fetchone()[0]
    if count >= MAX_STEPS:
        raise ValidationError(f"Maximum of {MAX_STEPS} steps per skill.")
    cur = conn.execute(
        "INSERT INTO skill_steps (skill_id, step_number, description, is_required) VALUES (?, ?, ?, ?)",
        (skill["id"], fields["step_number"], fields["description"], fields["is_required"]),
    )
    log_action(conn, org_id, actor_id, "CREATE", "SkillStep", cur.lastrowid, f'Created step #{fields["step_number"]} for skill "{skill["name"]}"')
    return {"step_id": int(cur.lastrowid)}


def update_step(conn, org_id: int, actor_id: int, step_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = _get_step(conn, org_id, step_id)
    fields = _step_fields(form)
    _step_taken(conn, before["skill_id"], fields["step_number"], exclude_id=before["id"])
    conn.execute(
        "UPDATE skill_steps SET step_number = ?, description = ?, is_required = ? WHERE id = ?",
        (fields["step_number"], fields["description"], fields["is_required"], before["id"]),
    )
    log_action(conn, org_id, actor_id, "UPDATE", "SkillStep", before["id"], f'Updated step #{fields["step_number"]}')
    return {"step_id": before["id"]}


def delete_step(conn, org_id: int, actor_id: int, step_id: Any) -> Dict[str, Any]:
    step = _get_step(conn, org_id, step_id)
    conn.execute("DELETE FROM skill_steps WHERE id = ?", (step["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "SkillStep", step["id"], f'Deleted step #{step["step_number"]}')
    return {"step_id": step["id"]}


# Sign-offs


def signoff_skill(conn, org_id: int, actor_id: int, trainee_id: Any, skill_id: Any, form: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    form = form or {}
    trainee = get_member(conn, org_id, trainee_id)
    if trainee["role"] != "trainee":
        raise NotFoundError("Trainee")
    skill = snapshot_row(get_scoped_row(conn, "skills", org_id, skill_id, "Skill"))
    fto_id = to_int(form.get("fto_id")) or actor_id
    if get_member(conn, org_id, fto_id)["role"] not in FTO_ROLES:
        raise ValidationError("Sign-offs must be recorded by an FTO.")
    existing = conn.execute(
        "SELECT id FROM skill_signoffs WHERE trainee_id = ? AND skill_id = ?", (trainee["id"], skill["id"])
    ).fetchone()
    if existing:
        raise ValidationError("This skill has already been signed off.")
    signoff_date = v.date(form, "signoff_date", "Date") or today().isoformat()
    cur = conn.execute(
        """
        INSERT INTO skill_signoffs (organization_id, trainee_id, skill_id, fto_id, signoff_date, notes, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (org_id, trainee["id"], skill["id"], fto_id, signoff_date, v.text(form, "notes", "Notes", max_len=1000), iso()),
    )
    log_action(
        conn, org_id, actor_id, "SIGNOFF", "SkillSignoff", f"{trainee['id']}/{skill['id']}",
        f'Signed off skill "{skill["name"]}" for {trainee["name"]}',
    )
    return {"signoff_id": int(cur.lastrowid)}


def remove_signoff(conn, org_id: int, actor_id: int, trainee_id: Any, skill_id: Any) -> Dict[str, Any]:
    row = conn.execute(
        "SELECT id FROM skill_signoffs WHERE organization_id = ? AND trainee_id = ? AND skill_id = ?",
        (org_id, to_int(trainee_id), to_int(skill_id)),
    ).fetchone()
    if not row:
        raise NotFoundError("Sign-off")
    conn.execute("DELETE FROM skill_signoffs WHERE id = ?", (row["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "SkillSignoff", f"{trainee_id}/{skill_id}", "Removed skill sign-off")
    return {"signoff_id": int(row["id"])}


def trainee_skill_progress(conn, org_id: int, trainee_id: int) -> Dict[str, Any]:
    """Active skills grouped by category with the trainee's sign-off state."""
    rows = conn.execute(
        """
        SELECT s.id, s.name, s.is_critical, c.id AS category_id, c.name AS category_name,
               so.signoff_date, TRIM(f.first_name || ' ' || f.last_name) AS fto_name
        FROM skills s
        JOIN skill_categories c ON c.id = s.category_id
        LEFT JOIN skill_signoffs so ON so.skill_id = s.id AND so.trainee_id = ?
        LEFT JOIN users f ON f.id = so.fto_id
        WHERE s.organization_id = ? AND s.is_active = 1 AND c.is_active = 1
        ORDER BY c.sort_order, c.name, s.sort_order, s.name
        """,
        (trainee_id, org_id),
    ).fetchall()
    categories: Dict[int, Dict[str, Any]] = {}
    total = signed = critical_total = critical_signed = 0
    for row in rows_to_dicts(rows):
        bucket = categories.setdefault(
            int(row["category_id"]),
            {"category_id": row["category_id"], "name": row["category_name"], "skills": [], "total": 0, "signed_off": 0},
        )
        done = row["signoff_date"] is not None
        bucket["skills"].append(
            {"id": row["id"], "name": row["name"], "is_critical": bool(row["is_critical"]), "signed_off": done,
             "signoff_date": row["signoff_date"], "fto_name": row["fto_name"]}
        )
        bucket["total"] += 1
        total += 1
        if done:
            bucket["signed_off"] += 1
            signed += 1
        if row["is_critical"]:
            critical_total += 1
            critical_signed += 1 if done else 0
    for bucket in categories.values():
        bucket["percent"] = round_half_up(bucket["signed_off"] / bucket["total"] * 100, 1) if bucket["total"] else 0.0
    return {
        "categories": list(categories.values()),
        "total": total,
        "signed_off": signed,
        "percent": round_half_up(signed / total * 100, 1) if total else 0.0,
        "critical_total": critical_total,
        "critical_signed_off": critical_signed,
    }
