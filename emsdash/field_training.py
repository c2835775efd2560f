"""Field training: trainees, FTOs, assignments, phases, evaluation categories and DORs.

A DOR (Daily Observation Report) is written by an FTO about one shift with a
trainee. It starts as a draft, is submitted once, and is then read-only apart
from the trainee's acknowledgement and supervisor notes. Submitting a DOR
assigns coaching activities for every category rated at or below the coaching
threshold.

FTOs without ``view_all_trainees`` only see trainees they hold an active
assignment with; callers pass ``scope_user_id`` for that case and ``None``
when the viewer may see everyone.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from emsdash import validation as v
from emsdash.audit import compute_changes, log_action
from emsdash.auth import display_name
from emsdash.coaching import assign_coaching_for_dor
from emsdash.db import get_scoped_row
from emsdash.errors import NotFoundError, PermissionDenied, ValidationError
from emsdash.org import _assert_slug_free, _slug_for, create_user, get_member, update_user
from emsdash.permissions import FTO_ROLES
from emsdash.utils import clamp_int, iso, round_half_up, rows_to_dicts, snapshot_row, to_int, today

logger = logging.getLogger(__name__)

RECOMMEND_ACTIONS = ("continue", "advance", "extend", "remediate", "nrt", "release", "terminate")
PHASE_STATUSES = ("not_started", "in_progress", "completed")
ASSIGNMENT_STATUSES = ("active", "completed", "reassigned")
REQUEST_STATUSES = ("pending", "approved", "denied")
DOR_STATUSES = ("draft", "submitted")
MIN_RATING = 1
MAX_RATING = 7


# Scoping


def assigned_trainee_ids(conn, org_id: int, fto_id: int) -> List[int]:
    rows = conn.execute(
        """
        SELECT DISTINCT trainee_id FROM training_assignments
        WHERE organization_id = ? AND fto_id = ? AND status = 'active'
        """,
        (org_id, fto_id),
    ).fetchall()
    return [int(r["trainee_id"]) for r in rows]


def assert_trainee_visible(conn, org_id: int, trainee_id: Any, scope_user_id: Optional[int]) -> None:
    if scope_user_id is None or int(trainee_id) == int(scope_user_id):
        return
    if int(trainee_id) not in assigned_trainee_ids(conn, org_id, scope_user_id):
        raise PermissionDenied("You can only access trainees assigned to you.")


# Trainees and FTOs


def _people(conn, org_id: int, roles: Sequence[str], ids: Optional[Sequence[int]] = None, status: Optional[str] = None):
    clauses = ["m.organization_id = ?", f"m.role IN ({', '.join('?' for _ in roles)})"]
    params: List[Any] = [org_id, *roles]
    if ids is not None:
        if not ids:
            return []
        clauses.append(f"u.id IN ({', '.join('?' for _ in ids)})")
        params.extend(ids)
    if status:
        clauses.append("u.trainee_status = ?")
        params.append(status)
    rows = conn.execute(
        f"""
        SELECT u.id, u.email, u.first_name, u.last_name, u.employee_id, u.badge_number, u.division_id,
               u.trainee_status, u.hire_date, u.start_date, u.completion_date, u.status, u.is_active,
               m.role, dv.name AS division_name
        FROM users u
        JOIN memberships m ON m.user_id = u.id
        LEFT JOIN divisions dv ON dv.id = u.division_id
        WHERE {' AND '.join(clauses)}
        ORDER BY u.last_name, u.first_name
        """,
        tuple(params),
    ).fetchall()
    people = rows_to_dicts(rows)
    for person in people:
        person["name"] = display_name(person)
    return people


def list_trainees(conn, org_id: int, scope_user_id: Optional[int] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
    ids = assigned_trainee_ids(conn, org_id, scope_user_id) if scope_user_id is not None else None
    trainees = _people(conn, org_id, ("trainee",), ids, status)
    for trainee in trainees:
        fto = conn.execute(
            """
            SELECT u.first_name, u.last_name FROM training_assignments a JOIN users u ON u.id = a.fto_id
            WHERE a.trainee_id = ? AND a.status = 'active' ORDER BY a.start_date DESC LIMIT 1
            """,
            (trainee["id"],),
        ).fetchone()
        trainee["fto_name"] = display_name(snapshot_row(fto)) if fto else None
        trainee["dor_count"] = int(
            conn.execute(
                "SELECT COUNT(*) FROM daily_evaluations WHERE trainee_id = ? AND status = 'submitted'", (trainee["id"],)
            ).fetchone()[0]
        )
    return trainees


def get_trainee(conn, org_id: int, trainee_id: Any, scope_user_id: Optional[int] = None) -> Dict[str, Any]:
    member = get_member(conn, org_id, trainee_id)
    if member["role"] != "trainee":
        raise NotFoundError("Trainee")
    assert_trainee_visible(conn, org_id, member["id"], scope_user_id)
    return member


def create_trainee(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    data = dict(form)
    data["role"] = "trainee"
    data["trainee_status"] = data.get("trainee_status") or "active"
    result = create_user(conn, org_id, actor_id, data)
    return {"trainee_id": result["user_id"]}


def update_trainee(conn, org_id: int, actor_id: int, trainee_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    trainee = get_trainee(conn, org_id, trainee_id)
    data = dict(form)
    data["role"] = "trainee"
    update_user(conn, org_id, actor_id, trainee["id"], data)
    if data.get("trainee_status") == "completed" and not trainee["completion_date"]:
        conn.execute("UPDATE users SET completion_date = ? WHERE id = ?", (today().isoformat(), trainee["id"]))
    return {"trainee_id": trainee["id"]}


def list_ftos(conn, org_id: int) -> List[Dict[str, Any]]:
    ftos = _people(conn, org_id, FTO_ROLES)
    for fto in ftos:
        fto["trainee_count"] = len(assigned_trainee_ids(conn, org_id, fto["id"]))
    return ftos


def create_fto(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    data = dict(form)
    data["role"] = v.choice(form, "role", "Role", FTO_ROLES, default="fto")
    result = create_user(conn, org_id, actor_id, data)
    return {"fto_id": result["user_id"]}


def update_fto(conn, org_id: int, actor_id: int, fto_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    member = get_member(conn, org_id, fto_id)
    if member["role"] not in FTO_ROLES:
        raise NotFoundError("FTO")
    data = dict(form)
    data["role"] = v.choice(form, "role", "Role", FTO_ROLES, default=member["role"])
    update_user(conn, org_id, actor_id, member["id"], data)
    return {"fto_id": member["id"]}


def _require_role(conn, org_id: int, user_id: Any, roles: Sequence[str], entity: str) -> Dict[str, Any]:
    if not to_int(user_id):
        raise ValidationError(f"{entity} is required.")
    member = get_member(conn, org_id, user_id)
    if member["role"] not in roles:
        raise NotFoundError(entity)
    return member


# Assignments


def list_assignments(conn, org_id: int, trainee_id: Any = None, fto_id: Any = None) -> List[Dict[str, Any]]:
    clauses = ["a.organization_id = ?"]
    params: List[Any] = [org_id]
    if to_int(trainee_id):
        clauses.append("a.trainee_id = ?")
        params.append(to_int(trainee_id))
    if to_int(fto_id):
        clauses.append("a.fto_id = ?")
        params.append(to_int(fto_id))
    rows = conn.execute(
        f"""
        SELECT a.*, TRIM(t.first_name || ' ' || t.last_name) AS trainee_name,
               TRIM(f.first_name || ' ' || f.last_name) AS fto_name
        FROM training_assignments a
        JOIN users t ON t.id = a.trainee_id
        JOIN users f ON f.id = a.fto_id
        WHERE {' AND '.join(clauses)}
        ORDER BY a.status, a.start_date DESC
        """,
        tuple(params),
    ).fetchall()
    return rows_to_dicts(rows)


def create_assignment(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    trainee = _require_role(conn, org_id, form.get("trainee_id"), ("trainee",), "Trainee")
    fto = _require_role(conn, org_id, form.get("fto_id"), FTO_ROLES, "FTO")
    start_date = v.date(form, "start_date", "Start date") or today().isoformat()
    end_date = v.date(form, "end_date", "End date")
    if end_date and end_date < start_date:
        raise ValidationError("End date must be on or after the start date.")
    cur = conn.execute(
        """
        INSERT INTO training_assignments (organization_id, trainee_id, fto_id, start_date, end_date, status, notes, created_at)
        VALUES (?, ?, ?, ?, ?, 'active', ?, ?)
        """,
        (org_id, trainee["id"], fto["id"], start_date, end_date, v.text(form, "notes", "Notes", max_len=1000), iso()),
    )
    assignment_id = int(cur.lastrowid)
    log_action(
        conn, org_id, actor_id, "CREATE", "TrainingAssignment", assignment_id,
        f"Assigned trainee {trainee['name']} to FTO {fto['name']}",
    )
    return {"assignment_id": assignment_id}


def end_assignment(conn, org_id: int, actor_id: int, assignment_id: Any, status: str = "completed") -> Dict[str, Any]:
    assignment = snapshot_row(get_scoped_row(conn, "training_assignments", org_id, assignment_id, "Assignment"))
    if status not in ASSIGNMENT_STATUSES or status == "active":
        raise ValidationError("Assignments can only be ended as completed or reassigned.")
    if assignment["status"] != "active":
        raise ValidationError("This assignment has already ended.")
    conn.execute(
        "UPDATE training_assignments SET status = ?, end_date = COALESCE(end_date, ?) WHERE id = ?",
        (status, today().isoformat(), assignment["id"]),
    )
    log_action(conn, org_id, actor_id, "UPDATE", "TrainingAssignment", assignment["id"], f"Ended assignment as {status}")
    return {"assignment_id": assignment["id"], "status": status}


# Assignment requests


def list_assignment_requests(
    conn, org_id: int, status: Optional[str] = None, requester_id: Optional[int] = None
) -> List[Dict[str, Any]]:
    clauses = ["r.organization_id = ?"]
    params: List[Any] = [org_id]
    if status in REQUEST_STATUSES:
        clauses.append("r.status = ?")
        params.append(status)
    if requester_id is not None:
        clauses.append("r.requester_id = ?")
        params.append(requester_id)
    rows = conn.execute(
        f"""
        SELECT r.*, TRIM(q.first_name || ' ' || q.last_name) AS requester_name,
               TRIM(t.first_name || ' ' || t.last_name) AS trainee_name,
               TRIM(v.first_name || ' ' || v.last_name) AS reviewer_name
        FROM training_assignment_requests r
        JOIN users q ON q.id = r.requester_id
        JOIN users t ON t.id = r.trainee_id
        LEFT JOIN users v ON v.id = r.reviewed_by
        WHERE {' AND '.join(clauses)}
        ORDER BY CASE WHEN r.status = 'pending' THEN 0 ELSE 1 END, r.created_at DESC, r.id DESC
        """,
        tuple(params),
    ).fetchall()
    return rows_to_dicts(rows)


def create_assignment_request(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    """An FTO asks to be assigned a trainee; a supervisor approves or denies it later."""
    trainee_id = to_int(form.get("trainee_id"))
    if not trainee_id:
        raise ValidationError("Trainee is required.")
    reason = v.text(form, "reason", "Reason", max_len=1000)
    pending = conn.execute(
        """
        SELECT id FROM training_assignment_requests
        WHERE organization_id = ? AND requester_id = ? AND trainee_id = ? AND status = 'pending'
        """,
        (org_id, actor_id, trainee_id),
    ).fetchone()
    if pending:
        raise ValidationError("You already have a pending request for this trainee.")
    try:
        trainee = get_member(conn, org_id, trainee_id)
    except NotFoundError:
        trainee = None
    if not trainee or trainee["role"] != "trainee":
        raise ValidationError("Selected user is not a trainee.")
    cur = conn.execute(
        """
        INSERT INTO training_assignment_requests (organization_id, requester_id, trainee_id, reason, status, created_at)
        VALUES (?, ?, ?, ?, 'pending', ?)
        """,
        (org_id, actor_id, trainee["id"], reason, iso()),
    )
    request_id = int(cur.lastrowid)
    log_action(
        conn, org_id, actor_id, "CREATE", "AssignmentRequest", request_id,
        f'Requested assignment of trainee "{trainee["name"]}"',
    )
    return {"request_id": request_id, "status": "pending"}


def review_assignment_request(
    conn, org_id: int, actor_id: int, request_id: Any, decision: Any, review_notes: Any = None
) -> Dict[str, Any]:
    """Approve or deny a pending request.

    Approval ends the trainee's active assignments as ``reassigned`` and starts
    a new active assignment with the requesting FTO.
    """
    if decision not in ("approved", "denied"):
        raise ValidationError("Decision must be approved or denied.")
    request = snapshot_row(get_scoped_row(conn, "training_assignment_requests", org_id, request_id, "Request"))
    if request["status"] != "pending":
        raise ValidationError("This request has already been reviewed.")
    notes = str(review_notes or "").strip()[:1000] or None
    conn.execute(
        "UPDATE training_assignment_requests SET status = ?, reviewed_by = ?, reviewed_at = ?, review_notes = ? WHERE id = ?",
        (decision, actor_id, iso(), notes, request["id"]),
    )
    requester = get_member(conn, org_id, request["requester_id"])
    trainee = get_member(conn, org_id, request["trainee_id"])
    result: Dict[str, Any] = {"request_id": request["id"], "status": decision}
    if decision == "approved":
        conn.execute(
            """
            UPDATE training_assignments SET status = 'reassigned', end_date = ?
            WHERE organization_id = ? AND trainee_id = ? AND status = 'active'
            """,
            (today().isoformat(), org_id, trainee["id"]),
        )
        cur = conn.execute(
            """
            INSERT INTO training_assignments (organization_id, trainee_id, fto_id, start_date, status, created_at)
            VALUES (?, ?, ?, ?, 'active', ?)
            """,
            (org_id, trainee["id"], requester["id"], today().isoformat(), iso()),
        )
        result["assignment_id"] = int(cur.lastrowid)
    verb = "Approved" if decision == "approved" else "Denied"
    log_action(
        conn, org_id, actor_id, "UPDATE", "AssignmentRequest", request["id"],
        f'{verb} assignment request: FTO "{requester["name"]}" for trainee "{trainee["name"]}"',
    )
    return result


# Phases


def list_phases(conn, org_id: int, active_only: bool = False) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM training_phases WHERE organization_id = ?"
    if active_only:
        sql += " AND is_active = 1"
    return rows_to_dicts(conn.execute(sql + " ORDER BY sort_order, name", (org_id,)).fetchall())


def _phase_fields(form: Mapping[str, Any]) -> Dict[str, Any]:
    name = v.text(form, "name", "Phase name", max_len=100, required=True)
    return {
        "name": name,
        "slug": _slug_for(form, name),
        "description": v.text(form, "description", "Description", max_len=500),
        "sort_order": v.integer(form, "sort_order", "Sort order", default=0, minimum=0),
        "min_days": v.integer(form, "min_days", "Minimum days", minimum=0),
    }


def create_phase(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _phase_fields(form)
    _assert_slug_free(conn, "training_phases", org_id, fields["slug"], "phase")
    cur = conn.execute(
        """
        INSERT INTO training_phases (organization_id, name, slug, description, sort_order, min_days, is_active, created_at)
        VALUES (?, ?, ?, ?, ?, ?, 1, ?)
        """,
        (org_id, fields["name"], fields["slug"], fields["description"], fields["sort_order"], fields["min_days"], iso()),
    )
    log_action(conn, org_id, actor_id, "CREATE", "TrainingPhase", cur.lastrowid, f'Created phase "{fields["name"]}"')
    return {"phase_id": int(cur.lastrowid)}


def update_phase(conn, org_id: int, actor_id: int, phase_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = snapshot_row(get_scoped_row(conn, "training_phases", org_id, phase_id, "Phase"))
    fields = _phase_fields(form)
    _assert_slug_free(conn, "training_phases", org_id, fields["slug"], "phase", exclude_id=before["id"])
    conn.execute(
        "UPDATE training_phases SET name = ?, slug = ?, description = ?, sort_order = ?, min_days = ? WHERE id = ?",
        (fields["name"], fields["slug"], fields["description"], fields["sort_order"], fields["min_days"], before["id"]),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "TrainingPhase", before["id"],
        f'Updated phase "{fields["name"]}"', compute_changes(before, fields, fields.keys()),
    )
    return {"phase_id": before["id"]}


def delete_phase(conn, org_id: int, actor_id: int, phase_id: Any) -> Dict[str, Any]:
    phase = snapshot_row(get_scoped_row(conn, "training_phases", org_id, phase_id, "Phase"))
    conn.execute("DELETE FROM training_phases WHERE id = ?", (phase["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "TrainingPhase", phase["id"], f'Deleted phase "{phase["name"]}"')
    return {"phase_id": phase["id"]}


def trainee_phase_progress(conn, org_id: int, trainee_id: int) -> List[Dict[str, Any]]:
    """Every active phase with the trainee's progress, defaulting to not_started."""
    rows = conn.execute(
        """
        SELECT p.id AS phase_id, p.name, p.sort_order, p.min_days,
               COALESCE(tp.status, 'not_started') AS status, tp.start_date, tp.end_date,
               tp.signoff_date, tp.notes, TRIM(s.first_name || ' ' || s.last_name) AS signoff_name
        FROM training_phases p
        LEFT JOIN trainee_phases tp ON tp.phase_id = p.id AND tp.trainee_id = ?
        LEFT JOIN users s ON s.id = tp.signoff_by
        WHERE p.organization_id = ? AND p.is_active = 1
        ORDER BY p.sort_order, p.name
        """,
        (trainee_id, org_id),
    ).fetchall()
    return rows_to_dicts(rows)


def update_trainee_phase(
    conn, org_id: int, actor_id: int, trainee_id: Any, phase_id: Any, form: Mapping[str, Any], signoff: bool = False
) -> Dict[str, Any]:
    trainee = get_trainee(conn, org_id, trainee_id)
    phase = snapshot_row(get_scoped_row(conn, "training_phases", org_id, phase_id, "Phase"))
    status = v.choice(form, "status", "Status", PHASE_STATUSES, default="in_progress")
    start_date = v.date(form, "start_date", "Start date")
    end_date = v.date(form, "end_date", "End date")
    notes = v.text(form, "notes", "Notes", max_len=2000)
    if status == "in_progress" and not start_date:
        start_date = today().isoformat()
    if status == "completed" and not end_date:
        end_date = today().isoformat()
    signoff_by = actor_id if signoff and status == "completed" else None
    signoff_date = today().isoformat() if signoff_by else None

    existing = conn.execute(
        "SELECT * FROM trainee_phases WHERE trainee_id = ? AND phase_id = ?", (trainee["id"], phase["id"])
    ).fetchone()
    if existing:
        conn.execute(
            """
            UPDATE trainee_phases SET status = ?, start_date = COALESCE(?, start_date), end_date = ?, notes = ?,
                   signoff_by = COALESCE(?, signoff_by), signoff_date = COALESCE(?, signoff_date)
            WHERE id = ?
            """,
            (status, start_date, end_date, notes, signoff_by, signoff_date, existing["id"]),
        )
    else:
        conn.execute(
            """
            INSERT INTO trainee_phases (organization_id, trainee_id, phase_id, status, start_date, end_date, signoff_by, signoff_date, notes)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (org_id, trainee["id"], phase["id"], status, start_date, end_date, signoff_by, signoff_date, notes),
        )
    action = "SIGNOFF" if signoff_by else "UPDATE"
    log_action(conn, org_id, actor_id, action, "TraineePhase", trainee["id"], f'{trainee["name"]}: phase "{phase["name"]}" is {status}')
    return {"trainee_id": trainee["id"], "phase_id": phase["id"], "status": status}


def signoff_phase(conn, org_id: int, actor_id: int, trainee_id: Any, phase_id: Any, notes: Any = None) -> Dict[str, Any]:
    return update_trainee_phase(
        conn, org_id, actor_id, trainee_id, phase_id, {"status": "completed", "notes": notes}, signoff=True
    )


# Evaluation categories


def list_evaluation_categories(conn, org_id: int, active_only: bool = False) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM evaluation_categories WHERE organization_id = ?"
    if active_only:
        sql += " AND is_active = 1"
    return rows_to_dicts(conn.execute(sql + " ORDER BY sort_order, name", (org_id,)).fetchall())


def _evaluation_category_fields(form: Mapping[str, Any]) -> Dict[str, Any]:
    name = v.text(form, "name", "Category name", max_len=100, required=True)
    return {
        "name": name,
        "slug": _slug_for(form, name),
        "description": v.text(form, "description", "Description", max_len=500),
        "sort_order": v.integer(form, "sort_order", "Sort order", default=0, minimum=0),
        "is_active": v.flag(form, "is_active", default=True),
    }


def create_evaluation_category(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _evaluation_category_fields(form)
    _assert_slug_free(conn, "evaluation_categories", org_id, fields["slug"], "evaluation category")
    cur = conn.execute(
        """
        INSERT INTO evaluation_categories (organization_id, name, slug, description, sort_order, is_active, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (org_id, fields["name"], fields["slug"], fields["description"], fields["sort_order"], fields["is_active"], iso()),
    )
    log_action(conn, org_id, actor_id, "CREATE", "EvaluationCategory", cur.lastrowid, f'Created evaluation category "{fields["name"]}"')
    return {"category_id": int(cur.lastrowid)}


def update_evaluation_category(conn, org_id: int, actor_id: int, category_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = snapshot_row(get_scoped_row(conn, "evaluation_categories", org_id, category_id, "Evaluation category"))
    fields = _evaluation_category_fields(form)
    _assert_slug_free(conn, "evaluation_categories", org_id, fields["slug"], "evaluation category", exclude_id=before["id"])
    conn.execute(
        "UPDATE evaluation_categories SET name = ?, slug = ?, description = ?, sort_order = ?, is_active = ? WHERE id = ?",
        (fields["name"], fields["slug"], fields["description"], fields["sort_order"], fields["is_active"], before["id"]),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "EvaluationCategory", before["id"],
        f'Updated evaluation category "{fields["name"]}"', compute_changes(before, fields, fields.keys()),
    )
    return {"category_id": before["id"]}


def delete_evaluation_category(conn, org_id: int, actor_id: int, category_id: Any) -> Dict[str, Any]:
    category = snapshot_row(get_scoped_row(conn, "evaluation_categories", org_id, category_id, "Evaluation category"))
    in_use = conn.execute("SELECT COUNT(*) FROM evaluation_ratings WHERE category_id = ?", (category["id"],)).fetchone()[0]
    if in_use:
        raise ValidationError("This category has ratings on existing DORs. Deactivate it instead.")
    conn.execute("DELETE FROM evaluation_categories WHERE id = ?", (category["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "EvaluationCategory", category["id"], f'Deleted evaluation category "{category["name"]}"')
    return {"category_id": category["id"]}


# DORs


def _ratings_from(conn, org_id: int, form: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Ratings from a ``ratings`` list or ``rating_<category_id>`` form fields, clamped to 1-7."""
    raw = form.get("ratings")
    if raw is None:
        raw = []
        for key in form.keys():
            if str(key).startswith("rating_") and str(form.get(key) or "").strip():
                category_id = str(key)[len("rating_"):]
                raw.append({"category_id": category_id, "rating": form.get(key), "comments": form.get(f"comment_{category_id}")})
    valid = {int(r["id"]) for r in conn.execute("SELECT id FROM evaluation_categories WHERE organization_id = ?", (org_id,)).fetchall()}
    ratings: Dict[int, Dict[str, Any]] = {}
    for item in raw:
        category_id = to_int(item.get("category_id"))
        if category_id not in valid:
            raise NotFoundError("Evaluation category")
        if to_int(item.get("rating")) is None:
            raise ValidationError("Each rating must be a whole number.")
        ratings[category_id] = {
            "category_id": category_id,
            "rating": clamp_int(item.get("rating"), MIN_RATING, MIN_RATING, MAX_RATING),
            "comments": str(item.get("comments") or "").strip()[:1000] or None,
        }
    return list(ratings.values())


def _dor_fields(conn, org_id: int, actor_id: int, form: Mapping[str, Any], scope_user_id: Optional[int]) -> Dict[str, Any]:
    trainee = _require_role(conn, org_id, form.get("trainee_id"), ("trainee",), "Trainee")
    assert_trainee_visible(conn, org_id, trainee["id"], scope_user_id)
    fto_id = to_int(form.get("fto_id")) or actor_id
    if scope_user_id is not None:
        fto_id = scope_user_id
    fto = _require_role(conn, org_id, fto_id, FTO_ROLES, "FTO")
    phase_id = to_int(form.get("phase_id"))
    if phase_id:
        get_scoped_row(conn, "training_phases", org_id, phase_id, "Phase")
    overall = v.integer(form, "overall_rating", "Overall rating", minimum=MIN_RATING, maximum=MAX_RATING)
    if overall is None:
        raise ValidationError("Overall rating is required.")
    return {
        "trainee_id": trainee["id"],
        "fto_id": fto["id"],
        "phase_id": phase_id,
        "evaluation_date": v.date(form, "evaluation_date", "Date", required=True),
        "overall_rating": overall,
        "narrative": v.text(form, "narrative", "Narrative", max_len=5000),
        "most_satisfactory": v.text(form, "most_satisfactory", "Most satisfactory", max_len=200),
        "least_satisfactory": v.text(form, "least_satisfactory", "Least satisfactory", max_len=200),
        "recommend_action": v.choice(form, "recommend_action", "Recommended action", RECOMMEND_ACTIONS, default="continue"),
        "nrt_flag": v.flag(form, "nrt_flag"),
        "rem_flag": v.flag(form, "rem_flag"),
    }


def _write_ratings(conn, evaluation_id: int, ratings: Sequence[Mapping[str, Any]]) -> None:
    conn.execute("DELETE FROM evaluation_ratings WHERE evaluation_id = ?", (evaluation_id,))
    for rating in ratings:
        conn.execute(
            "INSERT INTO evaluation_ratings (evaluation_id, category_id, rating, comments) VALUES (?, ?, ?, ?)",
            (evaluation_id, rating["category_id"], rating["rating"], rating["comments"]),
        )


def get_dor(conn, org_id: int, evaluation_id: Any, scope_user_id: Optional[int] = None) -> Dict[str, Any]:
    row = conn.execute(
        """
        SELECT e.*, TRIM(t.first_name || ' ' || t.last_name) AS trainee_name,
               TRIM(f.first_name || ' ' || f.last_name) AS fto_name, p.name AS phase_name
        FROM daily_evaluations e
        JOIN users t ON t.id = e.trainee_id
        JOIN users f ON f.id = e.fto_id
        LEFT JOIN training_phases p ON p.id = e.phase_id
        WHERE e.id = ? AND e.organization_id = ?
        """,
        (to_int(evaluation_id), org_id),
    ).fetchone()
    if not row:
        raise NotFoundError("DOR")
    dor = snapshot_row(row)
    assert_trainee_visible(conn, org_id, dor["trainee_id"], scope_user_id)
    dor["ratings"] = rows_to_dicts(
        conn.execute(
            """
            SELECT r.category_id, r.rating, r.comments, c.name AS category_name
            FROM evaluation_ratings r JOIN evaluation_categories c ON c.id = r.category_id
            WHERE r.evaluation_id = ? ORDER BY c.sort_order, c.name
            """,
            (dor["id"],),
        ).fetchall()
    )
    dor["notes"] = rows_to_dicts(
        conn.execute(
            """
            SELECT n.id, n.note, n.author_id, n.created_at, TRIM(u.first_name || ' ' || u.last_name) AS author_name
            FROM supervisor_notes n LEFT JOIN users u ON u.id = n.author_id
            WHERE n.evaluation_id = ? ORDER BY n.created_at
            """,
            (dor["id"],),
        ).fetchall()
    )
    return dor


def list_dors(conn, org_id: int, filters: Optional[Mapping[str, Any]] = None, scope_user_id: Optional[int] = None) -> List[Dict[str, Any]]:
    filters = filters or {}
    clauses = ["e.organization_id = ?"]
    params: List[Any] = [org_id]
    if scope_user_id is not None:
        visible = assigned_trainee_ids(conn, org_id, scope_user_id)
        clauses.append(f"(e.fto_id = ? OR e.trainee_id = ? OR e.trainee_id IN ({', '.join('?' for _ in visible) or 'NULL'}))")
        params.extend([scope_user_id, scope_user_id, *visible])
    for key in ("trainee_id", "fto_id", "phase_id"):
        if to_int(filters.get(key)):
            clauses.append(f"e.{key} = ?")
            params.append(to_int(filters.get(key)))
    if filters.get("status") in DOR_STATUSES:
        clauses.append("e.status = ?")
        params.append(filters["status"])
    rows = conn.execute(
        f"""
        SELECT e.id, e.trainee_id, e.fto_id, e.evaluation_date, e.overall_rating, e.recommend_action,
               e.nrt_flag, e.rem_flag, e.status, e.trainee_acknowledged, e.submitted_at,
               TRIM(t.first_name || ' ' || t.last_name) AS trainee_name,
               TRIM(f.first_name || ' ' || f.last_name) AS fto_name, p.name AS phase_name
        FROM daily_evaluations e
        JOIN users t ON t.id = e.trainee_id
        JOIN users f ON f.id = e.fto_id
        LEFT JOIN training_phases p ON p.id = e.phase_id
        WHERE {' AND '.join(clauses)}
        ORDER BY e.evaluation_date DESC, e.id DESC
        """,
        tuple(params),
    ).fetchall()
    return rows_to_dicts(rows)


def get_trainee_dor_history(
    conn, org_id: int, trainee_id: Any, scope_user_id: Optional[int] = None, limit: int = 20
) -> List[Dict[str, Any]]:
    """The trainee's most recent submitted DORs, newest first."""
    trainee = get_trainee(conn, org_id, trainee_id, scope_user_id)
    rows = conn.execute(
        """
        SELECT e.id, e.evaluation_date, e.overall_rating, e.recommend_action,
               f.first_name AS fto_first, f.last_name AS fto_last, p.name AS phase_name
        FROM daily_evaluations e
        JOIN users f ON f.id = e.fto_id
        LEFT JOIN training_phases p ON p.id = e.phase_id
        WHERE e.organization_id = ? AND e.trainee_id = ? AND e.status = 'submitted'
        ORDER BY e.evaluation_date DESC, e.id DESC
        LIMIT ?
        """,
        (org_id, trainee["id"], limit),
    ).fetchall()
    return [
        {
            "id": int(row["id"]),
            "evaluation_date": row["evaluation_date"],
            "fto_name": ", ".join(part for part in (row["fto_last"], row["fto_first"]) if part),
            "phase_name": row["phase_name"],
            "overall_rating": row["overall_rating"],
            "recommend_action": row["recommend_action"],
        }
        for row in rows
    ]


def create_dor(
    conn, org_id: int, actor_id: int, form: Mapping[str, Any], submit: bool = False, scope_user_id: Optional[int] = None
) -> Dict[str, Any]:
    fields = _dor_fields(conn, org_id, actor_id, form, scope_user_id)
    ratings = _ratings_from(conn, org_id, form)
    status = "submitted" if submit else "draft"
    columns = list(fields.keys())
    cur = conn.execute(
        f"""
        INSERT INTO daily_evaluations (organization_id, {', '.join(columns)}, status, submitted_at, created_at, updated_at)
        VALUES (?, {', '.join('?' for _ in columns)}, ?, ?, ?, ?)
        """,
        (org_id, *fields.values(), status, iso() if submit else None, iso(), iso()),
    )
    evaluation_id = int(cur.lastrowid)
    _write_ratings(conn, evaluation_id, ratings)
    log_action(
        conn, org_id, actor_id, "CREATE", "DailyObservationReport", evaluation_id,
        f"Created {status} DOR for trainee {fields['trainee_id']} on {fields['evaluation_date']}",
    )
    assigned = assign_coaching_for_dor(conn, org_id, evaluation_id) if submit else 0
    return {"evaluation_id": evaluation_id, "status": status, "coaching_assigned": assigned}


def _draft(conn, org_id: int, evaluation_id: Any, scope_user_id: Optional[int]) -> Dict[str, Any]:
    dor = snapshot_row(get_scoped_row(conn, "daily_evaluations", org_id, evaluation_id, "DOR"))
    if dor["status"] != "draft":
        raise ValidationError("This DOR has already been submitted.")
    if scope_user_id is not None and int(dor["fto_id"]) != int(scope_user_id):
        raise PermissionDenied("You can only edit your own DORs.")
    return dor


def update_dor_draft(
    conn, org_id: int, actor_id: int, evaluation_id: Any, form: Mapping[str, Any], scope_user_id: Optional[int] = None
) -> Dict[str, Any]:
    before = _draft(conn, org_id, evaluation_id, scope_user_id)
    fields = _dor_fields(conn, org_id, actor_id, form, scope_user_id)
    ratings = _ratings_from(conn, org_id, form)
    assignments = ", ".join(f"{c} = ?" for c in fields)
    conn.execute(
        f"UPDATE daily_evaluations SET {assignments}, updated_at = ? WHERE id = ?",
        (*fields.values(), iso(), before["id"]),
    )
    _write_ratings(conn, before["id"], ratings)
    log_action(
        conn, org_id, actor_id, "UPDATE", "DailyObservationReport", before["id"],
        "Updated draft DOR", compute_changes(before, fields, fields.keys()),
    )
    return {"evaluation_id": before["id"]}


def submit_dor(conn, org_id: int, actor_id: int, evaluation_id: Any, scope_user_id: Optional[int] = None) -> Dict[str, Any]:
    dor = _draft(conn, org_id, evaluation_id, scope_user_id)
    conn.execute(
        "UPDATE daily_evaluations SET status = 'submitted', submitted_at = ?, updated_at = ? WHERE id = ?",
        (iso(), iso(), dor["id"]),
    )
    log_action(conn, org_id, actor_id, "SUBMIT", "DailyObservationReport", dor["id"], "Submitted DOR (changed status from draft to submitted)")
    assigned = assign_coaching_for_dor(conn, org_id, dor["id"])
    return {"evaluation_id": dor["id"], "status": "submitted", "coaching_assigned": assigned}


def delete_dor(conn, org_id: int, actor_id: int, evaluation_id: Any, scope_user_id: Optional[int] = None) -> Dict[str, Any]:
    """FTOs delete their own drafts; unscoped callers may delete any DOR."""
    if scope_user_id is not None:
        dor = _draft(conn, org_id, evaluation_id, scope_user_id)
    else:
        dor = snapshot_row(get_scoped_row(conn, "daily_evaluations", org_id, evaluation_id, "DOR"))
    conn.execute("DELETE FROM daily_evaluations WHERE id = ?", (dor["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "DailyObservationReport", dor["id"], f"Deleted DOR dated {dor['evaluation_date']}")
    return {"evaluation_id": dor["id"]}


def acknowledge_dor(conn, org_id: int, trainee_id: int, evaluation_id: Any) -> Dict[str, Any]:
    dor = snapshot_row(get_scoped_row(conn, "daily_evaluations", org_id, evaluation_id, "DOR"))
    if int(dor["trainee_id"]) != int(trainee_id):
        raise PermissionDenied("You can only acknowledge your own DORs.")
    if dor["status"] != "submitted":
        raise ValidationError("Only submitted DORs can be acknowledged.")
    if dor["trainee_acknowledged"]:
        raise ValidationError("This DOR has already been acknowledged.")
    conn.execute(
        "UPDATE daily_evaluations SET trainee_acknowledged = 1, acknowledged_at = ?, updated_at = ? WHERE id = ?",
        (iso(), iso(), dor["id"]),
    )
    log_action(conn, org_id, trainee_id, "ACKNOWLEDGE", "DailyObservationReport", dor["id"], "Trainee acknowledged DOR")
    return {"evaluation_id": dor["id"]}


def add_supervisor_note(conn, org_id: int, actor_id: int, evaluation_id: Any, note: Any) -> Dict[str, Any]:
    dor = snapshot_row(get_scoped_row(conn, "daily_evaluations", org_id, evaluation_id, "DOR"))
    text = str(note or "").strip()
    if not text:
        raise ValidationError("Note text cannot be empty.")
    if len(text) > 5000:
        raise ValidationError("Note must be at most 5000 characters.")
    cur = conn.execute(
        "INSERT INTO supervisor_notes (organization_id, evaluation_id, author_id, note, created_at) VALUES (?, ?, ?, ?, ?)",
        (org_id, dor["id"], actor_id, text, iso()),
    )
    log_action(conn, org_id, actor_id, "CREATE", "SupervisorNote", cur.lastrowid, f"Supervisor note added to DOR {dor['id']}")
    return {"note_id": int(cur.lastrowid)}


def delete_supervisor_note(conn, org_id: int, actor_id: int, note_id: Any, can_moderate: bool = False) -> Dict[str, Any]:
    note = snapshot_row(get_scoped_row(conn, "supervisor_notes", org_id, note_id, "Note"))
    if not can_moderate and int(note["author_id"] or 0) != int(actor_id):
        raise PermissionDenied("Only the author or a manager can delete this note.")
    conn.execute("DELETE FROM supervisor_notes WHERE id = ?", (note["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "SupervisorNote", note["id"], f"Deleted supervisor note on DOR {note['evaluation_id']}")
    return {"note_id": note["id"]}


# Dashboard


def dashboard_stats(conn, org_id: int, scope_user_id: Optional[int] = None) -> Dict[str, Any]:
    trainees = list_trainees(conn, org_id, scope_user_id)
    trainee_ids = [int(t["id"]) for t in trainees]
    status_counts: Dict[str, int] = {}
    for trainee in trainees:
        key = trainee["trainee_status"] or "active"
        status_counts[key] = status_counts.get(key, 0) + 1
    stats: Dict[str, Any] = {
        "trainee_count": len(trainees),
        "trainee_status_counts": status_counts,
        "active_trainees": status_counts.get("active", 0),
        "dor_count": 0,
        "draft_count": 0,
        "unacknowledged_count": 0,
        "average_rating": None,
        "nrt_count": 0,
        "rem_count": 0,
        "recent_dors": [],
    }
    if not trainee_ids:
        return stats
    marks = ", ".join("?" for _ in trainee_ids)
    row = conn.execute(
        f"""
        SELECT COUNT(*) AS total,
               SUM(CASE WHEN status = 'draft' THEN 1 ELSE 0 END) AS drafts,
               SUM(CASE WHEN status = 'submitted' AND trainee_acknowledged = 0 THEN 1 ELSE 0 END) AS unacknowledged,
               AVG(CASE WHEN status = 'submitted' THEN overall_rating END) AS average_rating,
               SUM(CASE WHEN status = 'submitted' THEN nrt_flag ELSE 0 END) AS nrt,
               SUM(CASE WHEN status = 'submitted' THEN rem_flag ELSE 0 END) AS rem
        FROM daily_evaluations
        WHERE organization_id = ? AND trainee_id IN ({marks})
        """,
        (org_id, *trainee_ids),
    ).fetchone()
    stats.update(
        {
            "dor_count": int(row["total"] or 0),
            "draft_count": int(row["drafts"] or 0),
            "unacknowledged_count": int(row["unacknowledged"] or 0),
            "average_rating": round_half_up(float(row["average_rating"]), 2) if row["average_rating"] is not None else None,
            "nrt_count": int(row["nrt"] or 0),
            "rem_count": int(row["rem"] or 0),
        }
    )
    stats["recent_dors"] = list_dors(conn, org_id, scope_user_id=scope_user_id)[:10]
    return stats
