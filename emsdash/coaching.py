"""Coaching activities and the trainee assignments generated from low DOR ratings."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from emsdash import validation as v
from emsdash.audit import compute_changes, log_action
from emsdash.db import get_scoped_row
from emsdash.errors import PermissionDenied, ValidationError
from emsdash.utils import clamp_int, iso, round_half_up, rows_to_dicts, snapshot_row, to_float

logger = logging.getLogger(__name__)

ACTIVITY_TYPES = ("reading", "video", "quiz", "scenario", "reflection")
DIFFICULTIES = ("basic", "intermediate", "advanced")
ASSIGNMENT_STATUSES = ("assigned", "in_progress", "completed")

# Category ratings at or below this value trigger coaching assignments.
POOR_SCORE_THRESHOLD = 3


def list_activities(conn, org_id: int, category_id: Any = None, active_only: bool = False) -> List[Dict[str, Any]]:
    clauses = ["a.organization_id = ?"]
    params: List[Any] = [org_id]
    if category_id:
        clauses.append("a.category_id = ?")
        params.append(category_id)
    if active_only:
        clauses.append("a.is_active = 1")
    rows = conn.execute(
        f"""
        SELECT a.*, c.name AS category_name,
               (SELECT COUNT(*) FROM trainee_coaching_assignments t WHERE t.activity_id = a.id) AS assignment_count
        FROM coaching_activities a
        JOIN evaluation_categories c ON c.id = a.category_id
        WHERE {' AND '.join(clauses)}
        ORDER BY c.sort_order, a.title
        """,
        tuple(params),
    ).fetchall()
    return rows_to_dicts(rows)


def get_activity(conn, org_id: int, activity_id: Any) -> Dict[str, Any]:
    return snapshot_row(get_scoped_row(conn, "coaching_activities", org_id, activity_id, "Coaching activity"))


def _activity_fields(conn, org_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    category_id = v.integer(form, "category_id", "Category")
    if not category_id:
        raise ValidationError("Category is required.")
    get_scoped_row(conn, "evaluation_categories", org_id, category_id, "Evaluation category")
    return {
        "category_id": category_id,
        "title": v.text(form, "title", "Title", max_len=200, required=True),
        "description": v.text(form, "description", "Description", max_len=1000),
        "activity_type": v.choice(form, "activity_type", "Type", ACTIVITY_TYPES, default="reading"),
        "content": v.text(form, "content", "Content", max_len=20000),
        "difficulty": v.choice(form, "difficulty", "Difficulty", DIFFICULTIES, default="basic"),
        "estimated_mins": v.integer(form, "estimated_mins", "Estimated minutes", default=15, minimum=1, maximum=480),
        "is_active": v.flag(form, "is_active", default=True),
    }


def create_activity(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _activity_fields(conn, org_id, form)
    columns = list(fields.keys())
    cur = conn.execute(
        f"""
        INSERT INTO coaching_activities (organization_id, {', '.join(columns)}, created_at, updated_at)
        VALUES (?, {', '.join('?' for _ in columns)}, ?, ?)
        """,
        (org_id, *fields.values(), iso(), iso()),
    )
    activity_id = int(cur.lastrowid)
    log_action(conn, org_id, actor_id, "CREATE", "CoachingActivity", activity_id, f'Created coaching activity "{fields["title"]}"')
    return {"activity_id": activity_id}


def update_activity(conn, org_id: int, actor_id: int, activity_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = get_activity(conn, org_id, activity_id)
    fields = _activity_fields(conn, org_id, form)
    assignments = ", ".join(f"{c} = ?" for c in fields)
    conn.execute(
        f"UPDATE coaching_activities SET {assignments}, updated_at = ? WHERE id = ?",
        (*fields.values(), iso(), before["id"]),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "CoachingActivity", before["id"],
        f'Updated coaching activity "{fields["title"]}"', compute_changes(before, fields, fields.keys()),
    )
    return {"activity_id": before["id"]}


def delete_activity(conn, org_id: int, actor_id: int, activity_id: Any) -> Dict[str, Any]:
    activity = get_activity(conn, org_id, activity_id)
    conn.execute("DELETE FROM coaching_activities WHERE id = ?", (activity["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "CoachingActivity", activity["id"], f'Deleted coaching activity "{activity["title"]}"')
    return {"activity_id": activity["id"]}


def assign_coaching_for_dor(conn, org_id: int, evaluation_id: int) -> int:
    """Assign active activities for every category the DOR rated poorly.

    Activities the trainee already has assigned or in progress are skipped,
    so a completed activity can be assigned again by a later DOR. Returns the
    number of new assignments.
    """
    dor = conn.execute(
        "SELECT id, trainee_id FROM daily_evaluations WHERE id = ? AND organization_id = ?",
        (evaluation_id, org_id),
    ).fetchone()
    if not dor:
        return 0
    poor = [
        int(r["category_id"])
        for r in conn.execute(
            "SELECT category_id FROM evaluation_ratings WHERE evaluation_id = ? AND rating <= ?",
            (dor["id"], POOR_SCORE_THRESHOLD),
        ).fetchall()
    ]
    if not poor:
        return 0
    activities = conn.execute(
        f"""
        SELECT id FROM coaching_activities
        WHERE organization_id = ? AND is_active = 1 AND category_id IN ({', '.join('?' for _ in poor)})
        ORDER BY id
        """,
        (org_id, *poor),
    ).fetchall()
    in_flight = {
        int(r["activity_id"])
        for r in conn.execute(
            "SELECT activity_id FROM trainee_coaching_assignments WHERE trainee_id = ? AND status IN ('assigned', 'in_progress')",
            (dor["trainee_id"],),
        ).fetchall()
    }
    created = 0
    for activity in activities:
        if int(activity["id"]) in in_flight:
            continue
        conn.execute(
            """
            INSERT INTO trainee_coaching_assignments (organization_id, trainee_id, activity_id, evaluation_id, status, progress, created_at)
            VALUES (?, ?, ?, ?, 'assigned', 0, ?)
            """,
            (org_id, dor["trainee_id"], activity["id"], dor["id"], iso()),
        )
        in_flight.add(int(activity["id"]))
        created += 1
    if created:
        logger.info("Assigned %s coaching activities to trainee %s from DOR %s", created, dor["trainee_id"], dor["id"])
    return created


def trainee_assignments(conn, org_id: int, trainee_id: int, status: Optional[str] = None) -> List[Dict[str, Any]]:
    clauses = ["t.organization_id = ?", "t.trainee_id = ?"]
    params: List[Any] = [org_id, trainee_id]
    if status in ASSIGNMENT_STATUSES:
        clauses.append("t.status = ?")
        params.append(status)
    rows = conn.execute(
        f"""
        SELECT t.*, a.title, a.description, a.activity_type, a.content, a.difficulty, a.estimated_mins,
               c.name AS category_name, e.evaluation_date
        FROM trainee_coaching_assignments t
        JOIN coaching_activities a ON a.id = t.activity_id
        JOIN evaluation_categories c ON c.id = a.category_id
        LEFT JOIN daily_evaluations e ON e.id = t.evaluation_id
        WHERE {' AND '.join(clauses)}
        ORDER BY CASE t.status WHEN 'in_progress' THEN 0 WHEN 'assigned' THEN 1 ELSE 2 END, t.created_at DESC
        """,
        tuple(params),
    ).fetchall()
    return rows_to_dicts(rows)


def _own_assignment(conn, org_id: int, trainee_id: int, assignment_id: Any) -> Dict[str, Any]:
    assignment = snapshot_row(get_scoped_row(conn, "trainee_coaching_assignments", org_id, assignment_id, "Assignment"))
    if int(assignment["trainee_id"]) != int(trainee_id):
        raise PermissionDenied("Not your assignment.")
    return assignment


def start_assignment(conn, org_id: int, trainee_id: int, assignment_id: Any) -> Dict[str, Any]:
    assignment = _own_assignment(conn, org_id, trainee_id, assignment_id)
    if assignment["status"] == "completed":
        raise ValidationError("Already completed.")
    started_at = assignment["started_at"] or iso()
    conn.execute(
        "UPDATE trainee_coaching_assignments SET status = 'in_progress', started_at = ? WHERE id = ?",
        (started_at, assignment["id"]),
    )
    return {"assignment_id": assignment["id"], "status": "in_progress"}


def update_progress(conn, org_id: int, trainee_id: int, assignment_id: Any, progress: Any) -> Dict[str, Any]:
    assignment = _own_assignment(conn, org_id, trainee_id, assignment_id)
    if assignment["status"] == "completed":
        raise ValidationError("Already completed.")
    value = clamp_int(progress, 0, 0, 100)
    conn.execute("UPDATE trainee_coaching_assignments SET progress = ? WHERE id = ?", (value, assignment["id"]))
    return {"assignment_id": assignment["id"], "progress": value}


def complete_assignment(
    conn, org_id: int, trainee_id: int, assignment_id: Any, response: Any = None, score: Any = None
) -> Dict[str, Any]:
    assignment = _own_assignment(conn, org_id, trainee_id, assignment_id)
    score_value = to_float(score)
    if score_value is not None and not 0 <= score_value <= 100:
        raise ValidationError("Score must be between 0 and 100.")
    text = str(response or "").strip()[:5000] or None
    conn.execute(
        """
        UPDATE trainee_coaching_assignments
        SET status = 'completed', progress = 100, completed_at = ?, response = ?, score = ?,
            started_at = COALESCE(started_at, ?)
        WHERE id = ?
        """,
        (iso(), text, score_value, iso(), assignment["id"]),
    )
    log_action(conn, org_id, trainee_id, "COMPLETE", "CoachingAssignment", assignment["id"], "Trainee completed coaching activity")
    return {"assignment_id": assignment["id"], "status": "completed"}


def coaching_summary(conn, org_id: int, trainee_id: int) -> Dict[str, Any]:
    rows = conn.execute(
        """
        SELECT status, COUNT(*) AS total FROM trainee_coaching_assignments
        WHERE organization_id = ? AND trainee_id = ?
        GROUP BY status
        """,
        (org_id, trainee_id),
    ).fetchall()
    counts = {status: 0 for status in ASSIGNMENT_STATUSES}
    for row in rows:
        counts[row["status"]] = int(row["total"])
    total = sum(counts.values())
    return {
        "total": total,
        "assigned": counts["assigned"],
        "in_progress": counts["in_progress"],
        "completed": counts["completed"],
        "completion_rate": round_half_up(counts["completed"] / total * 100, 1) if total else 100.0,
    }
