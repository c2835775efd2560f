"""CSV report exports: DORs, training progress, audit log and user roster.

Metric entries export from :mod:`emsdash.entries`. Every report here reads
its filters from a query-string mapping, ignores filters it cannot parse, and
returns the CSV text for :func:`emsdash.http.csv_response`.
"""

from __future__ import annotations

import csv
import io
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from emsdash.auth import display_name
from emsdash.permissions import USER_ROLES
from emsdash.utils import parse_date, query_scalar, snapshot_row, to_int

logger = logging.getLogger(__name__)

DOR_COLUMNS = [
    "date",
    "trainee_name",
    "trainee_employee_id",
    "fto_name",
    "fto_employee_id",
    "phase",
    "overall_rating",
    "narrative",
    "most_satisfactory",
    "least_satisfactory",
    "recommend_action",
    "nrt_flag",
    "rem_flag",
    "trainee_acknowledged",
    "status",
]

TRAINING_PROGRESS_COLUMNS = [
    "trainee_name",
    "trainee_employee_id",
    "trainee_email",
    "trainee_status",
    "division",
    "hire_date",
    "start_date",
    "completion_date",
    "total_dors",
    "avg_overall_rating",
    "skills_completed",
    "total_skills",
    "skills_percent",
    "phases_completed",
    "total_phases",
    "coaching_assigned",
    "coaching_completed",
    "current_fto",
]

AUDIT_COLUMNS = ["timestamp", "action", "entity", "entity_id", "details", "user_email"]

ROSTER_COLUMNS = [
    "name",
    "email",
    "role",
    "status",
    "employee_id",
    "badge_number",
    "division",
    "last_login_at",
    "created_at",
]

AUDIT_EXPORT_LIMIT = 5000


def _write_csv(columns: Sequence[str], rows: Iterable[Mapping[str, Any]]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=list(columns), restval="")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()


def _yes_no(value: Any) -> str:
    return "Yes" if value else "No"


def _day(value: Optional[str]) -> str:
    return str(value or "")[:10]


def _timestamp(value: Optional[str]) -> str:
    return str(value or "")[:19].replace("T", " ")


def _date_clauses(
    column: str, filters: Mapping[str, Any], clauses: List[str], params: List[Any], end_suffix: str = ""
) -> None:
    start = parse_date(filters.get("from"))
    if start:
        clauses.append(f"{column} >= ?")
        params.append(start)
    end = parse_date(filters.get("to"))
    if end:
        clauses.append(f"{column} <= ?")
        params.append(f"{end}{end_suffix}")


# DORs


def export_dor_csv(conn, org_id: int, filters: Mapping[str, Any]) -> str:
    """One row per DOR, newest first, with a ``rating_<category>`` column per category."""
    clauses = ["e.organization_id = ?"]
    params: List[Any] = [org_id]
    for key in ("trainee_id", "fto_id", "phase_id"):
        value = to_int(filters.get(key))
        if value:
            clauses.append(f"e.{key} = ?")
            params.append(value)
    _date_clauses("e.evaluation_date", filters, clauses, params)
    rows = conn.execute(
        f"""
        SELECT e.*, t.first_name AS trainee_first, t.last_name AS trainee_last, t.employee_id AS trainee_employee_id,
               f.first_name AS fto_first, f.last_name AS fto_last, f.employee_id AS fto_employee_id,
               p.name AS phase_name
        FROM daily_evaluations e
        JOIN users t ON t.id = e.trainee_id
        JOIN users f ON f.id = e.fto_id
        LEFT JOIN training_phases p ON p.id = e.phase_id
        WHERE {' AND '.join(clauses)}
        ORDER BY e.evaluation_date DESC, e.id DESC
        """,
        tuple(params),
    ).fetchall()
    categories = conn.execute(
        "SELECT id, name FROM evaluation_categories WHERE organization_id = ? ORDER BY sort_order, name",
        (org_id,),
    ).fetchall()
    rating_columns = {int(c["id"]): f"rating_{c['name']}" for c in categories}

    ratings: Dict[int, Dict[str, Any]] = {}
    if rows:
        ids = [int(r["id"]) for r in rows]
        for rating in conn.execute(
            f"SELECT evaluation_id, category_id, rating FROM evaluation_ratings WHERE evaluation_id IN ({', '.join('?' for _ in ids)})",
            tuple(ids),
        ).fetchall():
            column = rating_columns.get(int(rating["category_id"]))
            if column:
                ratings.setdefault(int(rating["evaluation_id"]), {})[column] = rating["rating"]

    def _rows():
        for row in rows:
            record = {
                "date": _day(row["evaluation_date"]),
                "trainee_name": f"{row['trainee_first']} {row['trainee_last']}".strip(),
                "trainee_employee_id": row["trainee_employee_id"] or "",
                "fto_name": f"{row['fto_first']} {row['fto_last']}".strip(),
                "fto_employee_id": row["fto_employee_id"] or "",
                "phase": row["phase_name"] or "",
                "overall_rating": row["overall_rating"],
                "narrative": row["narrative"] or "",
                "most_satisfactory": row["most_satisfactory"] or "",
                "least_satisfactory": row["least_satisfactory"] or "",
                "recommend_action": row["recommend_action"],
                "nrt_flag": _yes_no(row["nrt_flag"]),
                "rem_flag": _yes_no(row["rem_flag"]),
                "trainee_acknowledged": _yes_no(row["trainee_acknowledged"]),
                "status": row["status"],
            }
            record.update(ratings.get(int(row["id"]), {}))
            yield record

    return _write_csv(DOR_COLUMNS + list(rating_columns.values()), _rows())


# Training progress


def export_training_progress_csv(conn, org_id: int, filters: Mapping[str, Any]) -> str:
    """One row per trainee with DOR, skill, phase and coaching totals."""
    clauses = ["m.organization_id = ?", "m.role = 'trainee'"]
    params: List[Any] = [org_id]
    trainee_id = to_int(filters.get("trainee_id"))
    if trainee_id:
        clauses.append("u.id = ?")
        params.append(trainee_id)
    status = str(filters.get("status") or "").strip()
    if status:
        clauses.append("u.trainee_status = ?")
        params.append(status)
    trainees = conn.execute(
        f"""
        SELECT u.id, u.email, u.first_name, u.last_name, u.employee_id, u.trainee_status,
               u.hire_date, u.start_date, u.completion_date, dv.name AS division_name
        FROM users u
        JOIN memberships m ON m.user_id = u.id
        LEFT JOIN divisions dv ON dv.id = u.division_id
        WHERE {' AND '.join(clauses)}
        ORDER BY u.last_name, u.first_name
        """,
        tuple(params),
    ).fetchall()
    total_skills = query_scalar(conn, "SELECT COUNT(*) FROM skills WHERE organization_id = ? AND is_active = 1", (org_id,))
    total_phases = query_scalar(
        conn, "SELECT COUNT(*) FROM training_phases WHERE organization_id = ? AND is_active = 1", (org_id,)
    )

    def _rows():
        for trainee in trainees:
            tid = int(trainee["id"])
            dors = conn.execute(
                "SELECT COUNT(*) AS total, AVG(overall_rating) AS average FROM daily_evaluations WHERE trainee_id = ?",
                (tid,),
            ).fetchone()
            skills_completed = query_scalar(conn, "SELECT COUNT(*) FROM skill_signoffs WHERE trainee_id = ?", (tid,))
            phases_completed = query_scalar(
                conn, "SELECT COUNT(*) FROM trainee_phases WHERE trainee_id = ? AND status = 'completed'", (tid,)
            )
            coaching = conn.execute(
                """
                SELECT COUNT(*) AS assigned, SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed
                FROM trainee_coaching_assignments WHERE trainee_id = ?
                """,
                (tid,),
            ).fetchone()
            ftos = conn.execute(
                """
                SELECT u.first_name, u.last_name FROM training_assignments a JOIN users u ON u.id = a.fto_id
                WHERE a.trainee_id = ? AND a.status = 'active' ORDER BY a.start_date DESC
                """,
                (tid,),
            ).fetchall()
            total_dors = int(dors["total"] or 0)
            yield {
                "trainee_name": f"{trainee['first_name']} {trainee['last_name']}".strip(),
                "trainee_employee_id": trainee["employee_id"] or "",
                "trainee_email": trainee["email"],
                "trainee_status": trainee["trainee_status"] or "",
                "division": trainee["division_name"] or "",
                "hire_date": _day(trainee["hire_date"]),
                "start_date": _day(trainee["start_date"]),
                "completion_date": _day(trainee["completion_date"]),
                "total_dors": total_dors,
                "avg_overall_rating": f"{float(dors['average']):.2f}" if total_dors else "",
                "skills_completed": skills_completed,
                "total_skills": total_skills,
                "skills_percent": f"{skills_completed / total_skills * 100:.1f}%" if total_skills else "0%",
                "phases_completed": phases_completed,
                "total_phases": total_phases,
                "coaching_assigned": int(coaching["assigned"] or 0),
                "coaching_completed": int(coaching["completed"] or 0),
                "current_fto": ", ".join(f"{f['first_name']} {f['last_name']}".strip() for f in ftos),
            }

    return _write_csv(TRAINING_PROGRESS_COLUMNS, _rows())


# Audit log


def export_audit_csv(conn, org_id: int, filters: Mapping[str, Any]) -> str:
    """Newest events first, capped at ``AUDIT_EXPORT_LIMIT`` rows."""
    clauses = ["a.organization_id = ?"]
    params: List[Any] = [org_id]
    action = str(filters.get("action") or "").strip().upper()
    if action:
        clauses.append("a.action = ?")
        params.append(action)
    entity = str(filters.get("entity") or "").strip()
    if entity:
        clauses.append("a.entity = ?")
        params.append(entity)
    _date_clauses("a.created_at", filters, clauses, params, end_suffix="T23:59:59+00:00")
    rows = conn.execute(
        f"""
        SELECT a.created_at, a.action, a.entity, a.entity_id, a.details, u.email AS user_email
        FROM audit_log a
        LEFT JOIN users u ON u.id = a.user_id
        WHERE {' AND '.join(clauses)}
        ORDER BY a.id DESC
        LIMIT ?
        """,
        (*params, AUDIT_EXPORT_LIMIT),
    ).fetchall()
    if len(rows) == AUDIT_EXPORT_LIMIT:
        logger.info("Audit export for organization %s truncated at %s rows", org_id, AUDIT_EXPORT_LIMIT)
    return _write_csv(
        AUDIT_COLUMNS,
        (
            {
                "timestamp": _timestamp(row["created_at"]),
                "action": row["action"],
                "entity": row["entity"] or "",
                "entity_id": row["entity_id"] or "",
                "details": row["details"] or "",
                "user_email": row["user_email"] or "",
            }
            for row in rows
        ),
    )


# User roster


def export_user_roster_csv(conn, org_id: int, filters: Mapping[str, Any]) -> str:
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
    rows = conn.execute(
        f"""
        SELECT u.first_name, u.last_name, u.email, u.status, u.employee_id, u.badge_number,
               u.last_login_at, u.created_at, m.role, dv.name AS division_name
        FROM users u
        JOIN memberships m ON m.user_id = u.id
        LEFT JOIN divisions dv ON dv.id = u.division_id
        WHERE {' AND '.join(clauses)}
        ORDER BY u.last_name, u.first_name, u.id
        """,
        tuple(params),
    ).fetchall()
    return _write_csv(
        ROSTER_COLUMNS,
        (
            {
                "name": display_name(snapshot_row(row)),
                "email": row["email"],
                "role": row["role"],
                "status": row["status"],
                "employee_id": row["employee_id"] or "",
                "badge_number": row["badge_number"] or "",
                "division": row["division_name"] or "",
                "last_login_at": _timestamp(row["last_login_at"]),
                "created_at": _day(row["created_at"]),
            }
            for row in rows
        ),
    )
