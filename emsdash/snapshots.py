"""Frozen trainee progress reports shared through a public token link."""

from __future__ import annotations

import datetime as dt
import json
import logging
import secrets
from typing import Any, Dict, List

from emsdash import config
from emsdash.audit import log_action
from emsdash.coaching import coaching_summary
from emsdash.db import get_scoped_row
from emsdash.errors import NotFoundError, ValidationError
from emsdash.field_training import get_trainee, trainee_phase_progress
from emsdash.skills import trainee_skill_progress
from emsdash.utils import iso, parse_json_object, round_half_up, rows_to_dicts, snapshot_row, to_int, utcnow

logger = logging.getLogger(__name__)

TREND_POINTS = 20


def _dor_summary(conn, org_id: int, trainee_id: int) -> Dict[str, Any]:
    dors = rows_to_dicts(
        conn.execute(
            """
            SELECT evaluation_date, overall_rating, nrt_flag, rem_flag, recommend_action
            FROM daily_evaluations
            WHERE organization_id = ? AND trainee_id = ? AND status = 'submitted'
            ORDER BY evaluation_date DESC, id DESC
            """,
            (org_id, trainee_id),
        ).fetchall()
    )
    ratings = conn.execute(
        """
        SELECT c.name, r.rating
        FROM evaluation_ratings r
        JOIN daily_evaluations e ON e.id = r.evaluation_id
        JOIN evaluation_categories c ON c.id = r.category_id
        WHERE e.organization_id = ? AND e.trainee_id = ? AND e.status = 'submitted'
        """,
        (org_id, trainee_id),
    ).fetchall()
    by_category: Dict[str, List[int]] = {}
    for row in ratings:
        by_category.setdefault(row["name"], []).append(int(row["rating"]))
    averages = sorted(
        (
            {"name": name, "average": round_half_up(sum(values) / len(values), 1), "count": len(values)}
            for name, values in by_category.items()
        ),
        key=lambda item: item["average"],
    )
    recommendations: Dict[str, int] = {}
    for dor in dors:
        recommendations[dor["recommend_action"]] = recommendations.get(dor["recommend_action"], 0) + 1
    average_overall = round_half_up(sum(float(d["overall_rating"]) for d in dors) / len(dors), 1) if dors else 0.0
    return {
        "total_count": len(dors),
        "average_overall": average_overall,
        "rating_trend": [
            {"date": d["evaluation_date"], "rating": d["overall_rating"]} for d in reversed(dors[:TREND_POINTS])
        ],
        "category_averages": averages,
        "best_categories": sorted(averages, key=lambda item: item["average"], reverse=True)[:3],
        "worst_categories": averages[:3],
        "nrt_count": sum(1 for d in dors if d["nrt_flag"]),
        "rem_count": sum(1 for d in dors if d["rem_flag"]),
        "recommendations": [{"action": action, "count": count} for action, count in recommendations.items()],
    }


def build_trainee_snapshot(conn, org_id: int, trainee_id: Any, creator_name: str) -> Dict[str, Any]:
    """Collect a trainee's profile, DOR, phase, skill and coaching progress into one JSON-ready dict."""
    trainee = get_trainee(conn, org_id, trainee_id)
    division = None
    if trainee["division_id"]:
        row = conn.execute("SELECT name FROM divisions WHERE id = ?", (trainee["division_id"],)).fetchone()
        division = row["name"] if row else None
    phases = trainee_phase_progress(conn, org_id, trainee["id"])
    current = next((p["name"] for p in phases if p["status"] == "in_progress"), None)
    skills = trainee_skill_progress(conn, org_id, trainee["id"])
    return {
        "generated_at": iso(),
        "creator_name": creator_name,
        "profile": {
            "name": trainee["name"],
            "employee_id": trainee["employee_id"],
            "division": division,
            "hire_date": trainee["hire_date"],
            "start_date": trainee["start_date"],
            "current_phase": current,
            "trainee_status": trainee["trainee_status"],
        },
        "dor_summary": _dor_summary(conn, org_id, trainee["id"]),
        "phase_progress": {
            "phases": [
                {"name": p["name"], "status": p["status"], "started_at": p["start_date"], "completed_at": p["end_date"]}
                for p in phases
            ],
            "completed_count": sum(1 for p in phases if p["status"] == "completed"),
            "total_count": len(phases),
        },
        "skill_progress": {
            "categories": [
                {"name": c["name"], "completed": c["signed_off"], "total": c["total"]} for c in skills["categories"]
            ],
            "completed_count": skills["signed_off"],
            "total_count": skills["total"],
        },
        "coaching_progress": coaching_summary(conn, org_id, trainee["id"]),
    }


def create_snapshot(conn, org_id: int, actor_id: int, trainee_id: Any, days: Any = None) -> Dict[str, Any]:
    creator = conn.execute("SELECT first_name, last_name FROM users WHERE id = ?", (actor_id,)).fetchone()
    creator_name = f"{creator['first_name']} {creator['last_name']}".strip() if creator else "System"
    lifetime = config.SNAPSHOT_DAYS if days in (None, "") else to_int(days)
    if lifetime is None or lifetime < 1 or lifetime > 365:
        raise ValidationError("Snapshots must expire within 1 to 365 days.")
    data = build_trainee_snapshot(conn, org_id, trainee_id, creator_name)
    token = secrets.token_urlsafe(24)
    title = f"{data['profile']['name']}: Progress Report"
    expires_at = iso(utcnow() + dt.timedelta(days=lifetime))
    cur = conn.execute(
        """
        INSERT INTO trainee_snapshots (organization_id, trainee_id, token, title, snapshot_json, created_by, expires_at, is_active, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?)
        """,
        (org_id, to_int(trainee_id), token, title, json.dumps(data, default=str), actor_id, expires_at, iso()),
    )
    log_action(conn, org_id, actor_id, "CREATE", "TraineeSnapshot", cur.lastrowid, f"Created snapshot report for {data['profile']['name']}")
    return {"snapshot_id": int(cur.lastrowid), "token": token, "title": title, "expires_at": expires_at}


def create_bulk_snapshots(conn, org_id: int, actor_id: int, trainee_ids: List[Any], days: Any = None) -> Dict[str, Any]:
    created = []
    errors = []
    for trainee_id in trainee_ids:
        try:
            created.append(dict(create_snapshot(conn, org_id, actor_id, trainee_id, days), trainee_id=to_int(trainee_id)))
        except NotFoundError as exc:
            errors.append({"trainee_id": trainee_id, "message": exc.message})
    return {"snapshots": created, "errors": errors}


def list_snapshots(conn, org_id: int, trainee_id: Any = None) -> List[Dict[str, Any]]:
    clauses = ["s.organization_id = ?"]
    params: List[Any] = [org_id]
    if to_int(trainee_id):
        clauses.append("s.trainee_id = ?")
        params.append(to_int(trainee_id))
    rows = conn.execute(
        f"""
        SELECT s.id, s.trainee_id, s.token, s.title, s.expires_at, s.is_active, s.created_at,
               TRIM(u.first_name || ' ' || u.last_name) AS trainee_name
        FROM trainee_snapshots s JOIN users u ON u.id = s.trainee_id
        WHERE {' AND '.join(clauses)}
        ORDER BY s.created_at DESC
        """,
        tuple(params),
    ).fetchall()
    snapshots = rows_to_dicts(rows)
    now = iso()
    for snap in snapshots:
        snap["is_expired"] = bool(snap["expires_at"] and snap["expires_at"] < now)
    return snapshots


def revoke_snapshot(conn, org_id: int, actor_id: int, snapshot_id: Any) -> Dict[str, Any]:
    snap = snapshot_row(get_scoped_row(conn, "trainee_snapshots", org_id, snapshot_id, "Snapshot"))
    conn.execute("UPDATE trainee_snapshots SET is_active = 0 WHERE id = ?", (snap["id"],))
    log_action(conn, org_id, actor_id, "REVOKE", "TraineeSnapshot", snap["id"], f"Revoked snapshot \"{snap['title']}\"")
    return {"snapshot_id": snap["id"]}


def shared_snapshot(conn, token: str) -> Dict[str, Any]:
    row = conn.execute(
        "SELECT title, snapshot_json, expires_at, created_at FROM trainee_snapshots WHERE token = ? AND is_active = 1",
        (str(token or ""),),
    ).fetchone()
    if not row or (row["expires_at"] and row["expires_at"] < iso()):
        raise NotFoundError("Snapshot")
    return {
        "title": row["title"],
        "created_at": row["created_at"],
        "expires_at": row["expires_at"],
        "data": parse_json_object(row["snapshot_json"]),
    }
