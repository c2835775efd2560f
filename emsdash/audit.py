"""Audit trail: write, diff and query."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from emsdash.pagination import paginated_query
from emsdash.utils import iso, parse_date, rows_to_dicts, to_int

logger = logging.getLogger(__name__)

AUDIT_ACTIONS = [
    "CREATE",
    "UPDATE",
    "DELETE",
    "CSV_IMPORT",
    "LOGIN",
    "LOGOUT",
    "REGISTER",
    "APPROVE",
    "REJECT",
    "PASSWORD_CHANGE",
    "PASSWORD_RESET",
    "SUBMIT",
    "ACKNOWLEDGE",
    "SIGNOFF",
    "ADVANCE",
    "REVOKE",
    "COMPLETE",
]


def log_action(
    conn,
    organization_id: Optional[int],
    user_id: Optional[int],
    action: str,
    entity: Optional[str] = None,
    entity_id: Optional[object] = None,
    details: Optional[str] = None,
    changes: Optional[Dict[str, Any]] = None,
) -> None:
    """Record an audit event. Failures are logged and never interrupt the caller."""
    try:
        conn.execute(
            """
            INSERT INTO audit_log (organization_id, user_id, action, entity, entity_id, details, changes, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                organization_id,
                user_id,
                action,
                entity,
                None if entity_id is None else str(entity_id),
                (details or None) and str(details)[:1000],
                json.dumps(changes, default=str) if changes else None,
                iso(),
            ),
        )
    except Exception:
        logger.exception("Failed to write audit log entry %s %s %s", action, entity, entity_id)


def compute_changes(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    fields: Optional[Iterable[str]] = None,
) -> Optional[Dict[str, Dict[str, Any]]]:
    """Return the fields that differ as ``{"before": {...}, "after": {...}}``, or None."""
    relevant = list(fields) if fields is not None else list(after.keys())
    changed_before: Dict[str, Any] = {}
    changed_after: Dict[str, Any] = {}
    for field in relevant:
        old_val = before.get(field)
        new_val = after.get(field)
        if json.dumps(old_val, default=str) != json.dumps(new_val, default=str):
            changed_before[field] = old_val
            changed_after[field] = new_val
    if not changed_after and not changed_before:
        return None
    return {"before": changed_before, "after": changed_after}


def parse_audit_changes(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def list_audit_log(
    conn,
    org_id: int,
    filters: Mapping[str, Any],
    page: int,
    page_size: int,
) -> Dict[str, Any]:
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
    user_id = to_int(filters.get("user_id"))
    if user_id:
        clauses.append("a.user_id = ?")
        params.append(user_id)
    date_from = parse_date(filters.get("from"))
    if date_from:
        clauses.append("a.created_at >= ?")
        params.append(date_from)
    date_to = parse_date(filters.get("to"))
    if date_to:
        clauses.append("a.created_at <= ?")
        params.append(f"{date_to}T23:59:59+00:00")
    search = str(filters.get("q") or "").strip()
    if search:
        clauses.append("LOWER(COALESCE(a.details, '')) LIKE ?")
        params.append(f"%{search.lower()}%")

    base_sql = f"""
        SELECT a.id, a.action, a.entity, a.entity_id, a.details, a.changes, a.created_at,
               a.user_id, u.email AS user_email
        FROM audit_log a
        LEFT JOIN users u ON u.id = a.user_id
        WHERE {' AND '.join(clauses)}
    """
    result = paginated_query(conn, base_sql, params, page, page_size, order_by="a.id DESC")
    items = rows_to_dicts(result["items"])
    for item in items:
        item["changes"] = parse_audit_changes(item.get("changes"))
    return {"items": items, "pagination": result["pagination"]}


def entity_history(conn, org_id: int, entity: str, entity_id: object, limit: int = 100) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT a.id, a.action, a.details, a.changes, a.created_at, u.email AS user_email
        FROM audit_log a
        LEFT JOIN users u ON u.id = a.user_id
        WHERE a.organization_id = ? AND a.entity = ? AND a.entity_id = ?
        ORDER BY a.id DESC
        LIMIT ?
        """,
        (org_id, entity, str(entity_id), limit),
    ).fetchall()
    items = rows_to_dicts(rows)
    for item in items:
        item["changes"] = parse_audit_changes(item.get("changes"))
    return items
