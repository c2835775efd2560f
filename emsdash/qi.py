"""Quality improvement: campaigns, driver diagrams, PDSA cycles and action items."""

from __future__ import annotations

import datetime as dt
import logging
import secrets
from typing import Any, Dict, List, Mapping, Optional, Sequence

from emsdash import config
from emsdash import validation as v
from emsdash.audit import compute_changes, log_action
from emsdash.dashboard import fetch_entries, metric_series
from emsdash.db import get_scoped_row
from emsdash.errors import NotFoundError, ValidationError
from emsdash.org import _assert_slug_free, _slug_for
from emsdash.utils import iso, round_half_up, rows_to_dicts, snapshot_row, to_int, today, utcnow

logger = logging.getLogger(__name__)

CAMPAIGN_STATUSES = ("planning", "active", "completed", "archived")
DIAGRAM_STATUSES = ("draft", "active", "archived")
NODE_TYPES = ("aim", "primary", "secondary", "changeIdea")
PDSA_STATUSES = ("planning", "doing", "studying", "acting", "completed", "abandoned")
PDSA_FLOW = ("planning", "doing", "studying", "acting", "completed")
PDSA_OUTCOMES = ("adopt", "adapt", "abandon")
ACTION_STATUSES = ("open", "in_progress", "completed", "overdue")
ACTION_PRIORITIES = ("low", "medium", "high", "critical")


def _optional_ref(conn, org_id: int, form: Mapping[str, Any], key: str, table: str, entity: str) -> Optional[int]:
    ref_id = to_int(form.get(key))
    if not ref_id:
        return None
    get_scoped_row(conn, table, org_id, ref_id, entity)
    return ref_id


def _owner_ref(conn, org_id: int, form: Mapping[str, Any], key: str) -> Optional[int]:
    user_id = to_int(form.get(key))
    if not user_id:
        return None
    row = conn.execute(
        "SELECT 1 FROM memberships WHERE user_id = ? AND organization_id = ?", (user_id, org_id)
    ).fetchone()
    if not row:
        raise NotFoundError("User")
    return user_id


def _check_date_order(start: Optional[str], end: Optional[str], label: str = "End date") -> None:
    if start and end and end < start:
        raise ValidationError(f"{label} must be on or after the start date.")


# Campaigns


def list_campaigns(conn, org_id: int, status: Optional[str] = None, active_only: bool = False) -> List[Dict[str, Any]]:
    clauses = ["c.organization_id = ?"]
    params: List[Any] = [org_id]
    if status in CAMPAIGN_STATUSES:
        clauses.append("c.status = ?")
        params.append(status)
    if active_only:
        clauses.append("c.is_active = 1")
    rows = conn.execute(
        f"""
        SELECT c.*, TRIM(u.first_name || ' ' || u.last_name) AS owner_name, m.name AS metric_name,
               (SELECT COUNT(*) FROM driver_diagrams dd WHERE dd.campaign_id = c.id) AS diagram_count,
               (SELECT COUNT(*) FROM action_items ai WHERE ai.campaign_id = c.id) AS action_item_count
        FROM campaigns c
        LEFT JOIN users u ON u.id = c.owner_id
        LEFT JOIN metric_definitions m ON m.id = c.metric_id
        WHERE {' AND '.join(clauses)}
        ORDER BY c.sort_order, c.name
        """,
        tuple(params),
    ).fetchall()
    return rows_to_dicts(rows)


def get_campaign(conn, org_id: int, campaign_id: Any) -> Dict[str, Any]:
    return snapshot_row(get_scoped_row(conn, "campaigns", org_id, campaign_id, "Campaign"))


def _campaign_fields(conn, org_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    name = v.text(form, "name", "Name", max_len=150, required=True)
    fields = {
        "name": name,
        "slug": _slug_for(form, name),
        "description": v.text(form, "description", "Description", max_len=2000),
        "goals": v.text(form, "goals", "Goals", max_len=2000),
        "key_findings": v.text(form, "key_findings", "Key findings", max_len=5000),
        "status": v.choice(form, "status", "Status", CAMPAIGN_STATUSES, default="planning"),
        "owner_id": _owner_ref(conn, org_id, form, "owner_id"),
        "metric_id": _optional_ref(conn, org_id, form, "metric_id", "metric_definitions", "Metric"),
        "division_id": _optional_ref(conn, org_id, form, "division_id", "divisions", "Division"),
        "region_id": _optional_ref(conn, org_id, form, "region_id", "regions", "Region"),
        "start_date": v.date(form, "start_date", "Start date"),
        "end_date": v.date(form, "end_date", "End date"),
        "sort_order": v.integer(form, "sort_order", "Sort order", default=0, minimum=0),
    }
    _check_date_order(fields["start_date"], fields["end_date"])
    return fields


CAMPAIGN_COLUMNS = (
    "name", "slug", "description", "goals", "key_findings", "status", "owner_id",
    "metric_id", "division_id", "region_id", "start_date", "end_date", "sort_order",
)


def create_campaign(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _campaign_fields(conn, org_id, form)
    _assert_slug_free(conn, "campaigns", org_id, fields["slug"], "campaign")
    cur = conn.execute(
        f"""
        INSERT INTO campaigns (organization_id, {', '.join(CAMPAIGN_COLUMNS)}, is_active, created_at, updated_at)
        VALUES (?, {', '.join('?' for _ in CAMPAIGN_COLUMNS)}, 1, ?, ?)
        """,
        (org_id, *[fields[c] for c in CAMPAIGN_COLUMNS], iso(), iso()),
    )
    campaign_id = int(cur.lastrowid)
    log_action(conn, org_id, actor_id, "CREATE", "Campaign", campaign_id, f'Created campaign "{fields["name"]}"')
    return {"campaign_id": campaign_id, "slug": fields["slug"]}


def update_campaign(conn, org_id: int, actor_id: int, campaign_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = get_campaign(conn, org_id, campaign_id)
    fields = _campaign_fields(conn, org_id, form)
    _assert_slug_free(conn, "campaigns", org_id, fields["slug"], "campaign", exclude_id=before["id"])
    assignments = ", ".join(f"{c} = ?" for c in CAMPAIGN_COLUMNS)
    conn.execute(
        f"UPDATE campaigns SET {assignments}, updated_at = ? WHERE id = ? AND organization_id = ?",
        (*[fields[c] for c in CAMPAIGN_COLUMNS], iso(), before["id"], org_id),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "Campaign", before["id"],
        f'Updated campaign "{fields["name"]}"', compute_changes(before, fields, CAMPAIGN_COLUMNS),
    )
    return {"campaign_id": before["id"], "slug": fields["slug"]}


def set_campaign_active(conn, org_id: int, actor_id: int, campaign_id: Any, active: bool) -> Dict[str, Any]:
    campaign = get_campaign(conn, org_id, campaign_id)
    conn.execute("UPDATE campaigns SET is_active = ?, updated_at = ? WHERE id = ?", (1 if active else 0, iso(), campaign["id"]))
    verb = "Activated" if active else "Deactivated"
    log_action(conn, org_id, actor_id, "UPDATE", "Campaign", campaign["id"], f'{verb} campaign "{campaign["name"]}"')
    return {"campaign_id": campaign["id"]}


def delete_campaign(conn, org_id: int, actor_id: int, campaign_id: Any) -> Dict[str, Any]:
    campaign = get_campaign(conn, org_id, campaign_id)
    conn.execute("DELETE FROM campaigns WHERE id = ? AND organization_id = ?", (campaign["id"], org_id))
    log_action(conn, org_id, actor_id, "DELETE", "Campaign", campaign["id"], f'Deleted campaign "{campaign["name"]}"')
    return {"campaign_id": campaign["id"]}


def assign_diagram_to_campaign(conn, org_id: int, actor_id: int, diagram_id: Any, campaign_id: Any) -> Dict[str, Any]:
    diagram = get_diagram(conn, org_id, diagram_id)
    target = get_campaign(conn, org_id, campaign_id)["id"] if to_int(campaign_id) else None
    conn.execute("UPDATE driver_diagrams SET campaign_id = ?, updated_at = ? WHERE id = ?", (target, iso(), diagram["id"]))
    details = f'Assigned diagram "{diagram["name"]}" to campaign' if target else f'Removed diagram "{diagram["name"]}" from campaign'
    log_action(conn, org_id, actor_id, "UPDATE", "DriverDiagram", diagram["id"], details)
    return {"diagram_id": diagram["id"], "campaign_id": target}


def _action_item_state(item: Mapping[str, Any], on: Optional[dt.date] = None) -> str:
    """Effective status: open items whose due date has passed read as overdue."""
    status = item["status"]
    if status in ("completed", "overdue"):
        return status
    due = item.get("due_date")
    if due and str(due) < (on or today()).isoformat():
        return "overdue"
    return status


def campaign_report(conn, org_id: int, campaign_id: Any, include_chart: bool = True) -> Dict[str, Any]:
    campaign = get_campaign(conn, org_id, campaign_id)
    owner = conn.execute(
        "SELECT first_name, last_name FROM users WHERE id = ?", (campaign["owner_id"],)
    ).fetchone() if campaign["owner_id"] else None
    campaign["owner_name"] = f"{owner['first_name']} {owner['last_name']}".strip() if owner else None

    diagrams = rows_to_dicts(
        conn.execute(
            """
            SELECT dd.id, dd.name, dd.slug, dd.status,
                   (SELECT COUNT(*) FROM driver_nodes n WHERE n.diagram_id = dd.id) AS node_count
            FROM driver_diagrams dd
            WHERE dd.organization_id = ? AND dd.campaign_id = ?
            ORDER BY dd.sort_order, dd.name
            """,
            (org_id, campaign["id"]),
        ).fetchall()
    )
    diagram_ids = [int(d["id"]) for d in diagrams]
    pdsa_counts = {status: 0 for status in PDSA_STATUSES}
    cycles: List[Dict[str, Any]] = []
    if diagram_ids:
        cycles = rows_to_dicts(
            conn.execute(
                f"""
                SELECT id, title, cycle_number, status, outcome, diagram_id, do_start_date
                FROM pdsa_cycles
                WHERE organization_id = ? AND diagram_id IN ({', '.join('?' for _ in diagram_ids)})
                ORDER BY diagram_id, cycle_number
                """,
                (org_id, *diagram_ids),
            ).fetchall()
        )
        for cycle in cycles:
            pdsa_counts[cycle["status"]] = pdsa_counts.get(cycle["status"], 0) + 1

    items = rows_to_dicts(
        conn.execute(
            "SELECT * FROM action_items WHERE organization_id = ? AND campaign_id = ? ORDER BY due_date IS NULL, due_date, id",
            (org_id, campaign["id"]),
        ).fetchall()
    )
    action_counts = {status: 0 for status in ACTION_STATUSES}
    for item in items:
        item["effective_status"] = _action_item_state(item)
        action_counts[item["effective_status"]] += 1
    completion = round_half_up(action_counts["completed"] / len(items) * 100, 1) if items else 0.0

    chart: List[Dict[str, Any]] = []
    if include_chart and campaign["metric_id"]:
        metric = snapshot_row(conn.execute("SELECT * FROM metric_definitions WHERE id = ?", (campaign["metric_id"],)).fetchone())
        if metric:
            bounds = {}
            if campaign["start_date"]:
                bounds["gte"] = campaign["start_date"]
            if campaign["end_date"]:
                bounds["lte"] = campaign["end_date"]
            entries = fetch_entries(
                conn, org_id, [int(metric["id"])], bounds,
                division_id=campaign["division_id"], region_id=campaign["region_id"],
                department_level=not campaign["division_id"] and not campaign["region_id"],
            )
            chart = metric_series(metric, entries)
            campaign["metric_name"] = metric["name"]
    return {
        "campaign": campaign,
        "diagrams": diagrams,
        "pdsa_cycles": cycles,
        "pdsa_counts": pdsa_counts,
        "pdsa_total": len(cycles),
        "action_items": items,
        "action_counts": action_counts,
        "action_total": len(items),
        "completion_percent": completion,
        "chart_data": chart,
    }


# Share links


def list_share_links(conn, org_id: int, campaign_id: Any) -> List[Dict[str, Any]]:
    campaign = get_campaign(conn, org_id, campaign_id)
    rows = conn.execute(
        "SELECT * FROM campaign_share_links WHERE organization_id = ? AND campaign_id = ? ORDER BY created_at DESC",
        (org_id, campaign["id"]),
    ).fetchall()
    return rows_to_dicts(rows)


def create_share_link(conn, org_id: int, actor_id: int, campaign_id: Any, days: Any = None) -> Dict[str, Any]:
    campaign = get_campaign(conn, org_id, campaign_id)
    lifetime = config.SHARE_LINK_DAYS if days in (None, "") else to_int(days)
    if lifetime is None or lifetime < 1 or lifetime > 365:
        raise ValidationError("Share links must expire within 1 to 365 days.")
    token = secrets.token_urlsafe(24)
    expires_at = iso(utcnow() + dt.timedelta(days=lifetime))
    cur = conn.execute(
        """
        INSERT INTO campaign_share_links (organization_id, campaign_id, token, created_by, expires_at, is_active, created_at)
        VALUES (?, ?, ?, ?, ?, 1, ?)
        """,
        (org_id, campaign["id"], token, actor_id, expires_at, iso()),
    )
    log_action(conn, org_id, actor_id, "CREATE", "CampaignShareLink", cur.lastrowid, f'Created share link for campaign "{campaign["name"]}"')
    return {"link_id": int(cur.lastrowid), "token": token, "expires_at": expires_at}


def revoke_share_link(conn, org_id: int, actor_id: int, link_id: Any) -> Dict[str, Any]:
    link = snapshot_row(get_scoped_row(conn, "campaign_share_links", org_id, link_id, "Share link"))
    conn.execute("UPDATE campaign_share_links SET is_active = 0 WHERE id = ?", (link["id"],))
    log_action(conn, org_id, actor_id, "REVOKE", "CampaignShareLink", link["id"], "Revoked campaign share link")
    return {"link_id": link["id"]}


def shared_campaign_report(conn, token: str) -> Dict[str, Any]:
    """Read-only report behind a share token. Revoked or expired tokens read as missing."""
    row = conn.execute(
        "SELECT * FROM campaign_share_links WHERE token = ? AND is_active = 1", (str(token or ""),)
    ).fetchone()
    if not row or (row["expires_at"] and row["expires_at"] < iso()):
        raise NotFoundError("Share link")
    report = campaign_report(conn, row["organization_id"], row["campaign_id"])
    for item in report["action_items"]:
        item.pop("assignee_id", None)
    report["campaign"].pop("owner_id", None)
    return report


# Driver diagrams


def list_diagrams(conn, org_id: int, campaign_id: Any = None) -> List[Dict[str, Any]]:
    clauses = ["dd.organization_id = ?"]
    params: List[Any] = [org_id]
    if to_int(campaign_id):
        clauses.append("dd.campaign_id = ?")
        params.append(to_int(campaign_id))
    rows = conn.execute(
        f"""
        SELECT dd.*, c.name AS campaign_name, m.name AS metric_name,
               (SELECT COUNT(*) FROM driver_nodes n WHERE n.diagram_id = dd.id) AS node_count,
               (SELECT COUNT(*) FROM pdsa_cycles p WHERE p.diagram_id = dd.id) AS pdsa_count
        FROM driver_diagrams dd
        LEFT JOIN campaigns c ON c.id = dd.campaign_id
        LEFT JOIN metric_definitions m ON m.id = dd.metric_id
        WHERE {' AND '.join(clauses)}
        ORDER BY dd.sort_order, dd.name
        """,
        tuple(params),
    ).fetchall()
    return rows_to_dicts(rows)


def get_diagram(conn, org_id: int, diagram_id: Any) -> Dict[str, Any]:
    return snapshot_row(get_scoped_row(conn, "driver_diagrams", org_id, diagram_id, "Driver diagram"))


def _diagram_fields(conn, org_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    name = v.text(form, "name", "Name", max_len=150, required=True)
    return {
        "name": name,
        "slug": _slug_for(form, name),
        "description": v.text(form, "description", "Description", max_len=2000),
        "status": v.choice(form, "status", "Status", DIAGRAM_STATUSES, default="draft"),
        "metric_id": _optional_ref(conn, org_id, form, "metric_id", "metric_definitions", "Metric"),
        "campaign_id": _optional_ref(conn, org_id, form, "campaign_id", "campaigns", "Campaign"),
        "sort_order": v.integer(form, "sort_order", "Sort order", default=0, minimum=0),
    }


def create_diagram(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _diagram_fields(conn, org_id, form)
    _assert_slug_free(conn, "driver_diagrams", org_id, fields["slug"], "driver diagram")
    cur = conn.execute(
        """
        INSERT INTO driver_diagrams (organization_id, name, slug, description, status, metric_id, campaign_id, sort_order, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
        """,
        (org_id, fields["name"], fields["slug"], fields["description"], fields["status"], fields["metric_id"], fields["campaign_id"], fields["sort_order"], iso(), iso()),
    )
    diagram_id = int(cur.lastrowid)
    log_action(conn, org_id, actor_id, "CREATE", "DriverDiagram", diagram_id, f'Created driver diagram "{fields["name"]}"')
    return {"diagram_id": diagram_id, "slug": fields["slug"]}


def update_diagram(conn, org_id: int, actor_id: int, diagram_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = get_diagram(conn, org_id, diagram_id)
    fields = _diagram_fields(conn, org_id, form)
    _assert_slug_free(conn, "driver_diagrams", org_id, fields["slug"], "driver diagram", exclude_id=before["id"])
    conn.execute(
        """
        UPDATE driver_diagrams SET name = ?, slug = ?, description = ?, status = ?, metric_id = ?, campaign_id = ?, sort_order = ?, updated_at = ?
        WHERE id = ? AND organization_id = ?
        """,
        (fields["name"], fields["slug"], fields["description"], fields["status"], fields["metric_id"], fields["campaign_id"], fields["sort_order"], iso(), before["id"], org_id),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "DriverDiagram", before["id"],
        f'Updated driver diagram "{fields["name"]}"', compute_changes(before, fields, fields.keys()),
    )
    return {"diagram_id": before["id"], "slug": fields["slug"]}


def delete_diagram(conn, org_id: int, actor_id: int, diagram_id: Any) -> Dict[str, Any]:
    diagram = get_diagram(conn, org_id, diagram_id)
    conn.execute("DELETE FROM driver_diagrams WHERE id = ? AND organization_id = ?", (diagram["id"], org_id))
    log_action(conn, org_id, actor_id, "DELETE", "DriverDiagram", diagram["id"], f'Deleted driver diagram "{diagram["name"]}"')
    return {"diagram_id": diagram["id"]}


def diagram_tree(conn, org_id: int, diagram_id: Any) -> Dict[str, Any]:
    """The diagram with its nodes nested under ``children``, siblings in sort order."""
    diagram = get_diagram(conn, org_id, diagram_id)
    nodes = rows_to_dicts(
        conn.execute(
            "SELECT * FROM driver_nodes WHERE diagram_id = ? ORDER BY sort_order, id",
            (diagram["id"],),
        ).fetchall()
    )
    by_id = {int(n["id"]): n for n in nodes}
    roots = []
    for node in nodes:
        node["children"] = []
    for node in nodes:
        parent = by_id.get(int(node["parent_id"])) if node["parent_id"] else None
        if parent is None:
            roots.append(node)
        else:
            parent["children"].append(node)
    diagram["nodes"] = roots
    diagram["node_count"] = len(nodes)
    return diagram


def _node_fields(conn, org_id: int, diagram_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    parent_id = to_int(form.get("parent_id"))
    if parent_id:
        parent = conn.execute(
            "SELECT diagram_id FROM driver_nodes WHERE id = ? AND organization_id = ?", (parent_id, org_id)
        ).fetchone()
        if not parent or int(parent["diagram_id"]) != int(diagram_id):
            raise ValidationError("Parent node does not belong to this diagram.")
    return {
        "parent_id": parent_id,
        "node_type": v.choice(form, "node_type", "Type", NODE_TYPES),
        "text": v.text(form, "text", "Text", max_len=500, required=True),
        "description": v.text(form, "description", "Description", max_len=2000),
        "sort_order": v.integer(form, "sort_order", "Sort order", default=0, minimum=0),
    }


def create_node(conn, org_id: int, actor_id: int, diagram_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    diagram = get_diagram(conn, org_id, diagram_id)
    fields = _node_fields(conn, org_id, diagram["id"], form)
    cur = conn.execute(
        """
        INSERT INTO driver_nodes (organization_id, diagram_id, parent_id, node_type, text, description, sort_order, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (org_id, diagram["id"], fields["parent_id"], fields["node_type"], fields["text"], fields["description"], fields["sort_order"], iso(), iso()),
    )
    node_id = int(cur.lastrowid)
    log_action(conn, org_id, actor_id, "CREATE", "DriverNode", node_id, f'Created {fields["node_type"]} node "{fields["text"]}"')
    return {"node_id": node_id}


def update_node(conn, org_id: int, actor_id: int, node_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = snapshot_row(get_scoped_row(conn, "driver_nodes", org_id, node_id, "Node"))
    fields = _node_fields(conn, org_id, before["diagram_id"], form)
    if fields["parent_id"] and int(fields["parent_id"]) == int(before["id"]):
        raise ValidationError("A node cannot be its own parent.")
    conn.execute(
        """
        UPDATE driver_nodes SET parent_id = ?, node_type = ?, text = ?, description = ?, sort_order = ?, updated_at = ?
        WHERE id = ?
        """,
        (fields["parent_id"], fields["node_type"], fields["text"], fields["description"], fields["sort_order"], iso(), before["id"]),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "DriverNode", before["id"],
        f'Updated node "{fields["text"]}"', compute_changes(before, fields, fields.keys()),
    )
    return {"node_id": before["id"]}


def delete_node(conn, org_id: int, actor_id: int, node_id: Any) -> Dict[str, Any]:
    """Delete a node and, through the parent_id cascade, every descendant."""
    node = snapshot_row(get_scoped_row(conn, "driver_nodes", org_id, node_id, "Node"))
    conn.execute("DELETE FROM driver_nodes WHERE id = ?", (node["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "DriverNode", node["id"], f'Deleted node "{node["text"]}"')
    return {"node_id": node["id"]}


def reorder_nodes(conn, org_id: int, actor_id: int, orders: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    updates = []
    for item in orders:
        node_id = to_int(item.get("id"))
        sort_order = to_int(item.get("sort_order"))
        if not node_id or sort_order is None or sort_order < 0:
            raise ValidationError("Each node needs an id and a non-negative sort order.")
        get_scoped_row(conn, "driver_nodes", org_id, node_id, "Node")
        updates.append((sort_order, iso(), node_id))
    for params in updates:
        conn.execute("UPDATE driver_nodes SET sort_order = ?, updated_at = ? WHERE id = ?", params)
    log_action(conn, org_id, actor_id, "UPDATE", "DriverNode", "bulk", f"Reordered {len(updates)} driver nodes")
    return {"updated": len(updates)}


# PDSA cycles

PDSA_TEXT_FIELDS = (
    ("plan_description", "Plan description"),
    ("plan_prediction", "Prediction"),
    ("plan_data_collection", "Data collection plan"),
    ("do_observations", "Observations"),
    ("study_results", "Results"),
    ("study_learnings", "Learnings"),
    ("act_decision", "Decision"),
    ("act_next_steps", "Next steps"),
)
PDSA_DATE_FIELDS = (
    ("plan_start_date", "Plan start date"),
    ("do_start_date", "Do start date"),
    ("do_end_date", "Do end date"),
    ("study_date", "Study date"),
    ("act_date", "Act date"),
)


def list_pdsa_cycles(conn, org_id: int, diagram_id: Any = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
    clauses = ["p.organization_id = ?"]
    params: List[Any] = [org_id]
    if to_int(diagram_id):
        clauses.append("p.diagram_id = ?")
        params.append(to_int(diagram_id))
    if status in PDSA_STATUSES:
        clauses.append("p.status = ?")
        params.append(status)
    rows = conn.execute(
        f"""
        SELECT p.*, dd.name AS diagram_name, n.text AS change_idea_text, m.name AS metric_name
        FROM pdsa_cycles p
        LEFT JOIN driver_diagrams dd ON dd.id = p.diagram_id
        LEFT JOIN driver_nodes n ON n.id = p.change_idea_node_id
        LEFT JOIN metric_definitions m ON m.id = p.metric_id
        WHERE {' AND '.join(clauses)}
        ORDER BY p.updated_at DESC, p.id DESC
        """,
        tuple(params),
    ).fetchall()
    return rows_to_dicts(rows)


def get_pdsa_cycle(conn, org_id: int, cycle_id: Any) -> Dict[str, Any]:
    return snapshot_row(get_scoped_row(conn, "pdsa_cycles", org_id, cycle_id, "PDSA cycle"))


def _next_cycle_number(conn, org_id: int, diagram_id: Optional[int], node_id: Optional[int]) -> int:
    clauses = ["organization_id = ?"]
    params: List[Any] = [org_id]
    for column, value in (("diagram_id", diagram_id), ("change_idea_node_id", node_id)):
        if value is None:
            clauses.append(f"{column} IS NULL")
        else:
            clauses.append(f"{column} = ?")
            params.append(value)
    row = conn.execute(f"SELECT MAX(cycle_number) FROM pdsa_cycles WHERE {' AND '.join(clauses)}", tuple(params)).fetchone()
    return int(row[0] or 0) + 1


def _pdsa_fields(conn, org_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        "title": v.text(form, "title", "Title", max_len=200, required=True),
        "cycle_number": v.integer(form, "cycle_number", "Cycle number", default=1, minimum=1),
        "status": v.choice(form, "status", "Status", PDSA_STATUSES, default="planning"),
        "outcome": v.choice(form, "outcome", "Outcome", PDSA_OUTCOMES) if form.get("outcome") else None,
        "diagram_id": _optional_ref(conn, org_id, form, "diagram_id", "driver_diagrams", "Driver diagram"),
        "metric_id": _optional_ref(conn, org_id, form, "metric_id", "metric_definitions", "Metric"),
        "change_idea_node_id": _optional_ref(conn, org_id, form, "change_idea_node_id", "driver_nodes", "Node"),
    }
    for key, label in PDSA_TEXT_FIELDS:
        fields[key] = v.text(form, key, label, max_len=2000)
    for key, label in PDSA_DATE_FIELDS:
        fields[key] = v.date(form, key, label)
    if fields["change_idea_node_id"] and fields["diagram_id"]:
        node = conn.execute("SELECT diagram_id FROM driver_nodes WHERE id = ?", (fields["change_idea_node_id"],)).fetchone()
        if int(node["diagram_id"]) != int(fields["diagram_id"]):
            raise ValidationError("Change idea does not belong to this diagram.")
    return fields


def create_pdsa_cycle(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _pdsa_fields(conn, org_id, form)
    if fields["diagram_id"] and fields["change_idea_node_id"]:
        fields["cycle_number"] = _next_cycle_number(conn, org_id, fields["diagram_id"], fields["change_idea_node_id"])
    columns = list(fields.keys())
    cur = conn.execute(
        f"""
        INSERT INTO pdsa_cycles (organization_id, {', '.join(columns)}, created_at, updated_at)
        VALUES (?, {', '.join('?' for _ in columns)}, ?, ?)
        """,
        (org_id, *[fields[c] for c in columns], iso(), iso()),
    )
    cycle_id = int(cur.lastrowid)
    log_action(conn, org_id, actor_id, "CREATE", "PdsaCycle", cycle_id, f'Created PDSA cycle "{fields["title"]}" (#{fields["cycle_number"]})')
    return {"cycle_id": cycle_id, "cycle_number": fields["cycle_number"]}


def update_pdsa_cycle(conn, org_id: int, actor_id: int, cycle_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = get_pdsa_cycle(conn, org_id, cycle_id)
    fields = _pdsa_fields(conn, org_id, form)
    assignments = ", ".join(f"{c} = ?" for c in fields)
    conn.execute(
        f"UPDATE pdsa_cycles SET {assignments}, updated_at = ? WHERE id = ? AND organization_id = ?",
        (*fields.values(), iso(), before["id"], org_id),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "PdsaCycle", before["id"],
        f'Updated PDSA cycle "{fields["title"]}"', compute_changes(before, fields, fields.keys()),
    )
    return {"cycle_id": before["id"]}


def delete_pdsa_cycle(conn, org_id: int, actor_id: int, cycle_id: Any) -> Dict[str, Any]:
    cycle = get_pdsa_cycle(conn, org_id, cycle_id)
    conn.execute("DELETE FROM pdsa_cycles WHERE id = ?", (cycle["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "PdsaCycle", cycle["id"], f'Deleted PDSA cycle "{cycle["title"]}" (#{cycle["cycle_number"]})')
    return {"cycle_id": cycle["id"]}


def advance_pdsa_cycle(conn, org_id: int, actor_id: int, cycle_id: Any) -> Dict[str, Any]:
    """Move a cycle one step along planning, doing, studying, acting, completed.

    Entering a phase stamps its date with today; ``do_end_date`` is filled
    when studying starts if it was never recorded.
    """
    cycle = get_pdsa_cycle(conn, org_id, cycle_id)
    if cycle["status"] not in PDSA_FLOW or cycle["status"] == PDSA_FLOW[-1]:
        raise ValidationError("Cannot advance this cycle further.")
    new_status = PDSA_FLOW[PDSA_FLOW.index(cycle["status"]) + 1]
    stamp = today().isoformat()
    updates: Dict[str, Any] = {"status": new_status}
    if new_status == "doing":
        updates["do_start_date"] = stamp
    elif new_status == "studying":
        updates["study_date"] = stamp
        if not cycle["do_end_date"]:
            updates["do_end_date"] = stamp
    elif new_status == "acting":
        updates["act_date"] = stamp
    assignments = ", ".join(f"{c} = ?" for c in updates)
    conn.execute(f"UPDATE pdsa_cycles SET {assignments}, updated_at = ? WHERE id = ?", (*updates.values(), iso(), cycle["id"]))
    log_action(conn, org_id, actor_id, "ADVANCE", "PdsaCycle", cycle["id"], f'Advanced PDSA cycle "{cycle["title"]}" to {new_status}')
    return {"cycle_id": cycle["id"], "status": new_status}


def clone_pdsa_cycle(conn, org_id: int, actor_id: int, cycle_id: Any) -> Dict[str, Any]:
    source = get_pdsa_cycle(conn, org_id, cycle_id)
    next_number = _next_cycle_number(conn, org_id, source["diagram_id"], source["change_idea_node_id"])
    plan = f"Learnings from Cycle {source['cycle_number']}: {source['study_learnings']}" if source["study_learnings"] else None
    cur = conn.execute(
        """
        INSERT INTO pdsa_cycles (organization_id, title, cycle_number, status, diagram_id, metric_id, change_idea_node_id, plan_description, created_at, updated_at)
        VALUES (?, ?, ?, 'planning', ?, ?, ?, ?, ?, ?)
        """,
        (org_id, source["title"], next_number, source["diagram_id"], source["metric_id"], source["change_idea_node_id"], plan, iso(), iso()),
    )
    new_id = int(cur.lastrowid)
    log_action(
        conn, org_id, actor_id, "CREATE", "PdsaCycle", new_id,
        f'Created PDSA cycle iteration #{next_number} for "{source["title"]}" (cloned from cycle #{source["cycle_number"]})',
    )
    return {"cycle_id": new_id, "cycle_number": next_number}


# Action items


def list_action_items(conn, org_id: int, filters: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
    filters = filters or {}
    clauses = ["a.organization_id = ?"]
    params: List[Any] = [org_id]
    for key in ("campaign_id", "pdsa_cycle_id", "assignee_id"):
        value = to_int(filters.get(key))
        if value:
            clauses.append(f"a.{key} = ?")
            params.append(value)
    if filters.get("priority") in ACTION_PRIORITIES:
        clauses.append("a.priority = ?")
        params.append(filters["priority"])
    rows = conn.execute(
        f"""
        SELECT a.*, c.name AS campaign_name, p.title AS pdsa_title,
               TRIM(u.first_name || ' ' || u.last_name) AS assignee_name
        FROM action_items a
        LEFT JOIN campaigns c ON c.id = a.campaign_id
        LEFT JOIN pdsa_cycles p ON p.id = a.pdsa_cycle_id
        LEFT JOIN users u ON u.id = a.assignee_id
        WHERE {' AND '.join(clauses)}
        ORDER BY a.due_date IS NULL, a.due_date, a.id
        """,
        tuple(params),
    ).fetchall()
    items = rows_to_dicts(rows)
    for item in items:
        item["effective_status"] = _action_item_state(item)
    status = filters.get("status")
    if status in ACTION_STATUSES:
        items = [item for item in items if item["effective_status"] == status]
    return items


def get_action_item(conn, org_id: int, item_id: Any) -> Dict[str, Any]:
    return snapshot_row(get_scoped_row(conn, "action_items", org_id, item_id, "Action item"))


def _action_fields(conn, org_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "title": v.text(form, "title", "Title", max_len=200, required=True),
        "description": v.text(form, "description", "Description", max_len=2000),
        "status": v.choice(form, "status", "Status", ACTION_STATUSES, default="open"),
        "priority": v.choice(form, "priority", "Priority", ACTION_PRIORITIES, default="medium"),
        "due_date": v.date(form, "due_date", "Due date"),
        "campaign_id": _optional_ref(conn, org_id, form, "campaign_id", "campaigns", "Campaign"),
        "pdsa_cycle_id": _optional_ref(conn, org_id, form, "pdsa_cycle_id", "pdsa_cycles", "PDSA cycle"),
        "assignee_id": _owner_ref(conn, org_id, form, "assignee_id"),
    }


def create_action_item(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _action_fields(conn, org_id, form)
    fields["completed_at"] = iso() if fields["status"] == "completed" else None
    columns = list(fields.keys())
    cur = conn.execute(
        f"""
        INSERT INTO action_items (organization_id, {', '.join(columns)}, created_at, updated_at)
        VALUES (?, {', '.join('?' for _ in columns)}, ?, ?)
        """,
        (org_id, *[fields[c] for c in columns], iso(), iso()),
    )
    item_id = int(cur.lastrowid)
    log_action(conn, org_id, actor_id, "CREATE", "ActionItem", item_id, f'Created action item "{fields["title"]}"')
    return {"action_item_id": item_id}


def update_action_item(conn, org_id: int, actor_id: int, item_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = get_action_item(conn, org_id, item_id)
    fields = _action_fields(conn, org_id, form)
    if fields["status"] == "completed":
        fields["completed_at"] = before["completed_at"] or iso()
    else:
        fields["completed_at"] = None
    assignments = ", ".join(f"{c} = ?" for c in fields)
    conn.execute(
        f"UPDATE action_items SET {assignments}, updated_at = ? WHERE id = ? AND organization_id = ?",
        (*fields.values(), iso(), before["id"], org_id),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "ActionItem", before["id"],
        f'Updated action item "{fields["title"]}"', compute_changes(before, fields, fields.keys()),
    )
    return {"action_item_id": before["id"]}


def set_action_item_status(conn, org_id: int, actor_id: int, item_id: Any, status: str) -> Dict[str, Any]:
    item = get_action_item(conn, org_id, item_id)
    if status not in ACTION_STATUSES:
        raise ValidationError(f"Status must be one of: {', '.join(ACTION_STATUSES)}.")
    completed_at = iso() if status == "completed" else None
    conn.execute(
        "UPDATE action_items SET status = ?, completed_at = ?, updated_at = ? WHERE id = ?",
        (status, completed_at, iso(), item["id"]),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "ActionItem", item["id"],
        f'Changed action item "{item["title"]}" status to {status}',
        compute_changes({"status": item["status"]}, {"status": status}),
    )
    return {"action_item_id": item["id"], "status": status, "completed_at": completed_at}


def delete_action_item(conn, org_id: int, actor_id: int, item_id: Any) -> Dict[str, Any]:
    item = get_action_item(conn, org_id, item_id)
    conn.execute("DELETE FROM action_items WHERE id = ?", (item["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "ActionItem", item["id"], f'Deleted action item "{item["title"]}"')
    return {"action_item_id": item["id"]}
