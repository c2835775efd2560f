"""Metric definitions, their division/region associations and chart annotations."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from emsdash import validation as v
from emsdash.aggregation import AGGREGATION_TYPES
from emsdash.audit import compute_changes, log_action
from emsdash.db import get_scoped_row
from emsdash.errors import NotFoundError, ValidationError
from emsdash.org import get_department, get_division, get_region
from emsdash.spc import DATA_TYPES
from emsdash.utils import iso, rows_to_dicts, slugify, snapshot_row, to_int

logger = logging.getLogger(__name__)

METRIC_UNITS = ("count", "currency", "percentage", "duration", "score", "rate")
CHART_TYPES = ("line", "bar", "area")
PERIOD_TYPES = ("daily", "weekly", "bi-weekly", "monthly", "quarterly", "annual")
DIRECTIONS = ("up", "down")
ANNOTATION_TYPES = ("intervention", "milestone", "event")

METRIC_FIELDS = (
    "department_id",
    "parent_id",
    "category_id",
    "name",
    "slug",
    "description",
    "data_definition",
    "methodology",
    "unit",
    "chart_type",
    "period_type",
    "sort_order",
    "is_kpi",
    "target",
    "aggregation_type",
    "data_type",
    "desired_direction",
    "spc_sigma_level",
    "baseline_start",
    "baseline_end",
    "numerator_label",
    "denominator_label",
    "rate_multiplier",
    "rate_suffix",
)


def default_desired_direction(unit: str) -> str:
    return "down" if unit == "duration" else "up"


def default_aggregation_type(unit: str) -> str:
    return "sum" if unit in ("count", "currency") else "average"


def default_data_type(unit: str) -> str:
    if unit == "percentage":
        return "proportion"
    if unit == "rate":
        return "rate"
    return "continuous"


def list_metrics(
    conn,
    org_id: int,
    department_id: Any = None,
    active_only: bool = False,
    kpi_only: bool = False,
) -> List[Dict[str, Any]]:
    clauses = ["m.organization_id = ?"]
    params: List[Any] = [org_id]
    if department_id:
        clauses.append("m.department_id = ?")
        params.append(department_id)
    if active_only:
        clauses.append("m.is_active = 1")
    if kpi_only:
        clauses.append("m.is_kpi = 1")
    rows = conn.execute(
        f"""
        SELECT m.*, d.name AS department_name, d.slug AS department_slug,
               c.name AS category_name, c.color AS category_color, p.name AS parent_name
        FROM metric_definitions m
        JOIN departments d ON d.id = m.department_id
        LEFT JOIN categories c ON c.id = m.category_id
        LEFT JOIN metric_definitions p ON p.id = m.parent_id
        WHERE {' AND '.join(clauses)}
        ORDER BY d.sort_order, m.sort_order, m.name
        """,
        tuple(params),
    ).fetchall()
    return rows_to_dicts(rows)


def get_metric(conn, org_id: int, metric_id: Any) -> Dict[str, Any]:
    return snapshot_row(get_scoped_row(conn, "metric_definitions", org_id, metric_id, "Metric"))


def get_metric_by_slug(conn, org_id: int, department_id: int, slug: str) -> Dict[str, Any]:
    row = conn.execute(
        "SELECT * FROM metric_definitions WHERE organization_id = ? AND department_id = ? AND slug = ?",
        (org_id, department_id, slug),
    ).fetchone()
    if not row:
        raise NotFoundError("Metric")
    return snapshot_row(row)


def child_metrics(conn, org_id: int, metric_id: int) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT * FROM metric_definitions
        WHERE organization_id = ? AND parent_id = ? AND is_active = 1
        ORDER BY sort_order, name
        """,
        (org_id, metric_id),
    ).fetchall()
    return rows_to_dicts(rows)


def _metric_fields(conn, org_id: int, form: Mapping[str, Any], metric_id: Optional[int] = None) -> Dict[str, Any]:
    department_id = to_int(form.get("department_id"))
    if not department_id:
        raise ValidationError("Department is required.")
    get_department(conn, org_id, department_id)

    name = v.text(form, "name", "Name", max_len=150, required=True)
    slug = slugify(form.get("slug") or name)
    if not slug:
        raise ValidationError("Name must contain letters or numbers.")
    unit = v.choice(form, "unit", "Unit", METRIC_UNITS, default="count")

    parent_id = to_int(form.get("parent_id"))
    if parent_id:
        if metric_id and parent_id == metric_id:
            raise ValidationError("A metric cannot be its own parent.")
        parent = conn.execute(
            "SELECT id, parent_id, department_id FROM metric_definitions WHERE id = ? AND organization_id = ?",
            (parent_id, org_id),
        ).fetchone()
        if not parent:
            raise ValidationError("Parent metric not found.")
        if parent["parent_id"]:
            raise ValidationError("Cannot nest more than one level deep (no grandchildren).")
        if int(parent["department_id"]) != department_id:
            raise ValidationError("Parent metric must belong to the same department.")

    category_id = to_int(form.get("category_id"))
    if category_id:
        get_scoped_row(conn, "categories", org_id, category_id, "Category")

    baseline_start = v.date(form, "baseline_start", "Baseline start")
    baseline_end = v.date(form, "baseline_end", "Baseline end")
    if baseline_start and baseline_end and baseline_start > baseline_end:
        raise ValidationError("Baseline start must be on or before baseline end.")

    rate_multiplier = v.number(form, "rate_multiplier", "Rate multiplier")
    if rate_multiplier is not None and rate_multiplier <= 0:
        raise ValidationError("Rate multiplier must be positive.")

    return {
        "department_id": department_id,
        "parent_id": parent_id,
        "category_id": category_id,
        "name": name,
        "slug": slug,
        "description": v.text(form, "description", "Description", max_len=500),
        "data_definition": v.text(form, "data_definition", "Data definition", max_len=2000),
        "methodology": v.text(form, "methodology", "Methodology", max_len=2000),
        "unit": unit,
        "chart_type": v.choice(form, "chart_type", "Chart type", CHART_TYPES, default="line"),
        "period_type": v.choice(form, "period_type", "Period type", PERIOD_TYPES, default="monthly"),
        "sort_order": v.integer(form, "sort_order", "Sort order", default=0, minimum=0),
        "is_kpi": v.flag(form, "is_kpi"),
        "target": v.number(form, "target", "Target"),
        "aggregation_type": v.choice(
            form, "aggregation_type", "Aggregation", AGGREGATION_TYPES, default=default_aggregation_type(unit)
        ),
        "data_type": v.choice(form, "data_type", "Data type", DATA_TYPES, default=default_data_type(unit)),
        "desired_direction": v.choice(
            form, "desired_direction", "Desired direction", DIRECTIONS, default=default_desired_direction(unit)
        ),
        "spc_sigma_level": v.integer(form, "spc_sigma_level", "Sigma level", default=3, minimum=1, maximum=3),
        "baseline_start": baseline_start,
        "baseline_end": baseline_end,
        "numerator_label": v.text(form, "numerator_label", "Numerator label", max_len=50),
        "denominator_label": v.text(form, "denominator_label", "Denominator label", max_len=50),
        "rate_multiplier": rate_multiplier,
        "rate_suffix": v.text(form, "rate_suffix", "Rate suffix", max_len=100),
    }


def _assert_metric_slug_free(conn, department_id: int, slug: str, exclude_id: Optional[int] = None) -> None:
    row = conn.execute(
        "SELECT id FROM metric_definitions WHERE department_id = ? AND slug = ?",
        (department_id, slug),
    ).fetchone()
    if row and (exclude_id is None or int(row["id"]) != int(exclude_id)):
        raise ValidationError(f'A metric with the slug "{slug}" already exists in this department.')


def create_metric(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _metric_fields(conn, org_id, form)
    _assert_metric_slug_free(conn, fields["department_id"], fields["slug"])
    columns = ", ".join(METRIC_FIELDS)
    placeholders = ", ".join("?" for _ in METRIC_FIELDS)
    cur = conn.execute(
        f"""
        INSERT INTO metric_definitions (organization_id, {columns}, is_active, created_at, updated_at)
        VALUES (?, {placeholders}, 1, ?, ?)
        """,
        (org_id, *[fields[name] for name in METRIC_FIELDS], iso(), iso()),
    )
    metric_id = int(cur.lastrowid)
    log_action(
        conn, org_id, actor_id, "CREATE", "MetricDefinition", metric_id,
        f'Created metric "{fields["name"]}" ({fields["unit"]})',
    )
    return {"metric_id": metric_id, "slug": fields["slug"]}


def update_metric(conn, org_id: int, actor_id: int, metric_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = get_metric(conn, org_id, metric_id)
    fields = _metric_fields(conn, org_id, form, metric_id=int(before["id"]))
    _assert_metric_slug_free(conn, fields["department_id"], fields["slug"], exclude_id=before["id"])
    assignments = ", ".join(f"{name} = ?" for name in METRIC_FIELDS)
    conn.execute(
        f"UPDATE metric_definitions SET {assignments}, updated_at = ? WHERE id = ?",
        (*[fields[name] for name in METRIC_FIELDS], iso(), before["id"]),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "MetricDefinition", before["id"],
        f'Updated metric "{fields["name"]}"', compute_changes(before, fields, METRIC_FIELDS),
    )
    return {"metric_id": before["id"], "slug": fields["slug"]}


def set_metric_active(conn, org_id: int, actor_id: int, metric_id: Any, active: bool) -> Dict[str, Any]:
    metric = get_metric(conn, org_id, metric_id)
    conn.execute(
        "UPDATE metric_definitions SET is_active = ?, updated_at = ? WHERE id = ?",
        (1 if active else 0, iso(), metric["id"]),
    )
    verb = "Activated" if active else "Deactivated"
    log_action(conn, org_id, actor_id, "UPDATE", "MetricDefinition", metric["id"], f'{verb} metric "{metric["name"]}"')
    return {"metric_id": metric["id"]}


# Associations


def list_associations(conn, org_id: int, metric_id: Any) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT a.id, a.metric_id, a.division_id, dv.name AS division_name,
               a.region_id, r.name AS region_name
        FROM metric_associations a
        JOIN divisions dv ON dv.id = a.division_id
        LEFT JOIN regions r ON r.id = a.region_id
        WHERE a.organization_id = ? AND a.metric_id = ?
        ORDER BY dv.name, r.name
        """,
        (org_id, metric_id),
    ).fetchall()
    return rows_to_dicts(rows)


def _validate_scope(conn, org_id: int, division_id: Any, region_id: Any) -> None:
    get_division(conn, org_id, division_id)
    if region_id:
        region = get_region(conn, org_id, region_id)
        if int(region["division_id"]) != int(division_id):
            raise ValidationError("Region does not belong to the selected division.")


def add_association(conn, org_id: int, actor_id: int, metric_id: Any, division_id: Any, region_id: Any = None) -> Dict[str, Any]:
    metric = get_metric(conn, org_id, metric_id)
    division_id = to_int(division_id)
    region_id = to_int(region_id)
    if not division_id:
        raise ValidationError("Division is required.")
    _validate_scope(conn, org_id, division_id, region_id)
    existing = conn.execute(
        "SELECT id FROM metric_associations WHERE metric_id = ? AND division_id = ? AND COALESCE(region_id, 0) = ?",
        (metric["id"], division_id, region_id or 0),
    ).fetchone()
    if existing:
        raise ValidationError("This metric is already associated with that division and region.")
    cur = conn.execute(
        "INSERT INTO metric_associations (organization_id, metric_id, division_id, region_id, created_at) VALUES (?, ?, ?, ?, ?)",
        (org_id, metric["id"], division_id, region_id, iso()),
    )
    association_id = int(cur.lastrowid)
    log_action(conn, org_id, actor_id, "CREATE", "MetricAssociation", association_id, f'Associated metric "{metric["name"]}"')
    return {"association_id": association_id}


def remove_association(conn, org_id: int, actor_id: int, association_id: Any) -> Dict[str, Any]:
    row = get_scoped_row(conn, "metric_associations", org_id, association_id, "Association")
    conn.execute("DELETE FROM metric_associations WHERE id = ?", (row["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "MetricAssociation", row["id"], f"Removed association for metric {row['metric_id']}")
    return {"association_id": int(row["id"])}


def set_associations(
    conn,
    org_id: int,
    actor_id: int,
    metric_id: Any,
    associations: Sequence[Mapping[str, Any]],
) -> Dict[str, Any]:
    """Replace a metric's associations with ``associations`` (division_id, region_id?)."""
    metric = get_metric(conn, org_id, metric_id)
    seen = set()
    cleaned = []
    for item in associations:
        division_id = to_int(item.get("division_id"))
        region_id = to_int(item.get("region_id"))
        if not division_id:
            continue
        _validate_scope(conn, org_id, division_id, region_id)
        key = (division_id, region_id or 0)
        if key in seen:
            continue
        seen.add(key)
        cleaned.append((division_id, region_id))

    conn.execute("DELETE FROM metric_associations WHERE metric_id = ?", (metric["id"],))
    for division_id, region_id in cleaned:
        conn.execute(
            "INSERT INTO metric_associations (organization_id, metric_id, division_id, region_id, created_at) VALUES (?, ?, ?, ?, ?)",
            (org_id, metric["id"], division_id, region_id, iso()),
        )
    log_action(conn, org_id, actor_id, "UPDATE", "MetricAssociation", metric["id"], f"Set {len(cleaned)} associations")
    return {"metric_id": metric["id"], "count": len(cleaned)}


# Annotations


def list_annotations(conn, org_id: int, metric_id: Any) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT * FROM metric_annotations
        WHERE organization_id = ? AND metric_id = ?
        ORDER BY annotation_date
        """,
        (org_id, metric_id),
    ).fetchall()
    return rows_to_dicts(rows)


def create_annotation(conn, org_id: int, actor_id: int, metric_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    metric = get_metric(conn, org_id, metric_id)
    annotation_date = v.date(form, "annotation_date", "Date", required=True)
    title = v.text(form, "title", "Title", max_len=200, required=True)
    description = v.text(form, "description", "Description", max_len=1000)
    annotation_type = v.choice(form, "annotation_type", "Type", ANNOTATION_TYPES, default="intervention")
    cur = conn.execute(
        """
        INSERT INTO metric_annotations (organization_id, metric_id, annotation_date, title, description, annotation_type, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (org_id, metric["id"], annotation_date, title, description, annotation_type, iso()),
    )
    annotation_id = int(cur.lastrowid)
    log_action(
        conn, org_id, actor_id, "CREATE", "MetricAnnotation", annotation_id,
        f'Created annotation "{title}" for metric {metric["id"]}',
    )
    return {"annotation_id": annotation_id}


def delete_annotation(conn, org_id: int, actor_id: int, annotation_id: Any) -> Dict[str, Any]:
    row = get_scoped_row(conn, "metric_annotations", org_id, annotation_id, "Annotation")
    conn.execute("DELETE FROM metric_annotations WHERE id = ?", (row["id"],))
    log_action(conn, org_id, actor_id, "DELETE", "MetricAnnotation", row["id"], f'Deleted annotation "{row["title"]}"')
    return {"annotation_id": int(row["id"])}
