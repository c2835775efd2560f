"""Read models for the dashboard pages: KPI cards, series, drill-downs and SPC."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from emsdash.aggregation import aggregate_by_period_weighted, aggregate_values
from emsdash.errors import NotFoundError
from emsdash.metrics import child_metrics, get_metric_by_slug, list_annotations
from emsdash.org import get_department_by_slug
from emsdash.spc import compute_spc_data
from emsdash.utils import (
    format_metric_value,
    format_period,
    parse_date_range_filter,
    round_half_up,
    rows_to_dicts,
    snapshot_row,
    to_int,
)

logger = logging.getLogger(__name__)

UNASSIGNED_SLUG = "unassigned"
SPARKLINE_POINTS = 12

ENTRY_COLUMNS = "e.metric_id, e.department_id, e.division_id, e.region_id, e.period_start, e.value, e.numerator, e.denominator"


def range_bounds(range_key: Optional[str]) -> Dict[str, str]:
    bounds = parse_date_range_filter(range_key)
    return {key: value.isoformat() for key, value in bounds.items()}


def fetch_entries(
    conn,
    org_id: int,
    metric_ids: Sequence[int],
    bounds: Mapping[str, str],
    division_id: Optional[int] = None,
    region_id: Optional[int] = None,
    department_level: bool = False,
    region_level: bool = False,
) -> List[Dict[str, Any]]:
    """Entries for ``metric_ids`` in date order, narrowed to one scope.

    ``region_id`` wins over ``division_id``. With ``division_id`` set,
    ``region_level`` keeps only the rows recorded against one of its regions.
    With neither set, ``department_level`` keeps only rows recorded without a
    division or region.
    """
    if not metric_ids:
        return []
    clauses = ["e.organization_id = ?", f"e.metric_id IN ({', '.join('?' for _ in metric_ids)})"]
    params: List[Any] = [org_id, *metric_ids]
    if region_id:
        clauses.append("e.region_id = ?")
        params.append(region_id)
    elif division_id:
        clauses.append("e.division_id = ?")
        params.append(division_id)
        if region_level:
            clauses.append("e.region_id IS NOT NULL")
    elif department_level:
        clauses.append("e.division_id IS NULL AND e.region_id IS NULL")
    if bounds.get("gte"):
        clauses.append("e.period_start >= ?")
        params.append(bounds["gte"])
    if bounds.get("lte"):
        clauses.append("e.period_start <= ?")
        params.append(bounds["lte"])
    rows = conn.execute(
        f"SELECT {ENTRY_COLUMNS} FROM metric_entries e WHERE {' AND '.join(clauses)} ORDER BY e.period_start, e.id",
        tuple(params),
    ).fetchall()
    return rows_to_dicts(rows)


def _group_by_metric(entries: Iterable[Mapping[str, Any]]) -> Dict[int, List[Mapping[str, Any]]]:
    grouped: Dict[int, List[Mapping[str, Any]]] = {}
    for entry in entries:
        grouped.setdefault(int(entry["metric_id"]), []).append(entry)
    return grouped


def metric_series(metric: Mapping[str, Any], entries: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    series = aggregate_by_period_weighted(entries, metric["data_type"], metric["aggregation_type"])
    for point in series:
        point["label"] = format_period(point["period"], metric["period_type"])
    return series


def half_trend(values: Sequence[float], kind: str) -> Tuple[float, float, str]:
    """Compare the older half of ``values`` with the recent half.

    Returns ``(previous, trend_percent, direction)``. The midpoint is
    ``ceil(n / 2)`` so an odd count puts the middle value in the older half.
    """
    if len(values) < 2:
        return 0.0, 0.0, "flat"
    midpoint = math.ceil(len(values) / 2)
    previous = aggregate_values(values[:midpoint], kind) or 0.0
    recent = aggregate_values(values[midpoint:], kind) or 0.0
    if previous == 0:
        return previous, 0.0, "flat"
    change = (recent - previous) / abs(previous) * 100
    if change > 0.5:
        direction = "up"
    elif change < -0.5:
        direction = "down"
    else:
        direction = "flat"
    return previous, round_half_up(change, 1), direction


def target_met(metric: Mapping[str, Any], value: Optional[float]) -> Optional[bool]:
    if metric.get("target") is None or value is None:
        return None
    if metric.get("desired_direction") == "down":
        return value <= float(metric["target"])
    return value >= float(metric["target"])


def format_for(metric: Mapping[str, Any], value: Optional[float]) -> str:
    if value is None:
        return "No data"
    return format_metric_value(value, metric["unit"], metric.get("rate_multiplier"), metric.get("rate_suffix"))


def build_kpi_card(metric: Mapping[str, Any], entries: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    series = metric_series(metric, entries)
    values = [point["value"] for point in series]
    kind = metric["aggregation_type"]
    current = aggregate_values(values, kind) if values else None
    previous, trend, direction = half_trend(values, kind)
    return {
        "metric_id": metric["id"],
        "metric_slug": metric["slug"],
        "department_id": metric["department_id"],
        "name": metric["name"],
        "unit": metric["unit"],
        "chart_type": metric["chart_type"],
        "desired_direction": metric["desired_direction"],
        "current_value": current,
        "previous_value": previous,
        "formatted_value": format_for(metric, current),
        "trend": trend,
        "trend_direction": direction,
        "sparkline": values[-SPARKLINE_POINTS:],
        "target": metric["target"],
        "formatted_target": format_for(metric, metric["target"]) if metric["target"] is not None else None,
        "target_met": target_met(metric, current),
        "period_count": len(values),
    }


def _metric_rows(conn, org_id: int, where: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
    rows = conn.execute(
        f"""
        SELECT m.*, d.slug AS department_slug, d.name AS department_name
        FROM metric_definitions m
        JOIN departments d ON d.id = m.department_id
        WHERE m.organization_id = ? AND m.is_active = 1 AND {where}
        ORDER BY m.sort_order, m.name
        """,
        (org_id, *params),
    ).fetchall()
    return rows_to_dicts(rows)


def _cards_and_series(metrics: Sequence[Dict[str, Any]], entries: Sequence[Mapping[str, Any]]):
    by_metric = _group_by_metric(entries)
    kpis = [build_kpi_card(m, by_metric.get(int(m["id"]), [])) for m in metrics if m["is_kpi"]]
    charts = [
        {
            "id": m["id"],
            "slug": m["slug"],
            "name": m["name"],
            "unit": m["unit"],
            "chart_type": m["chart_type"],
            "target": m["target"],
            "department_slug": m["department_slug"],
            "data": metric_series(m, by_metric.get(int(m["id"]), [])),
        }
        for m in metrics
    ]
    return kpis, charts


def department_overview(
    conn,
    org_id: int,
    department_slug: str,
    range_key: Optional[str] = None,
    division_id: Any = None,
    region_id: Any = None,
) -> Dict[str, Any]:
    department = get_department_by_slug(conn, org_id, department_slug)
    if not department["is_active"]:
        raise NotFoundError("Department")
    division_id = to_int(division_id)
    region_id = to_int(region_id)
    bounds = range_bounds(range_key)

    metrics = _metric_rows(conn, org_id, "m.department_id = ? AND m.parent_id IS NULL", (department["id"],))
    entries = fetch_entries(
        conn, org_id, [int(m["id"]) for m in metrics], bounds,
        division_id=division_id, region_id=region_id, department_level=True,
    )
    kpis, charts = _cards_and_series(metrics, entries)

    divisions = rows_to_dicts(
        conn.execute(
            "SELECT id, name, slug FROM divisions WHERE department_id = ? AND is_active = 1 ORDER BY sort_order, name",
            (department["id"],),
        ).fetchall()
    )
    regions = []
    if division_id:
        regions = rows_to_dicts(
            conn.execute(
                "SELECT id, name FROM regions WHERE division_id = ? AND organization_id = ? AND is_active = 1 ORDER BY name",
                (division_id, org_id),
            ).fetchall()
        )
    return {
        "department": department,
        "divisions": divisions,
        "regions": regions,
        "division_id": division_id,
        "region_id": region_id,
        "range": range_key or "all",
        "kpis": kpis,
        "metrics": charts,
    }


def division_overview(conn, org_id: int, division_slug: str, range_key: Optional[str] = None) -> Dict[str, Any]:
    """KPI cards for one division's associated metrics.

    A metric belongs to the division when it is associated with the division
    or with one of its regions. Values come from the region-level entries of
    that division, so division-wide rows do not count twice.

    The virtual ``unassigned`` division lists metrics with no association at
    all, using their department-level entries.
    """
    bounds = range_bounds(range_key)
    if division_slug == UNASSIGNED_SLUG:
        metrics = _metric_rows(
            conn, org_id,
            "m.parent_id IS NULL AND NOT EXISTS (SELECT 1 FROM metric_associations a WHERE a.metric_id = m.id)",
            (),
        )
        entries = fetch_entries(conn, org_id, [int(m["id"]) for m in metrics], bounds, department_level=True)
        kpis, charts = _cards_and_series(metrics, entries)
        return {
            "division": {"id": None, "name": "Unassigned", "slug": UNASSIGNED_SLUG},
            "regions": [],
            "range": range_key or "all",
            "kpis": kpis,
            "metrics": charts,
        }

    row = conn.execute(
        "SELECT * FROM divisions WHERE organization_id = ? AND slug = ? AND is_active = 1",
        (org_id, division_slug),
    ).fetchone()
    if not row:
        raise NotFoundError("Division")
    division = snapshot_row(row)
    metrics = _metric_rows(
        conn, org_id,
        """
        m.parent_id IS NULL AND EXISTS (
            SELECT 1 FROM metric_associations a
            WHERE a.metric_id = m.id AND (
                a.division_id = ?
                OR a.region_id IN (SELECT id FROM regions WHERE division_id = ? AND is_active = 1)
            )
        )
        """,
        (division["id"], division["id"]),
    )
    entries = fetch_entries(
        conn, org_id, [int(m["id"]) for m in metrics], bounds,
        division_id=int(division["id"]), region_level=True,
    )
    kpis, charts = _cards_and_series(metrics, entries)
    regions = rows_to_dicts(
        conn.execute(
            "SELECT id, name, role FROM regions WHERE division_id = ? AND is_active = 1 ORDER BY name",
            (division["id"],),
        ).fetchall()
    )
    return {
        "division": division,
        "regions": regions,
        "range": range_key or "all",
        "kpis": kpis,
        "metrics": charts,
    }


def _breakdown(metric: Mapping[str, Any], entries: Sequence[Mapping[str, Any]], key: str, names: Mapping[int, str]):
    grouped: Dict[int, List[Mapping[str, Any]]] = {}
    for entry in entries:
        if entry.get(key) is not None:
            grouped.setdefault(int(entry[key]), []).append(entry)
    breakdown = []
    for scope_id, scope_entries in grouped.items():
        series = metric_series(metric, scope_entries)
        values = [p["value"] for p in series]
        current = values[-1] if values else None
        previous, trend, direction = half_trend(values, metric["aggregation_type"])
        breakdown.append(
            {
                "id": scope_id,
                "name": names.get(scope_id, "Unknown"),
                "current_value": current,
                "formatted_value": format_for(metric, current),
                "trend": trend,
                "trend_direction": direction,
                "data": series,
            }
        )
    breakdown.sort(key=lambda item: item["name"])
    return breakdown


def metric_detail(
    conn,
    org_id: int,
    department_slug: str,
    metric_slug: str,
    range_key: Optional[str] = None,
    division_id: Any = None,
    region_id: Any = None,
) -> Dict[str, Any]:
    department = get_department_by_slug(conn, org_id, department_slug)
    metric = get_metric_by_slug(conn, org_id, department["id"], metric_slug)
    division_id = to_int(division_id)
    region_id = to_int(region_id)
    bounds = range_bounds(range_key)

    entries = fetch_entries(
        conn, org_id, [int(metric["id"])], bounds,
        division_id=division_id, region_id=region_id, department_level=True,
    )
    chart_data = metric_series(metric, entries)
    values = [p["value"] for p in chart_data]
    current = values[-1] if values else None
    previous, trend, direction = half_trend(values, metric["aggregation_type"])
    stats = {
        "current": current,
        "previous": previous,
        "trend": trend,
        "trend_direction": direction,
        "average": round_half_up(sum(values) / len(values), 2) if values else None,
        "min": min(values) if values else None,
        "max": max(values) if values else None,
        "count": len(values),
        "formatted_current": format_for(metric, current),
        "target_met": target_met(metric, current),
    }

    annotations = [
        a
        for a in list_annotations(conn, org_id, metric["id"])
        if (not bounds.get("gte") or a["annotation_date"] >= bounds["gte"])
        and (not bounds.get("lte") or a["annotation_date"] <= bounds["lte"])
    ]
    pdsa_rows = conn.execute(
        """
        SELECT p.id, p.title, p.cycle_number, p.do_start_date
        FROM pdsa_cycles p
        LEFT JOIN driver_diagrams dd ON dd.id = p.diagram_id
        WHERE p.organization_id = ? AND p.do_start_date IS NOT NULL
          AND (p.metric_id = ? OR dd.metric_id = ?)
        ORDER BY p.do_start_date
        """,
        (org_id, metric["id"], metric["id"]),
    ).fetchall()
    qi_annotations = [
        {"date": a["annotation_date"], "label": a["title"], "type": "annotation"} for a in annotations
    ] + [
        {"date": p["do_start_date"], "label": f"PDSA #{p['cycle_number']}: {p['title']}", "type": "pdsa"}
        for p in pdsa_rows
        if (not bounds.get("gte") or p["do_start_date"] >= bounds["gte"])
        and (not bounds.get("lte") or p["do_start_date"] <= bounds["lte"])
    ]

    all_scoped = fetch_entries(conn, org_id, [int(metric["id"])], bounds)
    division_names = {
        int(r["id"]): r["name"]
        for r in conn.execute("SELECT id, name FROM divisions WHERE organization_id = ?", (org_id,)).fetchall()
    }
    region_names = {
        int(r["id"]): r["name"]
        for r in conn.execute("SELECT id, name FROM regions WHERE organization_id = ?", (org_id,)).fetchall()
    }

    children = []
    child_defs = child_metrics(conn, org_id, metric["id"])
    child_entries = _group_by_metric(fetch_entries(conn, org_id, [int(c["id"]) for c in child_defs], bounds, department_level=True))
    for child in child_defs:
        series = metric_series(child, child_entries.get(int(child["id"]), []))
        child_current = series[-1]["value"] if series else None
        children.append(
            {
                "id": child["id"],
                "slug": child["slug"],
                "name": child["name"],
                "current_value": child_current,
                "formatted_value": format_for(child, child_current),
                "data": series,
            }
        )

    parent = None
    if metric["parent_id"]:
        parent_row = conn.execute(
            "SELECT id, name, slug FROM metric_definitions WHERE id = ? AND organization_id = ?",
            (metric["parent_id"], org_id),
        ).fetchone()
        parent = snapshot_row(parent_row)

    spc = compute_spc_data(metric, entries, chart_data)
    return {
        "department": department,
        "metric": metric,
        "range": range_key or "all",
        "division_id": division_id,
        "region_id": region_id,
        "chart_data": chart_data,
        "stats": stats,
        "spc": spc,
        "annotations": annotations,
        "qi_annotations": qi_annotations,
        "children": children,
        "parent": parent,
        "division_breakdown": _breakdown(metric, [e for e in all_scoped if e["region_id"] is None], "division_id", division_names),
        "region_breakdown": _breakdown(metric, all_scoped, "region_id", region_names),
    }


def landing_summary(conn, org_id: int) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT d.id, d.name, d.slug, d.department_type, d.description,
               (SELECT COUNT(*) FROM metric_definitions m
                WHERE m.department_id = d.id AND m.is_active = 1 AND m.is_kpi = 1) AS kpi_count,
               (SELECT COUNT(*) FROM metric_definitions m
                WHERE m.department_id = d.id AND m.is_active = 1) AS metric_count,
               (SELECT MAX(e.period_start) FROM metric_entries e WHERE e.department_id = d.id) AS latest_period
        FROM departments d
        WHERE d.organization_id = ? AND d.is_active = 1
        ORDER BY d.sort_order, d.name
        """,
        (org_id,),
    ).fetchall()
    summary = rows_to_dicts(rows)
    for item in summary:
        item["latest_label"] = format_period(item["latest_period"]) if item["latest_period"] else "No data yet"
    return summary
