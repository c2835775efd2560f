"""Scorecards: curated metric lists rolled up into a 12-month grid with YTD."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from emsdash import validation as v
from emsdash.aggregation import aggregate_values, aggregate_values_weighted
from emsdash.audit import compute_changes, log_action
from emsdash.dashboard import format_for, target_met
from emsdash.db import get_scoped_row
from emsdash.errors import ValidationError
from emsdash.org import _assert_slug_free, _slug_for
from emsdash.utils import MONTH_ABBR, iso, round_half_up, rows_to_dicts, snapshot_row, to_int, today

logger = logging.getLogger(__name__)

MIN_YEAR = 2020
MAX_YEAR = 2100


def list_scorecards(conn, org_id: int, active_only: bool = False) -> List[Dict[str, Any]]:
    sql = """
        SELECT s.*, (SELECT COUNT(*) FROM scorecard_metrics sm WHERE sm.scorecard_id = s.id) AS metric_count
        FROM scorecards s WHERE s.organization_id = ?
    """
    if active_only:
        sql += " AND s.is_active = 1"
    sql += " ORDER BY s.sort_order, s.name"
    return rows_to_dicts(conn.execute(sql, (org_id,)).fetchall())


def get_scorecard(conn, org_id: int, scorecard_id: Any) -> Dict[str, Any]:
    card = snapshot_row(get_scoped_row(conn, "scorecards", org_id, scorecard_id, "Scorecard"))
    card["metrics"] = rows_to_dicts(
        conn.execute(
            """
            SELECT sm.metric_id, sm.sort_order, sm.group_name, m.name, m.slug, m.unit
            FROM scorecard_metrics sm
            JOIN metric_definitions m ON m.id = sm.metric_id
            WHERE sm.scorecard_id = ?
            ORDER BY sm.sort_order, m.name
            """,
            (card["id"],),
        ).fetchall()
    )
    card["division_ids"] = [
        int(r["division_id"])
        for r in conn.execute("SELECT division_id FROM scorecard_divisions WHERE scorecard_id = ?", (card["id"],)).fetchall()
    ]
    card["region_ids"] = [
        int(r["region_id"])
        for r in conn.execute("SELECT region_id FROM scorecard_regions WHERE scorecard_id = ?", (card["id"],)).fetchall()
    ]
    return card


def _id_list(raw: Any) -> List[int]:
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = [part for part in raw.split(",")]
    ids = []
    for item in raw:
        value = to_int(item)
        if value and value not in ids:
            ids.append(value)
    return ids


def _scorecard_fields(form: Mapping[str, Any]) -> Dict[str, Any]:
    name = v.text(form, "name", "Name", max_len=120, required=True)
    return {
        "name": name,
        "slug": _slug_for(form, name),
        "description": v.text(form, "description", "Description", max_len=1000),
        "sort_order": v.integer(form, "sort_order", "Sort order", default=0, minimum=0),
        "is_active": v.flag(form, "is_active", default=True),
    }


def _metric_items(conn, org_id: int, form: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Metric rows from either ``metrics`` ([{metric_id, group_name}]) or a plain ``metric_ids`` list."""
    raw_items = form.get("metrics")
    if raw_items is None:
        raw_items = [{"metric_id": mid} for mid in _id_list(form.get("metric_ids"))]
    items = []
    seen = set()
    for index, item in enumerate(raw_items):
        metric_id = to_int(item.get("metric_id")) if isinstance(item, Mapping) else to_int(item)
        if not metric_id or metric_id in seen:
            continue
        get_scoped_row(conn, "metric_definitions", org_id, metric_id, "Metric")
        group = str(item.get("group_name") or "").strip()[:100] if isinstance(item, Mapping) else ""
        items.append({"metric_id": metric_id, "sort_order": index, "group_name": group or None})
        seen.add(metric_id)
    return items


def _write_members(conn, org_id: int, scorecard_id: int, form: Mapping[str, Any]) -> None:
    items = _metric_items(conn, org_id, form)
    division_ids = _id_list(form.get("division_ids"))
    region_ids = _id_list(form.get("region_ids"))
    for division_id in division_ids:
        get_scoped_row(conn, "divisions", org_id, division_id, "Division")
    for region_id in region_ids:
        get_scoped_row(conn, "regions", org_id, region_id, "Region")

    conn.execute("DELETE FROM scorecard_metrics WHERE scorecard_id = ?", (scorecard_id,))
    conn.execute("DELETE FROM scorecard_divisions WHERE scorecard_id = ?", (scorecard_id,))
    conn.execute("DELETE FROM scorecard_regions WHERE scorecard_id = ?", (scorecard_id,))
    for item in items:
        conn.execute(
            "INSERT INTO scorecard_metrics (scorecard_id, metric_id, sort_order, group_name) VALUES (?, ?, ?, ?)",
            (scorecard_id, item["metric_id"], item["sort_order"], item["group_name"]),
        )
    for division_id in division_ids:
        conn.execute("INSERT INTO scorecard_divisions (scorecard_id, division_id) VALUES (?, ?)", (scorecard_id, division_id))
    for region_id in region_ids:
        conn.execute("INSERT INTO scorecard_regions (scorecard_id, region_id) VALUES (?, ?)", (scorecard_id, region_id))


def create_scorecard(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _scorecard_fields(form)
    _assert_slug_free(conn, "scorecards", org_id, fields["slug"], "scorecard")
    cur = conn.execute(
        """
        INSERT INTO scorecards (organization_id, name, slug, description, sort_order, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (org_id, fields["name"], fields["slug"], fields["description"], fields["sort_order"], fields["is_active"], iso(), iso()),
    )
    scorecard_id = int(cur.lastrowid)
    _write_members(conn, org_id, scorecard_id, form)
    log_action(conn, org_id, actor_id, "CREATE", "Scorecard", scorecard_id, f'Created scorecard "{fields["name"]}"')
    return {"scorecard_id": scorecard_id, "slug": fields["slug"]}


def update_scorecard(conn, org_id: int, actor_id: int, scorecard_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = snapshot_row(get_scoped_row(conn, "scorecards", org_id, scorecard_id, "Scorecard"))
    fields = _scorecard_fields(form)
    _assert_slug_free(conn, "scorecards", org_id, fields["slug"], "scorecard", exclude_id=before["id"])
    conn.execute(
        """
        UPDATE scorecards SET name = ?, slug = ?, description = ?, sort_order = ?, is_active = ?, updated_at = ?
        WHERE id = ? AND organization_id = ?
        """,
        (fields["name"], fields["slug"], fields["description"], fields["sort_order"], fields["is_active"], iso(), before["id"], org_id),
    )
    _write_members(conn, org_id, before["id"], form)
    log_action(
        conn, org_id, actor_id, "UPDATE", "Scorecard", before["id"],
        f'Updated scorecard "{fields["name"]}"', compute_changes(before, fields, fields.keys()),
    )
    return {"scorecard_id": before["id"], "slug": fields["slug"]}


def delete_scorecard(conn, org_id: int, actor_id: int, scorecard_id: Any) -> Dict[str, Any]:
    card = snapshot_row(get_scoped_row(conn, "scorecards", org_id, scorecard_id, "Scorecard"))
    conn.execute("DELETE FROM scorecards WHERE id = ? AND organization_id = ?", (card["id"], org_id))
    log_action(conn, org_id, actor_id, "DELETE", "Scorecard", card["id"], f'Deleted scorecard "{card["name"]}"')
    return {"scorecard_id": card["id"]}


def _year_entries(conn, org_id: int, metric_ids: Sequence[int], year: int, division_ids: Sequence[int], region_ids: Sequence[int]):
    if not metric_ids:
        return []
    clauses = [
        "organization_id = ?",
        f"metric_id IN ({', '.join('?' for _ in metric_ids)})",
        "period_start >= ?",
        "period_start <= ?",
    ]
    params: List[Any] = [org_id, *metric_ids, f"{year}-01-01", f"{year}-12-31"]
    scope = []
    if division_ids:
        scope.append(f"division_id IN ({', '.join('?' for _ in division_ids)})")
        params.extend(division_ids)
    if region_ids:
        scope.append(f"region_id IN ({', '.join('?' for _ in region_ids)})")
        params.extend(region_ids)
    if scope:
        clauses.append("(" + " OR ".join(scope) + ")")
    rows = conn.execute(
        f"""
        SELECT metric_id, period_start, value, numerator, denominator
        FROM metric_entries WHERE {' AND '.join(clauses)}
        ORDER BY period_start
        """,
        tuple(params),
    ).fetchall()
    return rows_to_dicts(rows)


def _year_to_date(months: Sequence[Optional[float]], kind: str) -> Optional[float]:
    values = [value for value in months if value is not None]
    if not values:
        return None
    if kind == "sum":
        return round_half_up(sum(values), 2)
    return aggregate_values(values, kind)


def build_scorecard(conn, org_id: int, scorecard_id: Any, year: Any = None) -> Dict[str, Any]:
    """Monthly grid for every metric on a scorecard.

    Each month is computed with the metric's weighted aggregation, so
    proportions and rates roll up from their numerators and denominators.
    YTD then aggregates the months that have data, so a month with many
    entries counts once like any other.
    """
    year_value = to_int(year) if year not in (None, "") else today().year
    if year_value is None or not MIN_YEAR <= year_value <= MAX_YEAR:
        raise ValidationError(f"Year must be between {MIN_YEAR} and {MAX_YEAR}.")
    card = get_scorecard(conn, org_id, scorecard_id)

    metric_ids = [int(m["metric_id"]) for m in card["metrics"]]
    definitions = {
        int(row["id"]): snapshot_row(row)
        for row in conn.execute(
            f"SELECT * FROM metric_definitions WHERE id IN ({', '.join('?' for _ in metric_ids) or 'NULL'})",
            tuple(metric_ids),
        ).fetchall()
    }
    entries = _year_entries(conn, org_id, metric_ids, year_value, card["division_ids"], card["region_ids"])
    by_metric: Dict[int, Dict[int, List[Dict[str, Any]]]] = {}
    for entry in entries:
        month = int(str(entry["period_start"])[5:7])
        by_metric.setdefault(int(entry["metric_id"]), {}).setdefault(month, []).append(entry)

    rows = []
    for item in card["metrics"]:
        metric = definitions.get(int(item["metric_id"]))
        if metric is None:
            continue
        months_data = by_metric.get(int(metric["id"]), {})
        months: List[Optional[float]] = []
        for month in range(1, 13):
            months.append(aggregate_values_weighted(months_data.get(month, []), metric["data_type"], metric["aggregation_type"]))
        ytd = _year_to_date(months, metric["aggregation_type"])
        rows.append(
            {
                "metric_id": metric["id"],
                "name": metric["name"],
                "slug": metric["slug"],
                "unit": metric["unit"],
                "group_name": item["group_name"],
                "months": months,
                "formatted_months": [format_for(metric, value) if value is not None else "" for value in months],
                "ytd": ytd,
                "formatted_ytd": format_for(metric, ytd),
                "target": metric["target"],
                "desired_direction": metric["desired_direction"],
                "months_met": [target_met(metric, value) for value in months],
                "ytd_met": target_met(metric, ytd),
            }
        )
    return {
        "scorecard": card,
        "year": year_value,
        "month_labels": list(MONTH_ABBR),
        "rows": rows,
    }
