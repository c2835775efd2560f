"""Metric data entries: single edits, bulk CSV import, templates and export."""

from __future__ import annotations

import csv
import io
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from emsdash import config
from emsdash import validation as v
from emsdash.audit import compute_changes, log_action
from emsdash.db import get_scoped_row
from emsdash.errors import ValidationError
from emsdash.metrics import PERIOD_TYPES, get_metric
from emsdash.org import get_division, get_region
from emsdash.pagination import paginated_query
from emsdash.utils import iso, parse_date, parse_period_date, rows_to_dicts, slugify, snapshot_row, to_float, to_int, today

logger = logging.getLogger(__name__)

DUPLICATE_ENTRY_ERROR = "An entry already exists for this metric, department, division, region, and period combination."

CSV_COLUMNS = [
    "metric",
    "department",
    "division",
    "region",
    "period",
    "period_type",
    "value",
    "numerator",
    "denominator",
    "notes",
]

ENTRY_FIELDS = (
    "metric_id",
    "department_id",
    "division_id",
    "region_id",
    "period_type",
    "period_start",
    "value",
    "numerator",
    "denominator",
    "notes",
)


def compute_entry_value(data_type: str, value: Optional[float], numerator: Optional[float], denominator: Optional[float]) -> Optional[float]:
    """Derive the stored value from N/D for proportion and rate metrics."""
    if numerator is not None and denominator is not None and denominator > 0:
        if data_type == "proportion":
            return numerator / denominator * 100
        if data_type == "rate":
            return numerator / denominator
    return value


def _scope_ids(conn, org_id: int, division_id: Any, region_id: Any) -> Tuple[Optional[int], Optional[int]]:
    division_id = to_int(division_id)
    region_id = to_int(region_id)
    if division_id:
        get_division(conn, org_id, division_id)
    if region_id:
        region = get_region(conn, org_id, region_id)
        if division_id and int(region["division_id"]) != division_id:
            raise ValidationError("Region does not belong to the selected division.")
        division_id = division_id or int(region["division_id"])
    return division_id, region_id


def _entry_fields(conn, org_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    metric_id = to_int(form.get("metric_id"))
    if not metric_id:
        raise ValidationError("Metric is required.")
    metric = get_metric(conn, org_id, metric_id)
    division_id, region_id = _scope_ids(conn, org_id, form.get("division_id"), form.get("region_id"))

    period = parse_period_date(form.get("period_start"))
    if period is None:
        raise ValidationError("Invalid period start date.")
    numerator = v.number(form, "numerator", "Numerator")
    denominator = v.number(form, "denominator", "Denominator")
    if denominator is not None and denominator < 0:
        raise ValidationError("Denominator cannot be negative.")
    value = compute_entry_value(metric["data_type"], v.number(form, "value", "Value"), numerator, denominator)
    if value is None:
        raise ValidationError("Value is required.")

    return {
        "metric_id": int(metric["id"]),
        "department_id": int(metric["department_id"]),
        "division_id": division_id,
        "region_id": region_id,
        "period_type": v.choice(form, "period_type", "Period type", PERIOD_TYPES, default=metric["period_type"]),
        "period_start": period.isoformat(),
        "value": value,
        "numerator": numerator,
        "denominator": denominator,
        "notes": v.text(form, "notes", "Notes", max_len=1000),
    }


def _find_duplicate(conn, fields: Mapping[str, Any], exclude_id: Optional[int] = None) -> bool:
    row = conn.execute(
        """
        SELECT id FROM metric_entries
        WHERE metric_id = ? AND department_id = ? AND COALESCE(division_id, 0) = ? AND COALESCE(region_id, 0) = ?
          AND period_type = ? AND period_start = ?
        """,
        (
            fields["metric_id"],
            fields["department_id"],
            fields["division_id"] or 0,
            fields["region_id"] or 0,
            fields["period_type"],
            fields["period_start"],
        ),
    ).fetchone()
    return bool(row) and (exclude_id is None or int(row["id"]) != int(exclude_id))


def _insert_entry(conn, org_id: int, actor_id: Optional[int], fields: Mapping[str, Any]) -> int:
    columns = ", ".join(ENTRY_FIELDS)
    placeholders = ", ".join("?" for _ in ENTRY_FIELDS)
    cur = conn.execute(
        f"""
        INSERT INTO metric_entries (organization_id, {columns}, created_by, created_at, updated_at)
        VALUES (?, {placeholders}, ?, ?, ?)
        """,
        (org_id, *[fields[name] for name in ENTRY_FIELDS], actor_id, iso(), iso()),
    )
    return int(cur.lastrowid)


def get_entry(conn, org_id: int, entry_id: Any) -> Dict[str, Any]:
    return snapshot_row(get_scoped_row(conn, "metric_entries", org_id, entry_id, "Entry"))


def create_entry(conn, org_id: int, actor_id: int, form: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _entry_fields(conn, org_id, form)
    if _find_duplicate(conn, fields):
        raise ValidationError(DUPLICATE_ENTRY_ERROR)
    entry_id = _insert_entry(conn, org_id, actor_id, fields)
    log_action(
        conn, org_id, actor_id, "CREATE", "MetricEntry", entry_id,
        f"Created entry: value={fields['value']} for metric {fields['metric_id']}, period {fields['period_start']}",
    )
    return {"entry_id": entry_id}


def update_entry(conn, org_id: int, actor_id: int, entry_id: Any, form: Mapping[str, Any]) -> Dict[str, Any]:
    before = get_entry(conn, org_id, entry_id)
    fields = _entry_fields(conn, org_id, form)
    if _find_duplicate(conn, fields, exclude_id=before["id"]):
        raise ValidationError(DUPLICATE_ENTRY_ERROR)
    assignments = ", ".join(f"{name} = ?" for name in ENTRY_FIELDS)
    conn.execute(
        f"UPDATE metric_entries SET {assignments}, updated_at = ? WHERE id = ?",
        (*[fields[name] for name in ENTRY_FIELDS], iso(), before["id"]),
    )
    log_action(
        conn, org_id, actor_id, "UPDATE", "MetricEntry", before["id"],
        f"Updated entry for metric {fields['metric_id']}, period {fields['period_start']}",
        compute_changes(before, fields, ENTRY_FIELDS),
    )
    return {"entry_id": before["id"]}


def delete_entry(conn, org_id: int, actor_id: int, entry_id: Any) -> Dict[str, Any]:
    before = get_entry(conn, org_id, entry_id)
    conn.execute("DELETE FROM metric_entries WHERE id = ?", (before["id"],))
    log_action(
        conn, org_id, actor_id, "DELETE", "MetricEntry", before["id"],
        f"Deleted entry for metric {before['metric_id']}, period {before['period_start']}",
        compute_changes(before, {}, ("value", "numerator", "denominator", "period_start")),
    )
    return {"entry_id": before["id"]}


def _entry_filters(filters: Mapping[str, Any]) -> Tuple[List[str], List[Any]]:
    clauses = ["e.organization_id = ?"]
    params: List[Any] = []
    for key in ("metric_id", "department_id", "division_id", "region_id"):
        value = to_int(filters.get(key))
        if value:
            clauses.append(f"e.{key} = ?")
            params.append(value)
    date_from = parse_date(filters.get("from"))
    if date_from:
        clauses.append("e.period_start >= ?")
        params.append(date_from)
    date_to = parse_date(filters.get("to"))
    if date_to:
        clauses.append("e.period_start <= ?")
        params.append(date_to)
    return clauses, params


ENTRY_SELECT = """
    SELECT e.id, e.metric_id, m.name AS metric_name, m.slug AS metric_slug, m.unit, m.data_type,
           e.department_id, d.name AS department_name, d.slug AS department_slug,
           e.division_id, dv.name AS division_name, e.region_id, r.name AS region_name,
           e.period_type, e.period_start, e.value, e.numerator, e.denominator, e.notes,
           e.created_at, e.updated_at
    FROM metric_entries e
    JOIN metric_definitions m ON m.id = e.metric_id
    JOIN departments d ON d.id = e.department_id
    LEFT JOIN divisions dv ON dv.id = e.division_id
    LEFT JOIN regions r ON r.id = e.region_id
"""


def list_entries(conn, org_id: int, filters: Mapping[str, Any], page: int, page_size: int) -> Dict[str, Any]:
    clauses, params = _entry_filters(filters)
    base_sql = f"{ENTRY_SELECT} WHERE {' AND '.join(clauses)}"
    result = paginated_query(conn, base_sql, [org_id, *params], page, page_size, order_by="e.period_start DESC, e.id DESC")
    return {"items": rows_to_dicts(result["items"]), "pagination": result["pagination"]}


# Bulk import


class _Lookups:
    """Name and slug indexes used to resolve CSV rows to ids."""

    def __init__(self, conn, org_id: int):
        self.departments = {}
        for row in conn.execute("SELECT id, name, slug FROM departments WHERE organization_id = ?", (org_id,)).fetchall():
            self.departments[str(row["slug"]).lower()] = int(row["id"])
            self.departments[str(row["name"]).lower()] = int(row["id"])

        self.metrics: Dict[str, List[Dict[str, Any]]] = {}
        for row in conn.execute(
            "SELECT id, name, slug, department_id, data_type, period_type FROM metric_definitions WHERE organization_id = ? AND is_active = 1",
            (org_id,),
        ).fetchall():
            item = snapshot_row(row)
            for key in {str(row["slug"]).lower(), str(row["name"]).lower()}:
                self.metrics.setdefault(key, []).append(item)

        self.divisions = {}
        for row in conn.execute("SELECT id, name, slug FROM divisions WHERE organization_id = ?", (org_id,)).fetchall():
            self.divisions[str(row["slug"]).lower()] = int(row["id"])
            self.divisions[str(row["name"]).lower()] = int(row["id"])

        self.regions: Dict[Tuple[int, str], int] = {}
        self.region_names: Dict[str, List[Tuple[int, int]]] = {}
        for row in conn.execute("SELECT id, name, division_id FROM regions WHERE organization_id = ?", (org_id,)).fetchall():
            name = str(row["name"]).lower()
            self.regions[(int(row["division_id"]), name)] = int(row["id"])
            self.region_names.setdefault(name, []).append((int(row["id"]), int(row["division_id"])))

    def metric(self, raw_metric: str, raw_department: str) -> Dict[str, Any]:
        candidates = self.metrics.get(raw_metric.strip().lower()) or self.metrics.get(slugify(raw_metric)) or []
        if raw_department:
            department_id = self.departments.get(raw_department.strip().lower())
            if department_id is None:
                raise ValidationError(f'Unknown department "{raw_department}"')
            candidates = [m for m in candidates if int(m["department_id"]) == department_id]
        if not candidates:
            raise ValidationError(f'Unknown metric "{raw_metric}"')
        if len(candidates) > 1:
            raise ValidationError(f'Metric "{raw_metric}" exists in several departments; add a department column')
        return candidates[0]

    def scope(self, raw_division: str, raw_region: str) -> Tuple[Optional[int], Optional[int]]:
        division_id = None
        if raw_division:
            division_id = self.divisions.get(raw_division.strip().lower())
            if division_id is None:
                raise ValidationError(f'Unknown division "{raw_division}"')
        if not raw_region:
            return division_id, None
        name = raw_region.strip().lower()
        if division_id is not None:
            region_id = self.regions.get((division_id, name))
            if region_id is None:
                raise ValidationError(f'Unknown region "{raw_region}" in division "{raw_division}"')
            return division_id, region_id
        matches = self.region_names.get(name, [])
        if len(matches) != 1:
            raise ValidationError(f'Region "{raw_region}" is unknown or ambiguous; add a division column')
        region_id, division_id = matches[0]
        return division_id, region_id


def _resolve_row(lookups: _Lookups, raw: Mapping[str, Any]) -> Dict[str, Any]:
    def cell(key: str) -> str:
        return str(raw.get(key) or "").strip()

    if not cell("metric"):
        raise ValidationError("Metric is required")
    metric = lookups.metric(cell("metric"), cell("department"))
    division_id, region_id = lookups.scope(cell("division"), cell("region"))
    period = parse_period_date(cell("period") or cell("period_start"))
    if period is None:
        raise ValidationError(f'Invalid period "{cell("period")}"')
    period_type = cell("period_type") or metric["period_type"]
    if period_type not in PERIOD_TYPES:
        raise ValidationError(f'Invalid period type "{period_type}"')

    numerator = to_float(cell("numerator"))
    denominator = to_float(cell("denominator"))
    if cell("numerator") and numerator is None:
        raise ValidationError(f'Invalid numerator "{cell("numerator")}"')
    if cell("denominator") and denominator is None:
        raise ValidationError(f'Invalid denominator "{cell("denominator")}"')
    value = to_float(cell("value"))
    if cell("value") and value is None:
        raise ValidationError(f'Invalid value "{cell("value")}"')
    value = compute_entry_value(metric["data_type"], value, numerator, denominator)
    if value is None:
        raise ValidationError("Value is required")

    return {
        "metric_id": int(metric["id"]),
        "department_id": int(metric["department_id"]),
        "division_id": division_id,
        "region_id": region_id,
        "period_type": period_type,
        "period_start": period.isoformat(),
        "value": value,
        "numerator": numerator,
        "denominator": denominator,
        "notes": cell("notes")[:1000] or None,
    }


def bulk_create_entries(conn, org_id: int, actor_id: int, rows: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """Resolve and insert uploaded rows.

    Rows are committed in chunks so a large upload does not hold one long
    write transaction. Rows that fail to resolve are reported with their
    1-based row number; rows that duplicate an existing entry are skipped.
    """
    if not rows:
        raise ValidationError("No rows to import.")
    if len(rows) > config.MAX_UPLOAD_ROWS:
        raise ValidationError(f"Too many rows ({len(rows)}). Maximum is {config.MAX_UPLOAD_ROWS:,} per upload.")

    lookups = _Lookups(conn, org_id)
    created = 0
    skipped = 0
    errors: List[Dict[str, Any]] = []
    chunk_size = max(1, config.UPLOAD_CHUNK_SIZE)
    for start in range(0, len(rows), chunk_size):
        for offset, raw in enumerate(rows[start : start + chunk_size]):
            row_number = start + offset + 1
            try:
                fields = _resolve_row(lookups, raw)
            except ValidationError as exc:
                errors.append({"row": row_number, "message": exc.message})
                continue
            if _find_duplicate(conn, fields):
                skipped += 1
                errors.append({"row": row_number, "message": "Duplicate of an existing entry; skipped"})
                continue
            _insert_entry(conn, org_id, actor_id, fields)
            created += 1
        conn.commit()

    log_action(
        conn, org_id, actor_id, "CSV_IMPORT", "MetricEntry", "csv-upload",
        f"CSV import: {created} entries created, {skipped} skipped, {len(errors) - skipped} errors",
    )
    logger.info("CSV import for org %s: created=%s skipped=%s errors=%s", org_id, created, skipped, len(errors) - skipped)
    return {"created": created, "skipped": skipped, "errors": errors}


def parse_csv_upload(file_storage) -> List[Dict[str, str]]:
    """Read an uploaded CSV (werkzeug ``FileStorage``) into dict rows with normalized headers."""
    if file_storage is None or not getattr(file_storage, "filename", ""):
        raise ValidationError("Choose a CSV file to upload.")
    content = file_storage.read().decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(content))
    if not reader.fieldnames:
        raise ValidationError("The CSV file has no header row.")
    rows = []
    for raw in reader:
        rows.append({str(key or "").strip().lower().replace(" ", "_"): (value or "") for key, value in raw.items()})
    return rows


def import_entries_csv(conn, org_id: int, actor_id: int, file_storage) -> Dict[str, Any]:
    return bulk_create_entries(conn, org_id, actor_id, parse_csv_upload(file_storage))


def csv_template(conn, org_id: int, department_id: Any = None) -> str:
    """One row per metric association (or per metric when it has none) for the current month."""
    params: List[Any] = [org_id]
    department_clause = ""
    if to_int(department_id):
        department_clause = "AND m.department_id = ?"
        params.append(to_int(department_id))
    rows = conn.execute(
        f"""
        SELECT m.slug AS metric, d.slug AS department, m.period_type, m.data_type,
               dv.name AS division, r.name AS region
        FROM metric_definitions m
        JOIN departments d ON d.id = m.department_id
        LEFT JOIN metric_associations a ON a.metric_id = m.id
        LEFT JOIN divisions dv ON dv.id = a.division_id
        LEFT JOIN regions r ON r.id = a.region_id
        WHERE m.organization_id = ? AND m.is_active = 1 {department_clause}
        ORDER BY d.sort_order, m.sort_order, m.name, dv.name, r.name
        """,
        tuple(params),
    ).fetchall()
    period = today().replace(day=1).isoformat()
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=CSV_COLUMNS)
    writer.writeheader()
    for row in rows:
        writer.writerow(
            {
                "metric": row["metric"],
                "department": row["department"],
                "division": row["division"] or "",
                "region": row["region"] or "",
                "period": period,
                "period_type": row["period_type"],
                "value": "",
                "numerator": "",
                "denominator": "",
                "notes": "",
            }
        )
    return buf.getvalue()


def export_entries_csv(conn, org_id: int, filters: Mapping[str, Any]) -> str:
    clauses, params = _entry_filters(filters)
    rows = conn.execute(
        f"{ENTRY_SELECT} WHERE {' AND '.join(clauses)} ORDER BY e.period_start, m.name, e.id",
        (org_id, *params),
    ).fetchall()
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=CSV_COLUMNS)
    writer.writeheader()
    for row in rows:
        writer.writerow(
            {
                "metric": row["metric_slug"],
                "department": row["department_slug"],
                "division": row["division_name"] or "",
                "region": row["region_name"] or "",
                "period": row["period_start"],
                "period_type": row["period_type"],
                "value": row["value"],
                "numerator": "" if row["numerator"] is None else row["numerator"],
                "denominator": "" if row["denominator"] is None else row["denominator"],
                "notes": row["notes"] or "",
            }
        )
    return buf.getvalue()
