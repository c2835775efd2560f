"""Tests for the organization tree, metric definitions and data entry."""

import io

import pytest
from werkzeug.datastructures import FileStorage

from emsdash import entries, metrics, org
from emsdash.errors import NotFoundError, ValidationError


@pytest.fixture
def metric(conn, org_id, admin_id, department):
    """A proportion KPI in the clinical department."""
    result = metrics.create_metric(
        conn, org_id, admin_id,
        {"department_id": department["id"], "name": "ROSC Rate", "unit": "percentage", "target": "30", "is_kpi": "1"},
    )
    conn.commit()
    return result["metric_id"]


class TestOrganization:
    """Departments, divisions and regions."""

    def test_department_slug_from_name(self, department):
        assert department["slug"] == "clinical-quality"

    def test_duplicate_department_slug(self, conn, org_id, admin_id, department):
        with pytest.raises(ValidationError, match="already exists"):
            org.create_department(conn, org_id, admin_id, {"name": "Clinical  Quality"})

    def test_division_slugs_unique_across_departments(self, conn, org_id, admin_id, department):
        other = org.create_department(conn, org_id, admin_id, {"name": "Operations"})
        with pytest.raises(ValidationError, match="already exists"):
            org.create_division(conn, org_id, admin_id, {"department_id": other["department_id"], "name": "North"})

    def test_division_requires_department(self, conn, org_id, admin_id):
        with pytest.raises(ValidationError, match="Department is required"):
            org.create_division(conn, org_id, admin_id, {"name": "East"})

    def test_region_belongs_to_division(self, conn, org_id, admin_id, department):
        region_id = org.create_region(conn, org_id, admin_id, {"division_id": department["north_id"], "name": "Station 4"})["region_id"]
        regions = org.list_regions(conn, org_id, department["north_id"])
        assert [r["id"] for r in regions] == [region_id]
        assert org.list_regions(conn, org_id, department["south_id"]) == []

    def test_unknown_department(self, conn, org_id):
        with pytest.raises(NotFoundError):
            org.get_department_by_slug(conn, org_id, "nope")

    def test_invalid_department_type(self, conn, org_id, admin_id):
        with pytest.raises(ValidationError, match="Type must be one of"):
            org.create_department(conn, org_id, admin_id, {"name": "Fleet", "department_type": "garage"})


class TestMetricDefinitions:
    """Metric creation rules."""

    def test_unit_sets_defaults(self, conn, org_id, metric):
        row = metrics.get_metric(conn, org_id, metric)
        assert row["data_type"] == "proportion"
        assert row["aggregation_type"] == "average"
        assert row["desired_direction"] == "up"
        assert row["is_kpi"] == 1

    def test_duration_prefers_lower_values(self, conn, org_id, admin_id, department):
        metric_id = metrics.create_metric(
            conn, org_id, admin_id, {"department_id": department["id"], "name": "Response Time", "unit": "duration"}
        )["metric_id"]
        row = metrics.get_metric(conn, org_id, metric_id)
        assert row["desired_direction"] == "down"
        assert row["data_type"] == "continuous"

    def test_child_metric(self, conn, org_id, admin_id, department, metric):
        child = metrics.create_metric(
            conn, org_id, admin_id,
            {"department_id": department["id"], "name": "ROSC Witnessed", "unit": "percentage", "parent_id": metric},
        )
        assert [c["id"] for c in metrics.child_metrics(conn, org_id, metric)] == [child["metric_id"]]

    def test_no_grandchildren(self, conn, org_id, admin_id, department, metric):
        child = metrics.create_metric(
            conn, org_id, admin_id, {"department_id": department["id"], "name": "Child", "parent_id": metric}
        )
        with pytest.raises(ValidationError, match="one level deep"):
            metrics.create_metric(
                conn, org_id, admin_id,
                {"department_id": department["id"], "name": "Grandchild", "parent_id": child["metric_id"]},
            )

    def test_parent_in_same_department(self, conn, org_id, admin_id, metric):
        other = org.create_department(conn, org_id, admin_id, {"name": "Operations"})
        with pytest.raises(ValidationError, match="same department"):
            metrics.create_metric(
                conn, org_id, admin_id, {"department_id": other["department_id"], "name": "X", "parent_id": metric}
            )

    def test_baseline_order(self, conn, org_id, admin_id, department):
        form = {
            "department_id": department["id"],
            "name": "Baseline",
            "baseline_start": "2024-06-01",
            "baseline_end": "2024-01-01",
        }
        with pytest.raises(ValidationError, match="Baseline start"):
            metrics.create_metric(conn, org_id, admin_id, form)

    def test_sigma_level_bounds(self, conn, org_id, admin_id, department):
        form = {"department_id": department["id"], "name": "Sigma", "spc_sigma_level": "4"}
        with pytest.raises(ValidationError, match="Sigma level"):
            metrics.create_metric(conn, org_id, admin_id, form)

    def test_associations_replace(self, conn, org_id, admin_id, department, metric):
        metrics.add_association(conn, org_id, admin_id, metric, department["north_id"])
        result = metrics.set_associations(
            conn, org_id, admin_id, metric,
            [{"division_id": department["south_id"]}, {"division_id": department["south_id"]}],
        )
        assert result["count"] == 1
        assert [a["division_id"] for a in metrics.list_associations(conn, org_id, metric)] == [department["south_id"]]

    def test_duplicate_association(self, conn, org_id, admin_id, department, metric):
        metrics.add_association(conn, org_id, admin_id, metric, department["north_id"])
        with pytest.raises(ValidationError, match="already associated"):
            metrics.add_association(conn, org_id, admin_id, metric, department["north_id"])


class TestEntries:
    """Single entries."""

    def test_value_derived_from_counts(self, conn, org_id, admin_id, metric):
        entry_id = entries.create_entry(
            conn, org_id, admin_id, {"metric_id": metric, "period_start": "2024-03", "numerator": "12", "denominator": "40"}
        )["entry_id"]
        row = entries.get_entry(conn, org_id, entry_id)
        assert row["value"] == pytest.approx(30.0)
        assert row["period_start"] == "2024-03-01"
        assert row["period_type"] == "monthly"

    def test_duplicate_rejected(self, conn, org_id, admin_id, metric):
        form = {"metric_id": metric, "period_start": "2024-03-01", "value": "30"}
        entries.create_entry(conn, org_id, admin_id, form)
        with pytest.raises(ValidationError, match="already exists"):
            entries.create_entry(conn, org_id, admin_id, form)

    def test_same_period_other_division_allowed(self, conn, org_id, admin_id, department, metric):
        entries.create_entry(conn, org_id, admin_id, {"metric_id": metric, "period_start": "2024-03-01", "value": "30"})
        entries.create_entry(
            conn, org_id, admin_id,
            {"metric_id": metric, "period_start": "2024-03-01", "value": "40", "division_id": department["north_id"]},
        )
        listing = entries.list_entries(conn, org_id, {"metric_id": metric}, 1, 25)
        assert listing["pagination"]["total_items"] == 2

    def test_value_required(self, conn, org_id, admin_id, metric):
        with pytest.raises(ValidationError, match="Value is required"):
            entries.create_entry(conn, org_id, admin_id, {"metric_id": metric, "period_start": "2024-03-01"})

    def test_negative_denominator(self, conn, org_id, admin_id, metric):
        form = {"metric_id": metric, "period_start": "2024-03-01", "numerator": "1", "denominator": "-2"}
        with pytest.raises(ValidationError, match="cannot be negative"):
            entries.create_entry(conn, org_id, admin_id, form)

    def test_region_from_other_division(self, conn, org_id, admin_id, department, metric):
        region_id = org.create_region(conn, org_id, admin_id, {"division_id": department["north_id"], "name": "Station 4"})["region_id"]
        form = {
            "metric_id": metric,
            "period_start": "2024-03-01",
            "value": "1",
            "division_id": department["south_id"],
            "region_id": region_id,
        }
        with pytest.raises(ValidationError, match="does not belong"):
            entries.create_entry(conn, org_id, admin_id, form)

    def test_rate_value(self):
        assert entries.compute_entry_value("rate", None, 3, 200) == pytest.approx(0.015)
        assert entries.compute_entry_value("continuous", 7, 3, 200) == 7
        assert entries.compute_entry_value("proportion", 5, 3, 0) == 5


class TestBulkImport:
    """Uploaded rows."""

    def test_mixed_rows(self, conn, org_id, admin_id, department, metric):
        rows = [
            {"metric": "rosc-rate", "department": "clinical-quality", "period": "2024-01", "numerator": "3", "denominator": "10"},
            {"metric": "ROSC Rate", "division": "North", "period": "2024-01-01", "value": "25"},
            {"metric": "rosc-rate", "period": "2024-01", "value": "99"},
            {"metric": "unknown", "period": "2024-01", "value": "1"},
            {"metric": "rosc-rate", "period": "someday", "value": "1"},
        ]
        result = entries.bulk_create_entries(conn, org_id, admin_id, rows)
        assert result["created"] == 2
        assert result["skipped"] == 1
        messages = {e["row"]: e["message"] for e in result["errors"]}
        assert "Duplicate" in messages[3]
        assert messages[4] == 'Unknown metric "unknown"'
        assert messages[5].startswith("Invalid period")

    def test_empty_upload(self, conn, org_id, admin_id):
        with pytest.raises(ValidationError, match="No rows"):
            entries.bulk_create_entries(conn, org_id, admin_id, [])

    def test_csv_upload(self, conn, org_id, admin_id, metric):
        content = b"\xef\xbb\xbfMetric,Period,Value\nrosc-rate,2024-02,31\n"
        upload = FileStorage(stream=io.BytesIO(content), filename="entries.csv")
        result = entries.import_entries_csv(conn, org_id, admin_id, upload)
        assert result["created"] == 1

    def test_csv_requires_file(self):
        with pytest.raises(ValidationError, match="Choose a CSV"):
            entries.parse_csv_upload(None)

    def test_template_lists_associations(self, conn, org_id, admin_id, department, metric):
        metrics.add_association(conn, org_id, admin_id, metric, department["north_id"])
        lines = entries.csv_template(conn, org_id, department["id"]).strip().splitlines()
        assert lines[0].startswith("metric,department,division,region,period")
        assert lines[1].startswith("rosc-rate,clinical-quality,North,")

    def test_export_round_trips_through_import(self, conn, org_id, admin_id, metric):
        entries.create_entry(conn, org_id, admin_id, {"metric_id": metric, "period_start": "2024-03-01", "value": "30"})
        exported = entries.export_entries_csv(conn, org_id, {"metric_id": metric})
        conn.execute("DELETE FROM metric_entries")
        upload = FileStorage(stream=io.BytesIO(exported.encode()), filename="export.csv")
        assert entries.import_entries_csv(conn, org_id, admin_id, upload)["created"] == 1
