"""Tests for the CSV report exports."""

import csv
import io

import pytest

from emsdash import coaching, config, field_training as ft, org, reports, skills


def read_csv(text):
    return list(csv.DictReader(io.StringIO(text)))


@pytest.fixture
def crew(conn, org_id, admin_id, make_user):
    """An FTO with one assigned trainee and a second, unassigned trainee."""
    fto = make_user("fto", first_name="Dana", last_name="Ortiz", employee_id="F-100")
    trainee = make_user("trainee", first_name="Sam", last_name="Lee", employee_id="T-200", trainee_status="active")
    other = make_user("trainee", first_name="Alex", last_name="Kim", trainee_status="remediation")
    ft.create_assignment(conn, org_id, admin_id, {"trainee_id": trainee, "fto_id": fto})
    conn.commit()
    return {"fto": fto, "trainee": trainee, "other": other}


@pytest.fixture
def categories(conn, org_id):
    return ft.list_evaluation_categories(conn, org_id)


class TestDorExport:
    def test_rows_and_rating_columns(self, conn, org_id, crew, categories):
        first = categories[0]
        form = {
            "trainee_id": crew["trainee"],
            "evaluation_date": "2024-05-01",
            "overall_rating": "5",
            "nrt_flag": "1",
            f"rating_{first['id']}": "6",
        }
        ft.create_dor(conn, org_id, crew["fto"], form, submit=True)
        (row,) = read_csv(reports.export_dor_csv(conn, org_id, {}))
        assert row["trainee_name"] == "Sam Lee"
        assert row["trainee_employee_id"] == "T-200"
        assert row["fto_name"] == "Dana Ortiz"
        assert row["nrt_flag"] == "Yes"
        assert row["rem_flag"] == "No"
        assert row["status"] == "submitted"
        assert row[f"rating_{first['name']}"] == "6"
        assert row[f"rating_{categories[1]['name']}"] == ""

    def test_filters(self, conn, org_id, crew):
        for day in ("2024-05-01", "2024-05-10", "2024-06-01"):
            ft.create_dor(conn, org_id, crew["fto"], {"trainee_id": crew["trainee"], "evaluation_date": day, "overall_rating": "4"})
        ft.create_dor(conn, org_id, crew["fto"], {"trainee_id": crew["other"], "evaluation_date": "2024-05-05", "overall_rating": "4"})
        rows = read_csv(reports.export_dor_csv(conn, org_id, {"trainee_id": crew["trainee"], "from": "2024-05-01", "to": "2024-05-31"}))
        assert [r["date"] for r in rows] == ["2024-05-10", "2024-05-01"]

    def test_header_only_when_empty(self, conn, org_id):
        text = reports.export_dor_csv(conn, org_id, {})
        assert text.splitlines()[0].startswith("date,trainee_name,")
        assert read_csv(text) == []


class TestTrainingProgressExport:
    def test_totals(self, conn, org_id, admin_id, crew, categories):
        coaching.create_activity(conn, org_id, admin_id, {"category_id": categories[0]["id"], "title": "Radio discipline"})
        category = skills.create_skill_category(conn, org_id, admin_id, {"name": "Airway"})["category_id"]
        bvm = skills.create_skill(conn, org_id, admin_id, {"category_id": category, "name": "BVM ventilation"})["skill_id"]
        skills.create_skill(conn, org_id, admin_id, {"category_id": category, "name": "Suction"})
        skills.signoff_skill(conn, org_id, crew["fto"], crew["trainee"], bvm)
        for rating, poor in (("4", "2"), ("5", "6")):
            form = {
                "trainee_id": crew["trainee"],
                "evaluation_date": "2024-05-01",
                "overall_rating": rating,
                f"rating_{categories[0]['id']}": poor,
            }
            ft.create_dor(conn, org_id, crew["fto"], form, submit=True)
        rows = {r["trainee_name"]: r for r in read_csv(reports.export_training_progress_csv(conn, org_id, {}))}
        row = rows["Sam Lee"]
        assert row["total_dors"] == "2"
        assert row["avg_overall_rating"] == "4.50"
        assert (row["skills_completed"], row["total_skills"], row["skills_percent"]) == ("1", "2", "50.0%")
        assert (row["phases_completed"], row["total_phases"]) == ("0", "5")
        assert (row["coaching_assigned"], row["coaching_completed"]) == ("1", "0")
        assert row["current_fto"] == "Dana Ortiz"
        assert rows["Alex Kim"]["avg_overall_rating"] == ""
        assert rows["Alex Kim"]["skills_percent"] == "0.0%"

    def test_no_skills_defined(self, conn, org_id, crew):
        rows = read_csv(reports.export_training_progress_csv(conn, org_id, {"trainee_id": crew["trainee"]}))
        assert [r["skills_percent"] for r in rows] == ["0%"]

    def test_status_filter(self, conn, org_id, crew):
        rows = read_csv(reports.export_training_progress_csv(conn, org_id, {"status": "remediation"}))
        assert [r["trainee_name"] for r in rows] == ["Alex Kim"]


class TestAuditExport:
    def test_filters_and_format(self, conn, org_id, admin_id):
        org.create_department(conn, org_id, admin_id, {"name": "Fleet"})
        org.create_category(conn, org_id, admin_id, {"name": "Response"})
        (row,) = read_csv(reports.export_audit_csv(conn, org_id, {"entity": "Department", "action": "create"}))
        assert row["action"] == "CREATE"
        assert row["user_email"] == config.ADMIN_EMAIL
        assert row["details"].startswith('Created department "Fleet"')
        assert len(row["timestamp"]) == 19
        assert "T" not in row["timestamp"]

    def test_limit(self, conn, org_id, admin_id, monkeypatch):
        monkeypatch.setattr(reports, "AUDIT_EXPORT_LIMIT", 2)
        for name in ("Fleet", "Stores", "Billing"):
            org.create_department(conn, org_id, admin_id, {"name": name})
        rows = read_csv(reports.export_audit_csv(conn, org_id, {"entity": "Department"}))
        assert [r["details"].split(" (")[0] for r in rows] == ['Created department "Billing"', 'Created department "Stores"']

    def test_date_range(self, conn, org_id, admin_id):
        org.create_department(conn, org_id, admin_id, {"name": "Fleet"})
        assert read_csv(reports.export_audit_csv(conn, org_id, {"entity": "Department", "to": "2000-01-01"})) == []


class TestRosterExport:
    def test_role_filter(self, conn, org_id, crew):
        rows = read_csv(reports.export_user_roster_csv(conn, org_id, {"role": "trainee"}))
        assert [r["name"] for r in rows] == ["Alex Kim", "Sam Lee"]
        assert rows[1]["employee_id"] == "T-200"
        assert len(rows[1]["created_at"]) == 10

    def test_everyone_by_default(self, conn, org_id, crew):
        rows = read_csv(reports.export_user_roster_csv(conn, org_id, {"role": "pilot"}))
        assert len(rows) == 4
        assert config.ADMIN_EMAIL in {r["email"] for r in rows}
