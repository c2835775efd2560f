"""Tests for the paginated listings: audit log, users and entries."""

import datetime as dt

import pytest

from emsdash import entries, metrics, org
from emsdash.audit import list_audit_log
from emsdash.auth import register_user
from emsdash.utils import today

from conftest import STRONG_PASSWORD


@pytest.fixture
def departments(conn, org_id, admin_id):
    """Twelve departments, each with its own CREATE audit row."""
    ids = [
        org.create_department(conn, org_id, admin_id, {"name": f"Unit {n:02d}"})["department_id"]
        for n in range(1, 13)
    ]
    conn.commit()
    return ids


class TestAuditLog:
    """Filters and paging on the audit log."""

    def test_newest_first(self, conn, org_id, departments):
        result = list_audit_log(conn, org_id, {"entity": "Department"}, 1, 10)
        assert result["pagination"]["total_items"] == 12
        assert result["pagination"]["total_pages"] == 2
        assert len(result["items"]) == 10
        assert result["items"][0]["details"].startswith('Created department "Unit 12"')

    def test_page_past_end_clamps(self, conn, org_id, departments):
        result = list_audit_log(conn, org_id, {"entity": "Department"}, 9, 10)
        assert result["pagination"]["page"] == 2
        assert result["pagination"]["has_prev"] is True
        assert [i["entity_id"] for i in result["items"]] == [str(departments[1]), str(departments[0])]

    def test_action_filter_parses_changes(self, conn, org_id, admin_id, departments):
        org.update_department(conn, org_id, admin_id, departments[0], {"name": "Unit One"})
        result = list_audit_log(conn, org_id, {"action": "update", "entity": "Department"}, 1, 10)
        (item,) = result["items"]
        assert item["action"] == "UPDATE"
        assert isinstance(item["changes"], dict)

    def test_user_filter(self, conn, org_id, make_user):
        manager_id = make_user("manager", email="boss@example.org")
        org.create_department(conn, org_id, manager_id, {"name": "Logistics"})
        result = list_audit_log(conn, org_id, {"user_id": manager_id}, 1, 10)
        assert [i["user_email"] for i in result["items"]] == ["boss@example.org"]

    def test_date_range(self, conn, org_id, departments):
        day = today()
        tomorrow = (day + dt.timedelta(days=1)).isoformat()
        yesterday = (day - dt.timedelta(days=1)).isoformat()
        in_range = {"entity": "Department", "from": day.isoformat(), "to": day.isoformat()}
        assert list_audit_log(conn, org_id, in_range, 1, 10)["pagination"]["total_items"] == 12
        assert list_audit_log(conn, org_id, {"from": tomorrow}, 1, 10)["items"] == []
        assert list_audit_log(conn, org_id, {"to": yesterday}, 1, 10)["items"] == []

    def test_search_details(self, conn, org_id, departments):
        result = list_audit_log(conn, org_id, {"q": "unit 07"}, 1, 10)
        assert [i["entity_id"] for i in result["items"]] == [str(departments[6])]

    def test_scoped_to_organization(self, conn, departments):
        assert list_audit_log(conn, 999, {}, 1, 10)["pagination"]["total_items"] == 0


class TestUserListing:
    """Filters and ordering on the member list."""

    def test_admin_only(self, conn, org_id):
        result = org.list_users(conn, org_id, {}, 1, 25)
        assert result["pagination"]["total_items"] == 1
        assert result["items"][0]["role"] == "admin"

    def test_role_filter_orders_by_last_name(self, conn, org_id, make_user):
        make_user("fto", last_name="Zulu")
        make_user("fto", last_name="Alpha")
        make_user("trainee")
        result = org.list_users(conn, org_id, {"role": "fto"}, 1, 25)
        assert [u["last_name"] for u in result["items"]] == ["Alpha", "Zulu"]

    def test_unknown_role_ignored(self, conn, org_id, make_user):
        make_user("fto")
        assert org.list_users(conn, org_id, {"role": "pilot"}, 1, 25)["pagination"]["total_items"] == 2

    def test_status_filter(self, conn, org_id, make_user):
        make_user("fto")
        form = {"email": "new@example.org", "first_name": "New", "last_name": "Medic", "password": STRONG_PASSWORD}
        register_user(conn, org_id, form)
        result = org.list_users(conn, org_id, {"status": "pending"}, 1, 25)
        assert [u["email"] for u in result["items"]] == ["new@example.org"]

    def test_search_by_name_or_email(self, conn, org_id, make_user):
        make_user("supervisor", email="sgt.rivera@example.org", first_name="Ana", last_name="Rivera")
        make_user("fto")
        by_name = org.list_users(conn, org_id, {"q": "ana riv"}, 1, 25)
        by_email = org.list_users(conn, org_id, {"q": "SGT."}, 1, 25)
        assert [u["name"] for u in by_name["items"]] == ["Ana Rivera"]
        assert [u["email"] for u in by_email["items"]] == ["sgt.rivera@example.org"]

    def test_paging(self, conn, org_id, make_user):
        for _ in range(11):
            make_user("data_entry")
        result = org.list_users(conn, org_id, {}, 3, 10)
        assert result["pagination"]["page"] == 2
        assert result["pagination"]["total_items"] == 12
        assert len(result["items"]) == 2


class TestEntryListing:
    @pytest.fixture
    def metric_id(self, conn, org_id, admin_id, department):
        metric_id = metrics.create_metric(
            conn, org_id, admin_id, {"department_id": department["id"], "name": "Chute Time", "unit": "duration"}
        )["metric_id"]
        for period in ("2024-01-01", "2024-03-01", "2024-02-01"):
            entries.create_entry(conn, org_id, admin_id, {"metric_id": metric_id, "period_start": period, "value": 1})
        return metric_id

    def test_newest_period_first(self, conn, org_id, metric_id):
        result = entries.list_entries(conn, org_id, {}, 1, 25)
        assert [e["period_start"] for e in result["items"]] == ["2024-03-01", "2024-02-01", "2024-01-01"]
        assert result["items"][0]["metric_name"] == "Chute Time"

    def test_date_filters(self, conn, org_id, metric_id):
        result = entries.list_entries(conn, org_id, {"from": "2024-02-01", "to": "2024-02-28"}, 1, 25)
        assert [e["period_start"] for e in result["items"]] == ["2024-02-01"]

    def test_empty(self, conn, org_id):
        result = entries.list_entries(conn, org_id, {}, 1, 25)
        assert result["items"] == []
        assert result["pagination"]["total_pages"] == 1
