"""Tests for dashboard read models and scorecards."""

import pytest

from emsdash import dashboard, entries, metrics, org, scorecards
from emsdash.errors import NotFoundError, ValidationError
from emsdash.org import set_department_active


@pytest.fixture
def populated(conn, org_id, admin_id, department):
    """Six months of ROSC counts plus a response time metric and division rows."""
    rosc = metrics.create_metric(
        conn, org_id, admin_id,
        {"department_id": department["id"], "name": "ROSC Rate", "unit": "percentage", "target": "30", "is_kpi": "1"},
    )["metric_id"]
    response = metrics.create_metric(
        conn, org_id, admin_id,
        {"department_id": department["id"], "name": "Response Time", "unit": "duration", "target": "8"},
    )["metric_id"]
    for month, (numerator, denominator) in enumerate([(2, 10), (3, 10), (2, 10), (4, 10), (5, 10), (4, 10)], start=1):
        entries.create_entry(
            conn, org_id, admin_id,
            {"metric_id": rosc, "period_start": f"2024-{month:02d}-01", "numerator": numerator, "denominator": denominator},
        )
        entries.create_entry(
            conn, org_id, admin_id,
            {"metric_id": response, "period_start": f"2024-{month:02d}-01", "value": 9 - month * 0.5},
        )
    entries.create_entry(
        conn, org_id, admin_id,
        {"metric_id": rosc, "period_start": "2024-01-01", "numerator": 9, "denominator": 10, "division_id": department["north_id"]},
    )
    conn.commit()
    return {"rosc": rosc, "response": response}


class TestHelpers:
    """Trend and target evaluation."""

    def test_half_trend_odd_count(self):
        """The middle value belongs to the older half."""
        previous, trend, direction = dashboard.half_trend([10, 10, 10, 20, 20], "average")
        assert previous == 10
        assert trend == 100.0
        assert direction == "up"

    def test_half_trend_flat_cases(self):
        assert dashboard.half_trend([5], "average") == (0.0, 0.0, "flat")
        assert dashboard.half_trend([0, 4], "average")[2] == "flat"
        assert dashboard.half_trend([100, 100.2], "average")[2] == "flat"

    def test_target_met_respects_direction(self):
        assert dashboard.target_met({"target": 8, "desired_direction": "down"}, 7.5) is True
        assert dashboard.target_met({"target": 8, "desired_direction": "down"}, 9) is False
        assert dashboard.target_met({"target": 30, "desired_direction": "up"}, 30) is True
        assert dashboard.target_met({"target": None}, 5) is None


class TestDepartmentOverview:
    """Department page read model."""

    def test_kpis_only_for_kpi_metrics(self, conn, org_id, department, populated):
        overview = dashboard.department_overview(conn, org_id, department["slug"])
        assert [k["metric_id"] for k in overview["kpis"]] == [populated["rosc"]]
        assert {m["id"] for m in overview["metrics"]} == {populated["rosc"], populated["response"]}

    def test_card_uses_department_level_entries(self, conn, org_id, department, populated):
        card = dashboard.department_overview(conn, org_id, department["slug"])["kpis"][0]
        assert card["period_count"] == 6
        assert card["current_value"] == pytest.approx(33.333333)
        assert card["target_met"] is True
        assert card["trend_direction"] == "up"
        assert card["formatted_value"] == "33.3%"

    def test_division_filter(self, conn, org_id, department, populated):
        overview = dashboard.department_overview(conn, org_id, department["slug"], division_id=department["north_id"])
        card = overview["kpis"][0]
        assert card["period_count"] == 1
        assert card["current_value"] == pytest.approx(90.0)

    def test_inactive_department_hidden(self, conn, org_id, admin_id, department):
        set_department_active(conn, org_id, admin_id, department["id"], False)
        with pytest.raises(NotFoundError):
            dashboard.department_overview(conn, org_id, department["slug"])

    def test_divisions_listed(self, conn, org_id, department, populated):
        overview = dashboard.department_overview(conn, org_id, department["slug"])
        assert [d["name"] for d in overview["divisions"]] == ["North", "South"]


class TestDivisionOverview:
    @pytest.fixture
    def stations(self, conn, org_id, admin_id, department, populated):
        """Two North regions with January ROSC counts."""
        ids = []
        for name, numerator in (("Station 4", 1), ("Station 7", 3)):
            region_id = org.create_region(conn, org_id, admin_id, {"division_id": department["north_id"], "name": name})["region_id"]
            entries.create_entry(
                conn, org_id, admin_id,
                {"metric_id": populated["rosc"], "period_start": "2024-01-01", "numerator": numerator, "denominator": 10, "region_id": region_id},
            )
            ids.append(region_id)
        conn.commit()
        return ids

    def test_associated_metrics(self, conn, org_id, admin_id, department, populated, stations):
        metrics.add_association(conn, org_id, admin_id, populated["rosc"], department["north_id"])
        overview = dashboard.division_overview(conn, org_id, "north")
        assert [m["id"] for m in overview["metrics"]] == [populated["rosc"]]
        assert [r["name"] for r in overview["regions"]] == ["Station 4", "Station 7"]

    def test_uses_region_level_entries(self, conn, org_id, admin_id, department, populated, stations):
        """The division-wide 9/10 row is left out; the regions pool to 4/20."""
        metrics.add_association(conn, org_id, admin_id, populated["rosc"], department["north_id"])
        card = dashboard.division_overview(conn, org_id, "north")["kpis"][0]
        assert card["period_count"] == 1
        assert card["current_value"] == pytest.approx(20.0)

    def test_region_association(self, conn, org_id, admin_id, department, populated, stations):
        metrics.add_association(conn, org_id, admin_id, populated["rosc"], department["north_id"], stations[1])
        overview = dashboard.division_overview(conn, org_id, "north")
        assert [m["id"] for m in overview["metrics"]] == [populated["rosc"]]
        assert dashboard.division_overview(conn, org_id, "south")["metrics"] == []

    def test_no_region_entries(self, conn, org_id, admin_id, department, populated):
        metrics.add_association(conn, org_id, admin_id, populated["rosc"], department["north_id"])
        card = dashboard.division_overview(conn, org_id, "north")["kpis"][0]
        assert card["period_count"] == 0

    def test_unassigned_lists_metrics_without_associations(self, conn, org_id, admin_id, department, populated):
        metrics.add_association(conn, org_id, admin_id, populated["rosc"], department["north_id"])
        overview = dashboard.division_overview(conn, org_id, dashboard.UNASSIGNED_SLUG)
        assert [m["id"] for m in overview["metrics"]] == [populated["response"]]

    def test_unknown_division(self, conn, org_id):
        with pytest.raises(NotFoundError):
            dashboard.division_overview(conn, org_id, "atlantis")


class TestMetricDetail:
    """Metric drill-down."""

    def test_stats_and_spc(self, conn, org_id, department, populated):
        detail = dashboard.metric_detail(conn, org_id, department["slug"], "rosc-rate")
        assert len(detail["chart_data"]) == 6
        assert detail["stats"]["current"] == pytest.approx(40.0)
        assert detail["stats"]["min"] == pytest.approx(20.0)
        assert detail["spc"]["chart_type"] == "p-chart"
        assert len(detail["spc"]["points"]) == 6

    def test_division_breakdown(self, conn, org_id, department, populated):
        detail = dashboard.metric_detail(conn, org_id, department["slug"], "rosc-rate")
        assert [b["name"] for b in detail["division_breakdown"]] == ["North"]

    def test_lower_is_better(self, conn, org_id, department, populated):
        detail = dashboard.metric_detail(conn, org_id, department["slug"], "response-time")
        assert detail["stats"]["trend_direction"] == "down"
        assert detail["stats"]["target_met"] is True
        assert detail["spc"]["chart_type"] == "i-mr"

    def test_range_filter(self, conn, org_id, department, populated):
        detail = dashboard.metric_detail(conn, org_id, department["slug"], "rosc-rate", range_key="custom:2024-04-01:2024-06-30")
        assert [p["period"] for p in detail["chart_data"]] == ["2024-04-01", "2024-05-01", "2024-06-01"]

    def test_annotations_in_range(self, conn, org_id, admin_id, department, populated):
        metrics.create_annotation(
            conn, org_id, admin_id, populated["rosc"],
            {"title": "CPR refresher", "annotation_date": "2024-03-15", "annotation_type": "intervention"},
        )
        detail = dashboard.metric_detail(conn, org_id, department["slug"], "rosc-rate")
        assert [a["label"] for a in detail["qi_annotations"]] == ["CPR refresher"]

    def test_unknown_metric(self, conn, org_id, department):
        with pytest.raises(NotFoundError):
            dashboard.metric_detail(conn, org_id, department["slug"], "missing")


class TestScorecards:
    """Monthly scorecard grid."""

    def test_grid(self, conn, org_id, admin_id, populated):
        card = scorecards.create_scorecard(
            conn, org_id, admin_id,
            {"name": "Board Report", "metric_ids": f"{populated['rosc']},{populated['response']}"},
        )
        grid = scorecards.build_scorecard(conn, org_id, card["scorecard_id"], 2024)
        rosc, response = grid["rows"]
        assert len(rosc["months"]) == 12
        assert rosc["months"][0] == pytest.approx(55.0)
        assert rosc["months"][6] is None
        assert rosc["formatted_months"][6] == ""
        assert rosc["months_met"][0] is True
        assert response["months_met"][0] is False
        assert response["months_met"][5] is True

    def test_ytd_division_scope(self, conn, org_id, admin_id, department, populated):
        card = scorecards.create_scorecard(
            conn, org_id, admin_id,
            {"name": "North Only", "metric_ids": str(populated["rosc"]), "division_ids": str(department["north_id"])},
        )
        grid = scorecards.build_scorecard(conn, org_id, card["scorecard_id"], 2024)
        assert grid["rows"][0]["ytd"] == pytest.approx(90.0)

    def test_year_bounds(self, conn, org_id, admin_id, populated):
        card = scorecards.create_scorecard(conn, org_id, admin_id, {"name": "Any", "metric_ids": str(populated["rosc"])})
        with pytest.raises(ValidationError, match="Year must be between"):
            scorecards.build_scorecard(conn, org_id, card["scorecard_id"], 1900)

    def test_unknown_metric_rejected(self, conn, org_id, admin_id):
        with pytest.raises(NotFoundError):
            scorecards.create_scorecard(conn, org_id, admin_id, {"name": "Broken", "metric_ids": "999"})

    def test_ytd_aggregates_monthly_values(self, conn, org_id, admin_id, department):
        """A busy month counts once in the year-to-date average."""
        metric_id = metrics.create_metric(
            conn, org_id, admin_id,
            {"department_id": department["id"], "name": "Scene Time", "unit": "duration", "period_type": "weekly"},
        )["metric_id"]
        for day, value in (("2024-01-01", 10), ("2024-01-08", 20), ("2024-02-05", 30)):
            entries.create_entry(conn, org_id, admin_id, {"metric_id": metric_id, "period_start": day, "value": value})
        card = scorecards.create_scorecard(conn, org_id, admin_id, {"name": "Scene", "metric_ids": str(metric_id)})
        row = scorecards.build_scorecard(conn, org_id, card["scorecard_id"], 2024)["rows"][0]
        assert row["months"][:2] == [pytest.approx(15.0), pytest.approx(30.0)]
        assert row["ytd"] == pytest.approx(22.5)

    def test_ytd_sums_monthly_totals(self, conn, org_id, admin_id, department):
        metric_id = metrics.create_metric(
            conn, org_id, admin_id, {"department_id": department["id"], "name": "Transports", "unit": "count"}
        )["metric_id"]
        for month, value in ((1, 1.114), (2, 2.222)):
            entries.create_entry(conn, org_id, admin_id, {"metric_id": metric_id, "period_start": f"2024-0{month}-01", "value": value})
        card = scorecards.create_scorecard(conn, org_id, admin_id, {"name": "Volume", "metric_ids": str(metric_id)})
        row = scorecards.build_scorecard(conn, org_id, card["scorecard_id"], 2024)["rows"][0]
        assert row["ytd"] == pytest.approx(3.34)

    def test_ytd_empty_year(self, conn, org_id, admin_id, populated):
        card = scorecards.create_scorecard(conn, org_id, admin_id, {"name": "Later", "metric_ids": str(populated["rosc"])})
        row = scorecards.build_scorecard(conn, org_id, card["scorecard_id"], 2025)["rows"][0]
        assert row["ytd"] is None
        assert row["ytd_met"] is None
