"""Tests for the SPC chart calculations."""

import pytest

from emsdash.spc import (
    baseline_points,
    calculate_spc,
    compute_spc_data,
    denominators_vary,
    spc_chart_type_for_data_type,
)


def monthly(values, year=2024, **extra):
    return [{"period": f"{year}-{i + 1:02d}-01", "value": v, **extra} for i, v in enumerate(values)]


class TestChartTypes:
    """Data type to chart type mapping."""

    def test_mapping(self):
        """Each data type picks its chart."""
        assert spc_chart_type_for_data_type("proportion") == "p-chart"
        assert spc_chart_type_for_data_type("rate") == "u-chart"
        assert spc_chart_type_for_data_type("continuous") == "i-mr"

    def test_empty_series(self):
        """No points yields an empty chart rather than an error."""
        result = calculate_spc("continuous", [])
        assert result["points"] == []
        assert result["center_line"] == 0


class TestPChart:
    """Proportion charts."""

    def test_limits_on_percentage_scale(self):
        """Centre is pooled N/D and limits use the binomial standard error."""
        points = monthly([10, 10, 10, 10], numerator=10, denominator=100)
        result = calculate_spc("proportion", points)
        assert result["chart_type"] == "p-chart"
        assert result["center_line"] == pytest.approx(10.0)
        first = result["points"][0]
        assert first["ucl"] == pytest.approx(19.0, abs=1e-3)
        assert first["lcl"] == pytest.approx(1.0, abs=1e-3)

    def test_limits_clamped_to_valid_range(self):
        """Limits never go below zero or above 100 percent."""
        points = monthly([2, 3, 2, 3], numerator=1, denominator=10)
        result = calculate_spc("proportion", points)
        for point in result["points"]:
            assert point["lcl"] >= 0
            assert point["ucl"] <= 100

    def test_variable_limits_flagged(self):
        """Denominators that vary by more than 25 percent enable variable limits."""
        points = [
            {"period": "2024-01-01", "value": 10, "numerator": 1, "denominator": 10},
            {"period": "2024-02-01", "value": 10, "numerator": 20, "denominator": 200},
        ]
        result = calculate_spc("proportion", points)
        assert result["supports_variable_limits"] is True
        assert result["points"][0]["ucl"] > result["points"][1]["ucl"]
        assert "fixed_points" in result


class TestUChart:
    """Rate charts."""

    def test_center_is_pooled_rate(self):
        points = monthly([0.5, 0.5], numerator=5, denominator=10)
        result = calculate_spc("rate", points)
        assert result["center_line"] == pytest.approx(0.5)
        assert result["points"][0]["ucl"] == pytest.approx(0.5 + 3 * (0.5 / 10) ** 0.5, abs=1e-3)
        assert result["points"][0]["lcl"] == 0


class TestIMRChart:
    """Individuals and moving range charts."""

    def test_limits_from_average_moving_range(self):
        """Sigma is the mean moving range divided by d2."""
        result = calculate_spc("continuous", monthly([10, 12, 11, 13]))
        mr_bar = 5 / 3
        assert result["center_line"] == pytest.approx(11.5)
        assert result["points"][0]["ucl"] == pytest.approx(11.5 + 3 * mr_bar / 1.128, abs=1e-3)
        assert result["points"][0]["lcl"] == pytest.approx(11.5 - 3 * mr_bar / 1.128, abs=1e-3)
        assert len(result["moving_range"]) == 3
        assert result["moving_range"][0]["ucl"] == pytest.approx(3.267 * mr_bar, abs=1e-3)

    def test_sigma_level_narrows_limits(self):
        wide = calculate_spc("continuous", monthly([10, 12, 11, 13]), sigma_level=3)
        narrow = calculate_spc("continuous", monthly([10, 12, 11, 13]), sigma_level=1)
        assert narrow["points"][0]["ucl"] < wide["points"][0]["ucl"]

    def test_invalid_sigma_falls_back_to_three(self):
        default = calculate_spc("continuous", monthly([10, 12, 11, 13]))
        odd = calculate_spc("continuous", monthly([10, 12, 11, 13]), sigma_level="7")
        assert odd["points"][0]["ucl"] == default["points"][0]["ucl"]


class TestSpecialCauses:
    """Western Electric style rules."""

    def test_point_beyond_limits(self):
        result = calculate_spc(
            "continuous",
            monthly([10, 11, 10, 11, 10, 11, 30]),
            baseline_start="2024-01-01",
            baseline_end="2024-06-01",
        )
        last = result["points"][-1]
        assert last["special_cause"] is True
        assert "Beyond control limits" in last["special_cause_rules"]

    def test_run_of_eight_above_center(self):
        values = [1, 2, 1, 2] + [1.7] * 8
        result = calculate_spc("continuous", monthly(values), baseline_start="2024-01-01", baseline_end="2024-04-01")
        assert result["center_line"] == pytest.approx(1.5)
        assert "Run of 8+ above center" in result["points"][-1]["special_cause_rules"]
        assert result["points"][0]["special_cause"] is False


class TestBaseline:
    """Frozen baseline windows."""

    def test_window_selects_points(self):
        points = monthly([1, 2, 3, 4])
        selected = baseline_points(points, "2024-02-01", "2024-03-01")
        assert [p["value"] for p in selected] == [2, 3]

    def test_empty_window_falls_back_to_all_points(self):
        points = monthly([1, 2, 3])
        assert baseline_points(points, "2030-01-01", None) == points

    def test_denominators_vary_needs_two_points(self):
        assert denominators_vary([{"denominator": 5}]) is False


class TestComputeSpcData:
    """SPC for a metric's stored entries."""

    def test_reaggregates_numerators_per_period(self):
        """Two divisions in one month pool into one point."""
        metric = {"data_type": "proportion", "spc_sigma_level": 3}
        entries = [
            {"period_start": "2024-01-01", "numerator": 5, "denominator": 50, "value": 10},
            {"period_start": "2024-01-01", "numerator": 15, "denominator": 50, "value": 30},
            {"period_start": "2024-02-01", "numerator": 10, "denominator": 100, "value": 10},
        ]
        result = compute_spc_data(metric, entries, [])
        assert [p["value"] for p in result["points"]] == [pytest.approx(20.0), pytest.approx(10.0)]

    def test_needs_two_points(self):
        metric = {"data_type": "continuous"}
        assert compute_spc_data(metric, [], [{"period": "2024-01-01", "value": 4}]) is None

    def test_unknown_data_type(self):
        assert compute_spc_data({"data_type": "other"}, [], []) is None
