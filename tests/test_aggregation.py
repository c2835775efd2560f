"""Tests for period roll-ups and weighted aggregation."""

import pytest

from emsdash.aggregation import (
    aggregate_by_period,
    aggregate_by_period_weighted,
    aggregate_values,
    aggregate_values_weighted,
)


class TestAggregateValues:
    """Plain aggregation over a list of values."""

    @pytest.mark.parametrize(
        "kind, expected",
        [("sum", 12.0), ("average", 4.0), ("min", 2.0), ("max", 6.0), ("latest", 4.0)],
    )
    def test_kinds(self, kind, expected):
        assert aggregate_values([2, 6, 4], kind) == expected

    def test_empty_is_none(self):
        assert aggregate_values([], "sum") is None

    def test_unknown_kind_averages(self):
        assert aggregate_values([1, 3], "median") == 2.0

    def test_six_decimal_places(self):
        assert aggregate_values([1, 1, 2], "average") == 1.333333


class TestWeighted:
    """Numerator/denominator pooling for proportions and rates."""

    def test_proportion_pools_counts(self):
        """A small unit does not weigh as much as a busy one."""
        entries = [
            {"period_start": "2024-01-01", "value": 50, "numerator": 1, "denominator": 2},
            {"period_start": "2024-01-01", "value": 90, "numerator": 90, "denominator": 100},
        ]
        assert aggregate_values_weighted(entries, "proportion") == pytest.approx(89.215686)

    def test_rate_is_not_scaled(self):
        entries = [
            {"period_start": "2024-01-01", "value": 0.1, "numerator": 1, "denominator": 10},
            {"period_start": "2024-01-01", "value": 0.3, "numerator": 3, "denominator": 10},
        ]
        assert aggregate_values_weighted(entries, "rate") == pytest.approx(0.2)

    def test_falls_back_without_counts(self):
        entries = [{"period_start": "2024-01-01", "value": 10}, {"period_start": "2024-01-01", "value": 20}]
        assert aggregate_values_weighted(entries, "proportion", "average") == 15.0

    def test_continuous_ignores_counts(self):
        entries = [
            {"period_start": "2024-01-01", "value": 4, "numerator": 1, "denominator": 10},
            {"period_start": "2024-01-01", "value": 6, "numerator": 1, "denominator": 10},
        ]
        assert aggregate_values_weighted(entries, "continuous", "sum") == 10.0

    def test_empty_is_none(self):
        assert aggregate_values_weighted([], "rate") is None


class TestByPeriod:
    """Series building."""

    def test_groups_and_sorts_periods(self):
        entries = [
            {"period_start": "2024-02-01", "value": 5},
            {"period_start": "2024-01-01", "value": 1},
            {"period_start": "2024-01-01", "value": 3},
        ]
        series = aggregate_by_period(entries, "sum")
        assert series == [{"period": "2024-01-01", "value": 4.0}, {"period": "2024-02-01", "value": 5.0}]

    def test_skips_unparseable_periods(self):
        entries = [{"period_start": "not a date", "value": 9}, {"period_start": "2024-03-01", "value": 2}]
        assert [p["period"] for p in aggregate_by_period(entries)] == ["2024-03-01"]

    def test_weighted_series(self):
        entries = [
            {"period_start": "2024-01-01", "value": 10, "numerator": 1, "denominator": 10},
            {"period_start": "2024-01-01", "value": 30, "numerator": 3, "denominator": 10},
            {"period_start": "2024-02-01", "value": 50, "numerator": 5, "denominator": 10},
        ]
        series = aggregate_by_period_weighted(entries, "proportion")
        assert [p["value"] for p in series] == [20.0, 50.0]
