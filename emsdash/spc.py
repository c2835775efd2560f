"""Statistical process control charts.

P-charts for proportions, U-charts for rates and I-MR (individuals and
moving range) charts for continuous data. Everything here works on plain
lists of dicts and never touches the database.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from emsdash.utils import parse_iso_date, round_half_up

DATA_TYPES = ("proportion", "rate", "continuous")
CHART_TYPES = {"proportion": "p-chart", "rate": "u-chart", "continuous": "i-mr"}

# Control chart constants for moving ranges of two consecutive points.
D2 = 1.128
D4 = 3.267

RUN_LENGTH = 8
VARIABLE_LIMIT_TOLERANCE = 0.25


def spc_chart_type_for_data_type(data_type: str) -> str:
    return CHART_TYPES[data_type]


def _round4(value: float) -> float:
    return round_half_up(value, 4)


def _sigma(level: Any) -> int:
    try:
        parsed = int(level)
    except (TypeError, ValueError):
        return 3
    return parsed if parsed in (1, 2, 3) else 3


def _denominator(point: Mapping[str, Any]) -> float:
    value = point.get("denominator")
    return 1.0 if value is None else float(value)


def baseline_points(
    points: Sequence[Mapping[str, Any]],
    baseline_start: Optional[str] = None,
    baseline_end: Optional[str] = None,
) -> List[Mapping[str, Any]]:
    """Points whose period falls inside the frozen baseline.

    Periods are ISO date keys, so string comparison orders them correctly.
    A baseline that selects nothing falls back to every point.
    """
    if not baseline_start and not baseline_end:
        return list(points)
    selected = [
        p
        for p in points
        if not (baseline_start and str(p["period"]) < baseline_start)
        and not (baseline_end and str(p["period"]) > baseline_end)
    ]
    return selected or list(points)


def denominators_vary(points: Sequence[Mapping[str, Any]]) -> bool:
    denominators = [_denominator(p) for p in points]
    if len(denominators) < 2:
        return False
    avg = sum(denominators) / len(denominators)
    if avg == 0:
        return False
    return any(abs(n - avg) / avg > VARIABLE_LIMIT_TOLERANCE for n in denominators)


def _chart_point(source: Mapping[str, Any], ucl: float, lcl: float, center: float) -> Dict[str, Any]:
    return {
        "period": source["period"],
        "value": source["value"],
        "ucl": _round4(ucl),
        "lcl": _round4(lcl),
        "center_line": _round4(center),
        "special_cause": False,
        "special_cause_rules": [],
    }


def detect_special_causes(points: List[Dict[str, Any]]) -> None:
    """Flag points beyond the limits and runs of eight on one side of centre."""
    for p in points:
        if p["value"] > p["ucl"] or p["value"] < p["lcl"]:
            p["special_cause"] = True
            p["special_cause_rules"].append("Beyond control limits")

    for start in range(0, len(points) - RUN_LENGTH + 1):
        window = points[start : start + RUN_LENGTH]
        if all(p["value"] > p["center_line"] for p in window):
            side = "above"
        elif all(p["value"] < p["center_line"] for p in window):
            side = "below"
        else:
            continue
        label = f"Run of {RUN_LENGTH}+ {side} center"
        for p in window:
            if label not in p["special_cause_rules"]:
                p["special_cause"] = True
                p["special_cause_rules"].append(label)


def _mean_denominator(points: Sequence[Mapping[str, Any]]) -> float:
    if not points:
        return 1.0
    return sum(_denominator(p) for p in points) / len(points)


def _p_limits(p_bar: float, n: float, z: int, percentage_scale: bool):
    if n <= 0:
        return p_bar, p_bar
    if percentage_scale:
        fraction = p_bar / 100
        se = math.sqrt(max(fraction * (1 - fraction), 0.0) / n) * 100
        return min(p_bar + z * se, 100.0), max(p_bar - z * se, 0.0)
    se = math.sqrt(max(p_bar * (1 - p_bar), 0.0) / n)
    return min(p_bar + z * se, 1.0), max(p_bar - z * se, 0.0)


def _p_chart(points, baseline, z: int) -> Dict[str, Any]:
    total_num = 0.0
    total_den = 0.0
    for p in baseline:
        den = _denominator(p)
        num = p.get("numerator")
        total_num += float(num) if num is not None else float(p["value"]) * den / 100
        total_den += den

    percentage_scale = any(float(p["value"]) > 1 for p in points)
    if total_den > 0:
        p_bar = total_num / total_den
        if percentage_scale:
            p_bar *= 100
    else:
        p_bar = sum(float(p["value"]) for p in baseline) / len(baseline) if baseline else 0.0

    chart = []
    for p in points:
        ucl, lcl = _p_limits(p_bar, _denominator(p), z, percentage_scale)
        chart.append(_chart_point(p, ucl, lcl, p_bar))
    detect_special_causes(chart)

    fixed_ucl, fixed_lcl = _p_limits(p_bar, _mean_denominator(points), z, percentage_scale)
    fixed = [_chart_point(p, fixed_ucl, fixed_lcl, p_bar) for p in points]
    detect_special_causes(fixed)

    return {
        "chart_type": "p-chart",
        "center_line": _round4(p_bar),
        "points": chart,
        "fixed_points": fixed,
        "supports_variable_limits": denominators_vary(points),
    }


def _u_limits(u_bar: float, n: float, z: int):
    if n <= 0:
        return u_bar, u_bar
    se = math.sqrt(u_bar / n)
    return u_bar + z * se, max(u_bar - z * se, 0.0)


def _u_chart(points, baseline, z: int) -> Dict[str, Any]:
    total_events = 0.0
    total_exposure = 0.0
    for p in baseline:
        num = p.get("numerator")
        total_events += float(num) if num is not None else float(p["value"])
        total_exposure += _denominator(p)
    u_bar = total_events / total_exposure if total_exposure > 0 else 0.0

    chart = []
    for p in points:
        ucl, lcl = _u_limits(u_bar, _denominator(p), z)
        chart.append(_chart_point(p, ucl, lcl, u_bar))
    detect_special_causes(chart)

    fixed_ucl, fixed_lcl = _u_limits(u_bar, _mean_denominator(points), z)
    fixed = [_chart_point(p, fixed_ucl, fixed_lcl, u_bar) for p in points]
    detect_special_causes(fixed)

    return {
        "chart_type": "u-chart",
        "center_line": _round4(u_bar),
        "points": chart,
        "fixed_points": fixed,
        "supports_variable_limits": denominators_vary(points),
    }


def _imr_chart(points, baseline, z: int) -> Dict[str, Any]:
    values = [float(p["value"]) for p in baseline]
    x_bar = sum(values) / len(values) if values else 0.0
    ranges = [abs(values[i] - values[i - 1]) for i in range(1, len(values))]
    mr_bar = sum(ranges) / len(ranges) if ranges else 0.0
    sigma = mr_bar / D2

    chart = [_chart_point(p, x_bar + z * sigma, x_bar - z * sigma, x_bar) for p in points]
    detect_special_causes(chart)

    moving_range = []
    for i in range(1, len(points)):
        moving_range.append(
            {
                "period": points[i]["period"],
                "value": _round4(abs(float(points[i]["value"]) - float(points[i - 1]["value"]))),
                "ucl": _round4(D4 * mr_bar),
                "lcl": 0,
                "center_line": _round4(mr_bar),
            }
        )

    return {
        "chart_type": "i-mr",
        "center_line": _round4(x_bar),
        "points": chart,
        "moving_range": moving_range,
        "supports_variable_limits": False,
    }


def calculate_spc(
    data_type: str,
    points: Sequence[Mapping[str, Any]],
    sigma_level: Any = 3,
    baseline_start: Optional[str] = None,
    baseline_end: Optional[str] = None,
) -> Dict[str, Any]:
    """Compute centre line, control limits and special causes for a series.

    ``points`` are ``{"period", "value", "numerator"?, "denominator"?}`` dicts
    in chronological order. The centre line comes from the baseline window;
    limits are drawn across every point.
    """
    chart_type = spc_chart_type_for_data_type(data_type)
    if not points:
        return {"chart_type": chart_type, "center_line": 0, "points": [], "supports_variable_limits": False}

    z = _sigma(sigma_level)
    baseline = baseline_points(points, baseline_start, baseline_end)
    if data_type == "proportion":
        return _p_chart(points, baseline, z)
    if data_type == "rate":
        return _u_chart(points, baseline, z)
    return _imr_chart(points, baseline, z)


def _period_key(value: Any) -> Optional[str]:
    day = parse_iso_date(value)
    return day.isoformat() if day else None


def compute_spc_data(
    metric: Mapping[str, Any],
    entries: Iterable[Mapping[str, Any]],
    chart_points: Sequence[Mapping[str, Any]],
) -> Optional[Dict[str, Any]]:
    """Build the SPC result for a metric's filtered entries.

    Proportion and rate metrics re-aggregate numerators and denominators per
    period so the chart never averages pre-computed percentages. Continuous
    metrics chart the already aggregated series as-is. Returns None when the
    data type is unknown or fewer than two points are available.
    """
    data_type = str(metric.get("data_type") or "")
    if data_type not in DATA_TYPES:
        return None

    if data_type in ("proportion", "rate"):
        buckets: Dict[str, Dict[str, float]] = {}
        for entry in entries:
            key = _period_key(entry.get("period_start"))
            if key is None:
                continue
            bucket = buckets.setdefault(key, {"num": 0.0, "den": 0.0})
            if entry.get("numerator") is not None and entry.get("denominator") is not None:
                bucket["num"] += float(entry["numerator"])
                bucket["den"] += float(entry["denominator"])

        chart_values = {str(p["period"]): p["value"] for p in chart_points}
        spc_points: List[Dict[str, Any]] = []
        for period in sorted(buckets):
            bucket = buckets[period]
            if bucket["den"] > 0:
                ratio = bucket["num"] / bucket["den"]
                spc_points.append(
                    {
                        "period": period,
                        "value": ratio * 100 if data_type == "proportion" else ratio,
                        "numerator": bucket["num"],
                        "denominator": bucket["den"],
                    }
                )
            else:
                spc_points.append({"period": period, "value": float(chart_values.get(period) or 0)})
    else:
        spc_points = [{"period": str(p["period"]), "value": float(p["value"])} for p in chart_points]

    if len(spc_points) < 2:
        return None

    return calculate_spc(
        data_type,
        spc_points,
        sigma_level=metric.get("spc_sigma_level"),
        baseline_start=_period_key(metric.get("baseline_start")),
        baseline_end=_period_key(metric.get("baseline_end")),
    )
