"""Roll metric entries up into period series and single values.

Rate and proportion metrics are combined as sum(numerator) / sum(denominator)
whenever the entries carry both, so units with little exposure do not weigh
as much as busy ones. Results keep six decimal places; display formatting
handles the final rounding.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from emsdash.utils import parse_iso_date, round_half_up

AGGREGATION_TYPES = ("sum", "average", "min", "max", "latest")


def _round6(value: float) -> float:
    return round_half_up(value, 6)


def aggregate_values(values: Sequence[float], kind: str = "average") -> Optional[float]:
    """Aggregate ``values`` (chronological); None when there is nothing to aggregate."""
    if not values:
        return None
    values = [float(v) for v in values]
    if kind == "sum":
        return _round6(sum(values))
    if kind == "min":
        return _round6(min(values))
    if kind == "max":
        return _round6(max(values))
    if kind == "latest":
        return _round6(values[-1])
    return _round6(sum(values) / len(values))


def _period_key(entry: Mapping[str, Any]) -> Optional[str]:
    day = parse_iso_date(entry.get("period_start"))
    return day.isoformat() if day else None


def _group_by_period(entries: Iterable[Mapping[str, Any]]) -> Dict[str, List[Mapping[str, Any]]]:
    grouped: Dict[str, List[Mapping[str, Any]]] = {}
    for entry in entries:
        key = _period_key(entry)
        if key is None:
            continue
        grouped.setdefault(key, []).append(entry)
    return grouped


def aggregate_by_period(entries: Iterable[Mapping[str, Any]], kind: str = "average") -> List[Dict[str, Any]]:
    grouped = _group_by_period(entries)
    return [
        {"period": period, "value": aggregate_values([e["value"] for e in grouped[period]], kind) or 0}
        for period in sorted(grouped)
    ]


def _weighted(entries: Sequence[Mapping[str, Any]], data_type: str) -> Optional[float]:
    total_num = 0.0
    total_den = 0.0
    has_nd = False
    for entry in entries:
        if entry.get("numerator") is not None and entry.get("denominator") is not None:
            total_num += float(entry["numerator"])
            total_den += float(entry["denominator"])
            has_nd = True
    if not has_nd or total_den <= 0:
        return None
    ratio = total_num / total_den
    return _round6(ratio * 100 if data_type == "proportion" else ratio)


def aggregate_by_period_weighted(
    entries: Iterable[Mapping[str, Any]],
    data_type: str,
    kind: str = "average",
) -> List[Dict[str, Any]]:
    if data_type == "continuous":
        return aggregate_by_period(entries, kind)
    grouped = _group_by_period(entries)
    series = []
    for period in sorted(grouped):
        bucket = grouped[period]
        value = _weighted(bucket, data_type)
        if value is None:
            value = aggregate_values([e["value"] for e in bucket], kind) or 0
        series.append({"period": period, "value": value})
    return series


def aggregate_values_weighted(
    entries: Sequence[Mapping[str, Any]],
    data_type: str,
    kind: str = "average",
) -> Optional[float]:
    """Single-bucket version of :func:`aggregate_by_period_weighted`."""
    if not entries:
        return None
    if data_type != "continuous":
        value = _weighted(entries, data_type)
        if value is not None:
            return value
    return aggregate_values([e["value"] for e in entries], kind)
