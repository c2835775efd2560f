"""Shared helpers: time, escaping, input parsing and metric display formatting."""

from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import html
import json
import math
import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Tuple

from emsdash import config

MONTH_ABBR = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
SUB_MONTHLY_PERIODS = {"daily", "weekly", "bi-weekly"}
RANGE_PRESET_MONTHS = {"1mo": 1, "3mo": 3, "6mo": 6, "1yr": 12}

_YEAR_MONTH_RE = re.compile(r"^(\d{4})-(\d{1,2})$")
_YEAR_MONTH_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def iso(ts: Optional[dt.datetime] = None) -> str:
    value = ts or utcnow()
    return value.replace(microsecond=0).isoformat()


def today() -> dt.date:
    return utcnow().date()


def h(value: object) -> str:
    if value is None:
        return ""
    return html.escape(str(value), quote=True)


def sign_value(value: str) -> str:
    digest = hmac.new(config.SECRET_KEY.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"{value}.{digest}"


def verify_signed_value(signed: str) -> Optional[str]:
    if not signed or "." not in signed:
        return None
    value, digest = signed.rsplit(".", 1)
    expected = hmac.new(config.SECRET_KEY.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()
    if hmac.compare_digest(digest, expected):
        return value
    return None


def token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value in (None, ""):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(parsed):
        return default
    return parsed


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def clamp_int(value: Any, default: int, minimum: int, maximum: int) -> int:
    parsed = to_int(value, default)
    if parsed is None:
        parsed = default
    return max(minimum, min(maximum, parsed))


def parse_date(value: Any) -> Optional[str]:
    """Normalize a loose user-supplied date into ``YYYY-MM-DD``."""
    if not value:
        return None
    value = str(value).strip()
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%Y/%m/%d"):
        try:
            return dt.datetime.strptime(value, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def parse_iso_date(value: Any) -> Optional[dt.date]:
    if value in (None, ""):
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    text = str(value).strip()
    try:
        return dt.date.fromisoformat(text[:10])
    except ValueError:
        return None


def parse_period_date(value: Any) -> Optional[dt.date]:
    """Resolve a period start from ``YYYY-MM``, ``YYYY-MM-DD`` or a full ISO timestamp.

    Timestamps are converted to UTC before the calendar date is taken, so a
    period never slides into the previous month for clients west of UTC.
    """
    if value in (None, ""):
        return None
    if isinstance(value, dt.datetime):
        if value.tzinfo is not None:
            value = value.astimezone(dt.timezone.utc)
        return value.date()
    if isinstance(value, dt.date):
        return value
    text = str(value).strip()
    match = _YEAR_MONTH_RE.match(text)
    if match:
        year, month = int(match.group(1)), int(match.group(2))
        if 1 <= month <= 12:
            return dt.date(year, month, 1)
        return None
    if _YEAR_MONTH_DAY_RE.match(text):
        try:
            return dt.date.fromisoformat(text)
        except ValueError:
            return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(dt.timezone.utc)
    return parsed.date()


def add_months(anchor: dt.date, months: int) -> dt.date:
    """First day of the month ``months`` away from ``anchor``."""
    total = anchor.year * 12 + (anchor.month - 1) + months
    return dt.date(total // 12, total % 12 + 1, 1)


def month_bounds(anchor: dt.date) -> Tuple[dt.date, dt.date]:
    first = anchor.replace(day=1)
    last = add_months(first, 1) - dt.timedelta(days=1)
    return first, last


def round_half_up(value: float, places: int = 4) -> float:
    factor = 10 ** places
    return math.floor(value * factor + 0.5) / factor


def _fixed(value: float, places: int = 1) -> str:
    quantum = Decimal(1).scaleb(-places)
    rounded = Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)
    if rounded == 0:
        rounded = abs(rounded)
    return f"{rounded:.{places}f}"


def slugify(text: Any) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(text or "").lower())
    return slug.strip("-")


def format_metric_value(
    value: float,
    unit: str,
    rate_multiplier: Optional[float] = None,
    rate_suffix: Optional[str] = None,
) -> str:
    if unit == "currency":
        whole = Decimal(str(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        sign = "-" if whole < 0 else ""
        return f"{sign}${abs(int(whole)):,}"
    if unit == "percentage":
        return f"{_fixed(value)}%"
    if unit == "duration":
        return f"{_fixed(value)} min"
    if unit == "score":
        return f"{_fixed(value)}/10"
    if unit == "count":
        return f"{int(math.floor(value + 0.5)):,}"
    if unit == "rate":
        display = value * rate_multiplier if rate_multiplier else value
        formatted = _fixed(display)
        return f"{formatted} {rate_suffix}" if rate_suffix else formatted
    return _fixed(value)


def format_period(value: Any, period_type: Optional[str] = None) -> str:
    day = parse_period_date(value)
    if day is None:
        return str(value or "")
    month = MONTH_ABBR[day.month - 1]
    if period_type in SUB_MONTHLY_PERIODS:
        return f"{month} {day.day}, {day.year}"
    return f"{month} {day.year}"


def calculate_trend(current: float, previous: float) -> Dict[str, object]:
    if previous == 0:
        return {"value": 0.0, "direction": "flat"}
    change = ((current - previous) / previous) * 100
    if change > 0.5:
        direction = "up"
    elif change < -0.5:
        direction = "down"
    else:
        direction = "flat"
    return {"value": abs(change), "direction": direction}


def parse_date_range_filter(range_key: Optional[str], anchor: Optional[dt.date] = None) -> Dict[str, dt.date]:
    """Turn a dashboard range selector into inclusive ``gte``/``lte`` date bounds.

    Presets (``1mo``, ``3mo``, ``6mo``, ``1yr``) start at the first of the month
    N months back, ``ytd`` starts on January 1, and ``custom:FROM:TO`` gives an
    explicit inclusive window. ``all``, unknown keys and malformed custom ranges
    return no bounds.
    """
    key = str(range_key or "").strip()
    if key.startswith("custom:"):
        parts = key.split(":")
        if len(parts) == 3:
            try:
                start = dt.date.fromisoformat(parts[1])
                end = dt.date.fromisoformat(parts[2])
            except ValueError:
                return {}
            return {"gte": start, "lte": end}
        return {}
    now = anchor or today()
    if key in RANGE_PRESET_MONTHS:
        return {"gte": add_months(now, -RANGE_PRESET_MONTHS[key])}
    if key == "ytd":
        return {"gte": dt.date(now.year, 1, 1)}
    return {}


def query_scalar(conn, sql: str, params: Tuple = ()) -> int:
    row = conn.execute(sql, params).fetchone()
    return int(row[0] or 0) if row else 0


def _snapshot_value(value: object) -> object:
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    return value


def snapshot_row(row) -> Optional[Dict[str, object]]:
    if row is None:
        return None
    return {key: _snapshot_value(row[key]) for key in row.keys()}


def rows_to_dicts(rows) -> list:
    return [snapshot_row(row) for row in rows]


def parse_json_object(raw: Optional[str]) -> Dict[str, object]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}
