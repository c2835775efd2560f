"""Form field readers that raise ValidationError with user-facing messages."""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

from emsdash.errors import ValidationError
from emsdash.utils import parse_date, to_float, to_int


def text(form: Mapping[str, Any], key: str, label: str, max_len: int = 200, required: bool = False) -> Optional[str]:
    value = str(form.get(key) or "").strip()
    if not value:
        if required:
            raise ValidationError(f"{label} is required.")
        return None
    if len(value) > max_len:
        raise ValidationError(f"{label} must be at most {max_len} characters.")
    return value


def choice(form: Mapping[str, Any], key: str, label: str, options: Sequence[str], default: Optional[str] = None) -> str:
    value = str(form.get(key) or "").strip() or default
    if value not in options:
        raise ValidationError(f"{label} must be one of: {', '.join(options)}.")
    return str(value)


def integer(
    form: Mapping[str, Any],
    key: str,
    label: str,
    default: Optional[int] = None,
    minimum: Optional[int] = None,
    maximum: Optional[int] = None,
) -> Optional[int]:
    raw = form.get(key)
    if raw in (None, ""):
        return default
    value = to_int(raw)
    if value is None:
        raise ValidationError(f"{label} must be a whole number.")
    if minimum is not None and value < minimum:
        raise ValidationError(f"{label} must be at least {minimum}.")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{label} must be at most {maximum}.")
    return value


def number(form: Mapping[str, Any], key: str, label: str, required: bool = False) -> Optional[float]:
    raw = form.get(key)
    if raw in (None, ""):
        if required:
            raise ValidationError(f"{label} is required.")
        return None
    value = to_float(raw)
    if value is None:
        raise ValidationError(f"{label} must be a number.")
    return value


def date(form: Mapping[str, Any], key: str, label: str, required: bool = False) -> Optional[str]:
    raw = form.get(key)
    if raw in (None, ""):
        if required:
            raise ValidationError(f"{label} is required.")
        return None
    value = parse_date(raw)
    if value is None:
        raise ValidationError(f"{label} must be a valid date (YYYY-MM-DD).")
    return value


def flag(form: Mapping[str, Any], key: str, default: bool = False) -> int:
    raw = form.get(key)
    if raw is None:
        return 1 if default else 0
    if isinstance(raw, bool):
        return 1 if raw else 0
    return 1 if str(raw).strip().lower() in {"1", "true", "yes", "on"} else 0
