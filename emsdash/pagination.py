"""Page-number pagination for list screens and list endpoints."""

from __future__ import annotations

import math
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlencode

from emsdash.utils import to_int

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
MIN_PAGE_SIZE = 10


def parse_pagination(params: Optional[Mapping[str, Any]], default_page_size: int = DEFAULT_PAGE_SIZE) -> Tuple[int, int]:
    """Return a clamped ``(page, page_size)`` from query parameters."""
    if not params:
        return 1, default_page_size
    page = to_int(params.get("page"), 1) or 1
    page_size = to_int(params.get("page_size"), default_page_size)
    if page < 1:
        page = 1
    if page_size is None or page_size < MIN_PAGE_SIZE:
        page_size = MIN_PAGE_SIZE
    if page_size > MAX_PAGE_SIZE:
        page_size = MAX_PAGE_SIZE
    return page, page_size


def pagination_meta(total_items: int, page: int, page_size: int) -> Dict[str, Any]:
    total_pages = max(1, math.ceil(total_items / page_size))
    page = min(max(1, page), total_pages)
    return {
        "page": page,
        "page_size": page_size,
        "total_items": total_items,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


def paginated_query(
    conn,
    base_sql: str,
    params: Sequence[Any],
    page: int,
    page_size: int,
    order_by: str = "id DESC",
) -> Dict[str, Any]:
    """Run ``base_sql`` (a SELECT without ORDER BY/LIMIT) for one page.

    The page is clamped to the last page before fetching, so asking for page 999
    returns the final page of rows rather than an empty list.
    """
    count_row = conn.execute(f"SELECT COUNT(*) AS c FROM ({base_sql}) AS counted", tuple(params)).fetchone()
    total_items = int(count_row["c"] or 0) if count_row else 0
    meta = pagination_meta(total_items, page, page_size)
    offset = (meta["page"] - 1) * page_size
    rows = conn.execute(
        f"{base_sql} ORDER BY {order_by} LIMIT ? OFFSET ?",
        tuple(params) + (page_size, offset),
    ).fetchall()
    return {"items": rows, "pagination": meta}


def build_pagination_url(
    base_path: str,
    current_params: Mapping[str, Any],
    page: int,
    page_size: Optional[int] = None,
) -> str:
    pairs = []
    for key, value in current_params.items():
        if key in {"page", "page_size"} or value is None:
            continue
        if isinstance(value, (list, tuple)):
            pairs.extend((key, str(item)) for item in value)
        else:
            pairs.append((key, str(value)))
    pairs.append(("page", str(page)))
    if page_size and page_size != DEFAULT_PAGE_SIZE:
        pairs.append(("page_size", str(page_size)))
    query = urlencode(pairs)
    return f"{base_path}?{query}" if query else base_path
