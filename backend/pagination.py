import math
from typing import Dict, Tuple

from flask import request

MAX_PAGE_SIZE = 50
MAX_PAGE = 10_000


def normalize_limit(value, default: int = 10, maximum: int = MAX_PAGE_SIZE) -> int:
    try:
        numeric = int(float(value))
    except (TypeError, ValueError, OverflowError):
        numeric = default
    numeric = numeric or default
    return min(max(numeric, 1), maximum)


def page_args(default_limit: int = 10) -> Tuple[int, int]:
    try:
        page = min(max(int(request.args.get("page", 1)), 1), MAX_PAGE)
    except (TypeError, ValueError):
        page = 1
    return page, normalize_limit(request.args.get("limit"), default_limit)


def pagination_payload(total: int, page: int, limit: int) -> Dict[str, int]:
    return {
        "total": total,
        "pages": math.ceil(total / limit) if total else 0,
        "page": page,
        "limit": limit,
    }
