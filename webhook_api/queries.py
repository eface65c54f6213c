import re
from typing import Optional

from .errors import ValidationError
from .storage import MessageFilters, MessageStore
from .validation import is_iso_utc


DEFAULT_LIMIT = 50
MAX_LIMIT = 100
PAGINATION_DETAIL = "limit must be 1-100 and offset must be >=0"

_INT_RE = re.compile(r"[+-]?[0-9]+")


def _parse_int(raw: Optional[str], default: int) -> int:
    if raw is None or raw.strip() == "":
        return default
    raw = raw.strip()
    if _INT_RE.fullmatch(raw) is None:
        raise ValidationError(PAGINATION_DETAIL)
    return int(raw)


def parse_list_params(
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    from_: Optional[str] = None,
    since: Optional[str] = None,
    q: Optional[str] = None,
) -> MessageFilters:
    """Turn raw query-string values into filters, raising ValidationError."""
    limit_num = _parse_int(limit, DEFAULT_LIMIT)
    offset_num = _parse_int(offset, 0)
    if not 1 <= limit_num <= MAX_LIMIT or offset_num < 0:
        raise ValidationError(PAGINATION_DETAIL)

    if since and not is_iso_utc(since):
        raise ValidationError("invalid since")

    return MessageFilters(
        limit=limit_num,
        offset=offset_num,
        from_=from_ or None,
        since=since or None,
        q=q or None,
    )


class QueryEngine:
    def __init__(self, store: MessageStore) -> None:
        self.store = store

    def list(
        self,
        limit: Optional[str] = None,
        offset: Optional[str] = None,
        from_: Optional[str] = None,
        since: Optional[str] = None,
        q: Optional[str] = None,
    ) -> dict:
        filters = parse_list_params(limit, offset, from_, since, q)
        result = self.store.query(filters)
        return {
            "data": result.rows,
            "total": result.total,
            "limit": filters.limit,
            "offset": filters.offset,
        }


class StatsAggregator:
    def __init__(self, store: MessageStore) -> None:
        self.store = store

    def stats(self) -> dict:
        # no caching: the table is append-only and small
        return self.store.aggregate()
