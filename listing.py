"""
Paging, sorting and filtering for list endpoints.

Raw query parameters are normalized permissively: anything malformed falls
back to its default instead of failing the request.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from fastapi import Request

DEFAULT_PAGE = 0
DEFAULT_SIZE = 20
MAX_SIZE = 100
DEFAULT_SORT_FIELD = "createdAt"
DEFAULT_SORT_DIRECTION = "DESC"
SORT_DIRECTIONS = ("ASC", "DESC")
RESERVED_PARAMS = ("page", "size", "sort")
LEADING_INT = re.compile(r"\s*[+-]?\d+")


def _to_int(raw: Optional[str], default: int) -> int:
    """Leading integer of `raw` ("1.5" -> 1, "10abc" -> 10), else `default`."""
    match = LEADING_INT.match(raw) if isinstance(raw, str) else None
    return int(match.group()) if match else default


@dataclass(frozen=True)
class ListQuery:
    page: int = DEFAULT_PAGE
    size: int = DEFAULT_SIZE
    sort_field: str = DEFAULT_SORT_FIELD
    sort_direction: str = DEFAULT_SORT_DIRECTION
    filters: Dict[str, str] = field(default_factory=dict)

    @property
    def offset(self) -> int:
        return self.page * self.size

    @property
    def mongo_sort(self) -> List[Tuple[str, int]]:
        direction = 1 if self.sort_direction == "ASC" else -1
        keys = [(self.sort_field, direction)]
        if self.sort_field != "_id":
            keys.append(("_id", direction))
        return keys

    @property
    def sort(self) -> str:
        return f"{self.sort_field},{self.sort_direction}"


def parse_list_query(params: Mapping[str, str]) -> ListQuery:
    page = max(_to_int(params.get("page"), DEFAULT_PAGE), 0)
    size = _to_int(params.get("size"), DEFAULT_SIZE)
    if size < 1:
        size = DEFAULT_SIZE
    size = min(size, MAX_SIZE)

    sort_field, sort_direction = DEFAULT_SORT_FIELD, DEFAULT_SORT_DIRECTION
    raw_sort = params.get("sort")
    if raw_sort:
        parts = raw_sort.split(",")
        if parts[0].strip():
            sort_field = parts[0].strip()
        if len(parts) > 1 and parts[1].strip().upper() in SORT_DIRECTIONS:
            sort_direction = parts[1].strip().upper()

    filters = {k: v for k, v in params.items() if k not in RESERVED_PARAMS}
    return ListQuery(page=page, size=size, sort_field=sort_field,
                     sort_direction=sort_direction, filters=filters)


def list_query(request: Request) -> ListQuery:
    """FastAPI dependency: the normalized paging descriptor of the request."""
    return parse_list_query(request.query_params)


def paginated(content: List[Any], query: ListQuery, total_elements: int) -> Dict[str, Any]:
    return {
        "content": content,
        "page": query.page,
        "size": query.size,
        "totalElements": total_elements,
        "totalPages": -(-total_elements // query.size),
        "sort": query.sort,
    }


# Filters

@dataclass(frozen=True)
class Filter:
    """Maps one query parameter onto a predicate over a document field.

    `parse` turns the raw string into the Mongo condition for `field`; it
    raises ValueError when the value is unusable, in which case the filter
    is skipped.
    """
    field: str
    parse: Callable[[str], Any]


def contains(raw: str) -> Dict[str, Any]:
    if not raw:
        raise ValueError("empty")
    return {"$regex": re.escape(raw), "$options": "i"}


def exact(raw: str) -> str:
    if not raw:
        raise ValueError("empty")
    return raw


def one_of(*choices: str) -> Callable[[str], str]:
    def parse(raw: str) -> str:
        if raw not in choices:
            raise ValueError(raw)
        return raw
    return parse


def boolean(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise ValueError(raw)


def bound(operator: str, cast: Callable[[str], Any] = float) -> Callable[[str], Dict[str, Any]]:
    def parse(raw: str) -> Dict[str, Any]:
        return {operator: cast(raw)}
    return parse


def iso_datetime(raw: str) -> datetime:
    value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def any_field_contains(*fields: str) -> Callable[[str], List[Dict[str, Any]]]:
    """For use with the "$or" pseudo-field: substring match on any of `fields`."""
    def parse(raw: str) -> List[Dict[str, Any]]:
        condition = contains(raw)
        return [{name: dict(condition)} for name in fields]
    return parse


def build_filter(filters: Mapping[str, str], allowed: Mapping[str, Filter]) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    for name, raw in filters.items():
        rule = allowed.get(name)
        if rule is None:
            continue
        try:
            condition = rule.parse(raw)
        except (TypeError, ValueError):
            continue
        existing = query.get(rule.field)
        if isinstance(existing, dict) and isinstance(condition, dict):
            existing.update(condition)
        else:
            query[rule.field] = condition
    return query
