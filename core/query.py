"""
core/query.py -- Paginated Query Builder.

Turns a SearchRequest (free text, logical filters, sort, page) into a
QueryPlan for one entity. The plan is pure data; store/backend.py compiles it
to SQL. Nothing here touches the backend, so every malformed request fails
fast with ValidationError before a connection is opened.

Rules:
  - page is clamped into [1, MAX_PAGE]; page_size is clamped into
    [1, max_page_size] and defaults to default_page_size when absent.
  - offset = (page - 1) * page_size, limit = page_size.
  - sort_by must be one of the entity's sortable columns; sort_order must be
    asc or desc. Default order is created_at descending.
  - A non-unique sort column gets an ("id", "asc") tie-break so consecutive
    pages never overlap or skip rows.
  - Blank free text adds no predicate.

Layer rule: core/ is the kernel. This module may not import from api/ or store/.
"""

from typing import Iterable, Optional

from core.errors import ValidationError
from core.filters import FilterSpec
from core.models import SORT_ASC, SORT_DESC, Predicate, QueryPlan, Rejected, SearchRequest

DEFAULT_SORT = "created_at"
TIE_BREAK = "id"
# Keeps offsets inside a signed 64-bit integer for any page size.
MAX_PAGE = 1_000_000


def clamp_page(page: Optional[int]) -> int:
    if not isinstance(page, int) or isinstance(page, bool) or page < 1:
        return 1
    return min(page, MAX_PAGE)


def clamp_page_size(page_size: Optional[int], default_page_size: int = 20, max_page_size: int = 200) -> int:
    if page_size is None or not isinstance(page_size, int) or isinstance(page_size, bool):
        return default_page_size
    return max(1, min(page_size, max_page_size))


def build_predicates(request: SearchRequest, spec: FilterSpec) -> tuple[Predicate, ...]:
    """Resolve free text and every filter of request, failing on the first rejection."""
    predicates: list[Predicate] = []
    if request.query is not None and request.query.strip():
        resolved = spec.resolve_search(request.query)
        if isinstance(resolved, Rejected):
            raise ValidationError(resolved.reason, field="query")
        predicates.append(resolved)
    for name, raw in request.filters.items():
        resolved = spec.resolve(name, raw)
        if isinstance(resolved, Rejected):
            raise ValidationError(f"Invalid filter {name!r}: {resolved.reason}", field=name)
        predicates.append(resolved)
    return tuple(predicates)


def build_order(
    sort_by: Optional[str],
    sort_order: Optional[str],
    sortable: Iterable[str],
    unique: Iterable[str] = frozenset({TIE_BREAK}),
) -> tuple[tuple[str, str], ...]:
    order = (sort_order or SORT_DESC).lower()
    if order not in (SORT_ASC, SORT_DESC):
        raise ValidationError(f"sort_order must be 'asc' or 'desc', got {sort_order!r}", field="sort_order")
    column = sort_by or DEFAULT_SORT
    if column not in set(sortable):
        raise ValidationError(f"Cannot sort by {column!r}", field="sort_by")
    if column in set(unique):
        return ((column, order),)
    return ((column, order), (TIE_BREAK, SORT_ASC))


def build_query(
    request: SearchRequest,
    spec: FilterSpec,
    sortable: Iterable[str],
    unique: Iterable[str] = frozenset({TIE_BREAK}),
    default_page_size: int = 20,
    max_page_size: int = 200,
) -> QueryPlan:
    """Build the QueryPlan for one list request.

    Raises:
        ValidationError: unknown sort field, bad sort order, or any filter the
            entity's FilterSpec rejects.
    """
    predicates = build_predicates(request, spec)
    order_by = build_order(request.sort_by, request.sort_order, sortable, unique)
    page = clamp_page(request.page)
    page_size = clamp_page_size(request.page_size, default_page_size, max_page_size)
    return QueryPlan(
        predicates=predicates,
        order_by=order_by,
        offset=(page - 1) * page_size,
        limit=page_size,
    )
