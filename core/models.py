"""
core/models.py -- Domain dataclasses for the entity access facade.

These are plain data containers. Filter resolution lives in core/filters.py,
query assembly in core/query.py, and execution in store/. The API layer has
its own pydantic transport models in api/models.py; route handlers map
between the two.

An EntityRecord is any domain row (incident, vulnerability, policy, ...)
represented as a plain dict keyed by column name, with an opaque UUID "id"
and "created_at"/"updated_at" maintained by the repository.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Generic, Mapping, Optional, TypeVar, Union

T = TypeVar("T")

EntityRecord = dict[str, Any]

SORT_ASC = "asc"
SORT_DESC = "desc"

# Logical filter value: a list of strings for enum/reference kinds, a
# {"start", "end"} mapping for date ranges, or a bare string for single enums.
FilterValue = Union[str, list, tuple, Mapping[str, Any]]


@dataclass
class SearchRequest:
    """One list request from a UI view.

    page and page_size are clamped by the query builder rather than rejected,
    so out-of-range values from a stale URL never break a page.
    sort_by None means the default order (created_at descending).
    """

    query: Optional[str] = None
    filters: dict[str, FilterValue] = field(default_factory=dict)
    sort_by: Optional[str] = None
    sort_order: str = SORT_DESC
    page: int = 1
    page_size: Optional[int] = None


@dataclass(frozen=True)
class Predicate:
    """A single backend-neutral filter condition.

    op:
      eq            -- columns[0] == value
      in            -- columns[0] IN value (tuple)
      range         -- value is (lower, upper, upper_inclusive); lower is
                       inclusive, upper is exclusive unless upper_inclusive
      icontains_any -- case-insensitive substring match of value against
                       any of columns (logical OR)
    """

    op: str
    columns: tuple[str, ...]
    value: Any

    @property
    def column(self) -> str:
        return self.columns[0]


@dataclass(frozen=True)
class Rejected:
    """Result of a filter resolution that must not reach the backend."""

    field: str
    reason: str


@dataclass(frozen=True)
class QueryPlan:
    """Transport-agnostic query: predicates are ANDed, order_by is applied in sequence."""

    predicates: tuple[Predicate, ...]
    order_by: tuple[tuple[str, str], ...]
    offset: int
    limit: int


@dataclass
class Page(Generic[T]):
    """One bounded slice of a larger result set.

    Invariants: len(data) <= page_size; total_pages == ceil(total / page_size),
    which is 0 exactly when total is 0.
    """

    data: list[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.total <= 0:
            return 0
        return math.ceil(self.total / self.page_size)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the key names list views bind to."""
        return {
            "data": self.data,
            "total": self.total,
            "page": self.page,
            "pageSize": self.page_size,
            "totalPages": self.total_pages,
        }


@dataclass(frozen=True)
class StatusTransition:
    """A status write plus the derived timestamp fields it stamps.

    side_effects maps timestamp column -> ISO time. Each stamp is written only
    if the column is still empty, so it is set exactly once.
    """

    entity_id: str
    new_status: str
    side_effects: dict[str, str] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
