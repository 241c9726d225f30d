"""
core/filters.py -- Filter Specification: which logical fields an entity can be
filtered on, and how each one becomes a backend predicate.

Every list page in the admin UI filters by some mix of status, severity,
category, owner, business unit and a date window, plus a free-text box.
Instead of each entity hand-assembling predicates, an entity declares its
FilterFields once and FilterSpec.resolve() does the translation.

Contract: resolve(name, raw) returns either a Predicate or a Rejected. A value
outside the declared set is Rejected (and logged), never forwarded to the
backend as an opaque predicate. An undeclared field name is Rejected too.

Kinds:
  enum        -- one value from the allowed set         -> eq
  multi-enum  -- non-empty list from the allowed set    -> in
  reference   -- non-empty list of UUID strings         -> in
  date-range  -- {"start": ..., "end": ...}, start<=end -> range
  free-text   -- case-insensitive contains, ORed across the entity's
                 text columns                           -> icontains_any

Layer rule: core/ is the kernel. This module may not import from api/ or store/.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union

from core.models import Predicate, Rejected

logger = logging.getLogger("grcadmin.filters")


class FilterKind(str, Enum):
    enum = "enum"
    multi_enum = "multi-enum"
    date_range = "date-range"
    free_text = "free-text"
    reference = "reference"


@dataclass(frozen=True)
class FilterField:
    """One filterable logical field.

    column defaults to the field name. coerce converts validated raw strings to
    the column's native type (e.g. int for CMMC levels) after the allowed-set
    check, which always runs on the string form.
    """

    name: str
    kind: FilterKind
    column: str = ""
    allowed: frozenset[str] = field(default_factory=frozenset)
    coerce: Optional[Callable[[str], Any]] = None

    @property
    def target(self) -> str:
        return self.column or self.name


def multi_enum(name: str, allowed: Iterable[str], column: str = "", coerce=None) -> FilterField:
    return FilterField(name, FilterKind.multi_enum, column, frozenset(allowed), coerce)


def single_enum(name: str, allowed: Iterable[str], column: str = "") -> FilterField:
    return FilterField(name, FilterKind.enum, column, frozenset(allowed))


def reference(name: str, column: str = "") -> FilterField:
    return FilterField(name, FilterKind.reference, column)


def date_range(name: str, column: str) -> FilterField:
    return FilterField(name, FilterKind.date_range, column)


# ---------------------------------------------------------------------------
# Date parsing
# ---------------------------------------------------------------------------


def parse_date_bound(value: Any) -> Optional[Union[date, datetime]]:
    """Parse an ISO date or datetime. Returns None when the value is unusable.

    Naive datetimes are treated as UTC; aware ones are converted to UTC so
    string comparison against stored UTC timestamps stays ordered. A trailing
    "Z" is read as UTC.
    """
    if isinstance(value, datetime):
        parsed: Union[date, datetime] = value
    elif isinstance(value, date):
        return value
    elif isinstance(value, str) and value.strip():
        text = value.strip().replace("Z", "+00:00")
        try:
            if "T" in text or " " in text:
                parsed = datetime.fromisoformat(text)
            else:
                return date.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def as_utc_datetime(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Specification
# ---------------------------------------------------------------------------


class FilterSpec:
    """The declared filter fields and free-text columns of one entity."""

    def __init__(self, entity: str, fields: Iterable[FilterField], search_columns: Iterable[str] = ()) -> None:
        self.entity = entity
        self.fields: dict[str, FilterField] = {}
        for f in fields:
            if f.kind is FilterKind.free_text:
                raise ValueError(f"{entity}: free-text search is declared through search_columns")
            self.fields[f.name] = f
        self.search_columns: tuple[str, ...] = tuple(search_columns)

    def __contains__(self, name: str) -> bool:
        return name in self.fields

    def field(self, name: str) -> Optional[FilterField]:
        return self.fields.get(name)

    def choices(self) -> dict[str, frozenset[str]]:
        """Column -> allowed values for every enumerated field."""
        return {f.target: f.allowed for f in self.fields.values() if f.allowed}

    def describe(self) -> list[dict[str, Any]]:
        """Field declarations in a JSON-friendly shape (for UIs building filter menus)."""
        return [
            {"name": f.name, "kind": f.kind.value, "allowed": sorted(f.allowed)}
            for f in sorted(self.fields.values(), key=lambda f: f.name)
        ]

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, name: str, raw: Any) -> Union[Predicate, Rejected]:
        """Translate one logical filter into a Predicate, or reject it."""
        spec_field = self.fields.get(name)
        if spec_field is None:
            return self._reject(name, "not a filterable field")
        if spec_field.kind is FilterKind.enum:
            return self._resolve_enum(spec_field, raw)
        if spec_field.kind is FilterKind.multi_enum:
            return self._resolve_multi(spec_field, raw)
        if spec_field.kind is FilterKind.reference:
            return self._resolve_reference(spec_field, raw)
        return self._resolve_date_range(spec_field, raw)

    def resolve_search(self, text: Any) -> Union[Predicate, Rejected]:
        """Free-text search: case-insensitive contains across the search columns."""
        if not self.search_columns:
            return self._reject("query", "entity has no searchable columns")
        if not isinstance(text, str) or not text.strip():
            return self._reject("query", "search text must be a non-empty string")
        return Predicate("icontains_any", self.search_columns, text.strip())

    def _resolve_enum(self, spec_field: FilterField, raw: Any) -> Union[Predicate, Rejected]:
        if isinstance(raw, (list, tuple)):
            if len(raw) != 1:
                return self._reject(spec_field.name, "expects exactly one value")
            raw = raw[0]
        if not isinstance(raw, str) or raw not in spec_field.allowed:
            return self._reject(spec_field.name, f"{raw!r} is not one of {sorted(spec_field.allowed)}")
        return Predicate("eq", (spec_field.target,), self._coerce(spec_field, raw))

    def _resolve_multi(self, spec_field: FilterField, raw: Any) -> Union[Predicate, Rejected]:
        values = self._string_list(raw)
        if values is None:
            return self._reject(spec_field.name, "expects a non-empty list of strings")
        outside = [v for v in values if v not in spec_field.allowed]
        if outside:
            return self._reject(
                spec_field.name,
                f"{outside} not in allowed values {sorted(spec_field.allowed)}",
            )
        return Predicate("in", (spec_field.target,), tuple(self._coerce(spec_field, v) for v in values))

    def _resolve_reference(self, spec_field: FilterField, raw: Any) -> Union[Predicate, Rejected]:
        values = self._string_list(raw)
        if values is None:
            return self._reject(spec_field.name, "expects a non-empty list of ids")
        normalized: list[str] = []
        for v in values:
            try:
                normalized.append(str(uuid.UUID(v)))
            except ValueError:
                return self._reject(spec_field.name, f"{v[:50]!r} is not a UUID")
        return Predicate("in", (spec_field.target,), tuple(dict.fromkeys(normalized)))

    def _resolve_date_range(self, spec_field: FilterField, raw: Any) -> Union[Predicate, Rejected]:
        if not isinstance(raw, dict) or "start" not in raw or "end" not in raw:
            return self._reject(spec_field.name, "expects {start, end}")
        start = parse_date_bound(raw["start"])
        end = parse_date_bound(raw["end"])
        if start is None or end is None:
            return self._reject(spec_field.name, "start and end must be ISO dates")
        if as_utc_datetime(start) > as_utc_datetime(end):
            return self._reject(spec_field.name, "start is after end")
        # Bounds use the stored form of date columns: a full UTC datetime.
        lower = as_utc_datetime(start).isoformat()
        if isinstance(end, datetime):
            upper, inclusive = end.isoformat(), True
        else:
            # Date-only end covers the whole day.
            upper, inclusive = as_utc_datetime(end + timedelta(days=1)).isoformat(), False
        return Predicate("range", (spec_field.target,), (lower, upper, inclusive))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _string_list(raw: Any) -> Optional[list[str]]:
        """Return raw as a de-duplicated list of strings, or None if it is not one."""
        if not isinstance(raw, (list, tuple)) or not raw:
            return None
        if not all(isinstance(v, str) for v in raw):
            return None
        return list(dict.fromkeys(raw))

    @staticmethod
    def _coerce(spec_field: FilterField, value: str) -> Any:
        return spec_field.coerce(value) if spec_field.coerce else value

    def _reject(self, name: str, reason: str) -> Rejected:
        logger.warning("Rejected filter %s.%s: %s", self.entity, name, reason)
        return Rejected(name, reason)
