"""
store/repository.py -- Entity Repository: the async access facade for every entity.

One EntityRepository per entity, all driven by the same code: the entity's
EntityDefinition (store/entities.py) supplies the table, filters, status
field and side effects; the injected SQLBackend executes the SQL.

Contract:
  - Every operation is async. The blocking backend call runs in a worker
    thread and is bounded by the configured timeout; exceeding it raises
    Timeout. A write that times out may still commit -- its outcome is unknown.
  - Input is validated before the backend is contacted (ValidationError).
  - Backend failures are wrapped in RepositoryError (chained to the cause)
    and never retried. Unique-constraint conflicts surface as ValidationError.
  - Missing ids (including malformed ones) raise NotFound.
  - Last write wins. There is no version check on update.

Usage:
    store = GRCStore(SQLBackend("sqlite:///:memory:"))
    page = await store.incidents.list(SearchRequest(filters={"severity": ["high"]}))
    record = await store.repository("vulnerabilities").update_status(vid, "patched")
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Iterator, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.config import Settings, now_iso
from core.errors import NotFound, RepositoryError, Timeout, ValidationError
from core.filters import as_utc_datetime, parse_date_bound
from core.metrics import compliance_snapshot, security_dashboard_metrics
from core.models import SORT_ASC, SORT_DESC, EntityRecord, Page, SearchRequest, StatusTransition
from core.query import build_predicates, build_query
from store.backend import SQLBackend
from store.entities import ENTITIES, EntityDefinition

logger = logging.getLogger("grcadmin.store")


# ---------------------------------------------------------------------------
# Write validation
# ---------------------------------------------------------------------------


def _check_value(definition: EntityDefinition, name: str, value: Any) -> Any:
    """Validate one column value and return it in storage form."""
    column = definition.columns[name]
    if value is None:
        if not column.nullable:
            raise ValidationError(f"{name} may not be null", field=name)
        return None

    kind = definition.column_kind(name)
    if kind == "bool":
        if not isinstance(value, bool):
            raise ValidationError(f"{name} must be a boolean", field=name)
    elif kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{name} must be an integer", field=name)
    elif kind == "float":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{name} must be a number", field=name)
        value = float(value)
    elif kind == "date":
        parsed = parse_date_bound(value) if isinstance(value, str) else None
        if parsed is None:
            raise ValidationError(f"{name} must be an ISO 8601 date or datetime", field=name)
        # Dates are stored as UTC datetimes so range filters compare like with like.
        value = as_utc_datetime(parsed).isoformat()
    elif kind == "ref":
        try:
            value = str(uuid.UUID(value)) if isinstance(value, str) else None
        except ValueError:
            value = None
        if value is None:
            raise ValidationError(f"{name} must be a UUID", field=name)
    elif kind == "list":
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ValidationError(f"{name} must be a list of strings", field=name)
    elif kind == "object":
        if not isinstance(value, dict):
            raise ValidationError(f"{name} must be an object", field=name)
    else:
        if not isinstance(value, str):
            raise ValidationError(f"{name} must be a string", field=name)
        length = getattr(column.type, "length", None)
        if length and len(value) > length:
            raise ValidationError(f"{name} must be at most {length} characters", field=name)

    allowed = definition.choices.get(name)
    if allowed is not None and str(value) not in allowed:
        raise ValidationError(f"{name} must be one of {sorted(allowed)}", field=name)
    return value


def validate_write(
    definition: EntityDefinition,
    values: dict[str, Any],
    creating: bool,
) -> dict[str, Any]:
    """Check a create/update payload and return it in storage form.

    Rejects unknown columns, server-managed columns, the status field on a
    plain update, missing required columns on create, and bad values.
    """
    if not isinstance(values, dict):
        raise ValidationError("payload must be an object")
    unknown = sorted(set(values) - set(definition.columns))
    if unknown:
        raise ValidationError(f"Unknown field(s) for {definition.name}: {', '.join(unknown)}", field=unknown[0])
    managed = sorted(set(values) & definition.server_managed)
    if managed:
        raise ValidationError(f"Field(s) managed by the server: {', '.join(managed)}", field=managed[0])
    if not creating and definition.status_field and definition.status_field in values:
        raise ValidationError(
            f"{definition.status_field} changes go through the status endpoint",
            field=definition.status_field,
        )
    if creating:
        missing = sorted(n for n in definition.required if values.get(n) is None)
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}", field=missing[0])
    return {name: _check_value(definition, name, value) for name, value in values.items()}


def _normalize_id(definition: EntityDefinition, record_id: Any) -> str:
    """Canonical UUID string; malformed ids cannot exist, so they are NotFound."""
    try:
        return str(uuid.UUID(str(record_id)))
    except ValueError:
        raise NotFound(definition.slug, str(record_id)) from None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class EntityRepository:
    """Async CRUD, search and status transitions for one entity."""

    def __init__(
        self,
        backend: SQLBackend,
        definition: EntityDefinition,
        timeout: float = 10.0,
        default_page_size: int = 20,
        max_page_size: int = 200,
        fetch_limit: int = 5000,
    ) -> None:
        self.backend = backend
        self.definition = definition
        self.timeout = timeout
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.fetch_limit = fetch_limit

    @property
    def entity(self) -> str:
        return self.definition.slug

    @property
    def table(self):
        return self.definition.table

    async def _call(self, operation: str, fn, *args) -> Any:
        """Run a blocking backend call in a worker thread, bounded by the timeout."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("%s on %s timed out after %ss", operation, self.entity, self.timeout)
            raise Timeout(operation, self.entity, self.timeout) from exc
        except IntegrityError as exc:
            logger.warning("%s on %s violated a constraint: %s", operation, self.entity, exc.orig)
            raise ValidationError(
                f"{self.definition.name} conflicts with an existing record or misses a required value"
            ) from exc
        except SQLAlchemyError as exc:
            logger.warning("%s on %s failed: %s", operation, self.entity, exc)
            raise RepositoryError(operation, self.entity) from exc
        except Exception as exc:
            logger.exception("%s on %s failed in the driver", operation, self.entity)
            raise RepositoryError(operation, self.entity) from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list(self, request: Optional[SearchRequest] = None) -> Page[EntityRecord]:
        """Return one page of records matching request (all records, first page, when None)."""
        request = request or SearchRequest()
        plan = build_query(
            request,
            self.definition.filters,
            self.definition.sortable,
            unique=self.definition.unique,
            default_page_size=self.default_page_size,
            max_page_size=self.max_page_size,
        )
        rows, total = await self._call("list", self.backend.select_page, self.table, plan)
        return Page(data=rows, total=total, page=plan.offset // plan.limit + 1, page_size=plan.limit)

    async def get_by_id(self, record_id: str) -> EntityRecord:
        rid = _normalize_id(self.definition, record_id)
        record = await self._call("get_by_id", self.backend.select_one, self.table, rid)
        if record is None:
            raise NotFound(self.entity, rid)
        return record

    async def count_by(self, field: str, request: Optional[SearchRequest] = None) -> dict[Any, int]:
        """Server-side count of records per value of an enumerated filter field.

        The request's free text and filters narrow the counted set; its sort
        and paging are ignored.
        """
        spec_field = self.definition.filters.field(field)
        if spec_field is None or not spec_field.allowed:
            raise ValidationError(f"Cannot count {self.entity} by {field!r}", field=field)
        predicates = build_predicates(request, self.definition.filters) if request else ()
        return await self._call("count_by", self.backend.group_count, self.table, spec_field.target, predicates)

    async def fetch_all(self, request: Optional[SearchRequest] = None, limit: Optional[int] = None) -> list[EntityRecord]:
        """Every matching record, newest first, capped at limit (default: fetch_limit)."""
        cap = limit or self.fetch_limit
        predicates = build_predicates(request, self.definition.filters) if request else ()
        order_by = (("created_at", SORT_DESC), ("id", SORT_ASC))
        rows = await self._call("fetch_all", self.backend.fetch, self.table, predicates, order_by, cap)
        if len(rows) >= cap:
            logger.warning("fetch_all on %s capped at %d rows; aggregates may be partial", self.entity, cap)
        return rows

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, data: dict[str, Any]) -> EntityRecord:
        """Validate and insert a new record; return it as stored."""
        values = validate_write(self.definition, data, creating=True)
        now = now_iso()
        values["id"] = str(uuid.uuid4())
        values["created_at"] = now
        values["updated_at"] = now
        if self.definition.code_field:
            values[self.definition.code_field] = self.definition.generate_code()
        for column in self.definition.create_stamps:
            values[column] = now
        status_field = self.definition.status_field
        if status_field and values.get(status_field) in self.definition.side_effects:
            values[self.definition.side_effects[values[status_field]]] = now
        record = await self._call("create", self.backend.insert, self.table, values)
        logger.info("Created %s %s", self.definition.name, record["id"])
        return record

    async def update(self, record_id: str, changes: dict[str, Any]) -> EntityRecord:
        """Apply a partial update. Status changes must use update_status()."""
        rid = _normalize_id(self.definition, record_id)
        values = validate_write(self.definition, changes, creating=False)
        if not values:
            raise ValidationError("No fields to update")
        values["updated_at"] = now_iso()
        record = await self._call("update", self.backend.update, self.table, rid, values)
        if record is None:
            raise NotFound(self.entity, rid)
        return record

    async def delete(self, record_id: str) -> None:
        """Hard delete. Deleting a missing (or already deleted) id raises NotFound."""
        rid = _normalize_id(self.definition, record_id)
        deleted = await self._call("delete", self.backend.delete, self.table, rid)
        if not deleted:
            raise NotFound(self.entity, rid)
        logger.info("Deleted %s %s", self.definition.name, rid)

    def plan_transition(self, record_id: str, new_status: str, extra: Optional[dict[str, Any]] = None) -> StatusTransition:
        """Validate a status change and work out the timestamps it stamps."""
        definition = self.definition
        if definition.status_field is None:
            raise ValidationError(f"{definition.name} has no status field")
        if new_status not in definition.status_values:
            raise ValidationError(
                f"{definition.status_field} must be one of {sorted(definition.status_values)}",
                field=definition.status_field,
            )
        extra = dict(extra or {})
        not_allowed = sorted(set(extra) - set(definition.status_extras))
        if not_allowed:
            raise ValidationError(
                f"Field(s) not allowed with a status change: {', '.join(not_allowed)}",
                field=not_allowed[0],
            )
        checked = {name: _check_value(definition, name, value) for name, value in extra.items()}
        now = now_iso()
        stamps = {}
        if new_status in definition.side_effects:
            stamps[definition.side_effects[new_status]] = now
        return StatusTransition(
            entity_id=_normalize_id(definition, record_id),
            new_status=new_status,
            side_effects=stamps,
            extra=checked,
        )

    async def update_status(
        self,
        record_id: str,
        new_status: str,
        extra: Optional[dict[str, Any]] = None,
    ) -> EntityRecord:
        """Change status, permitted extra fields and any side-effect timestamp atomically.

        The side-effect timestamp is set only the first time the record enters
        that status; repeating the transition leaves it untouched.
        """
        transition = self.plan_transition(record_id, new_status, extra)
        values = {self.definition.status_field: transition.new_status, "updated_at": now_iso(), **transition.extra}
        record = await self._call(
            "update_status",
            self.backend.update_status,
            self.table,
            transition.entity_id,
            values,
            transition.side_effects,
        )
        if record is None:
            raise NotFound(self.entity, transition.entity_id)
        logger.info("%s %s -> %s", self.definition.name, transition.entity_id, new_status)
        return record


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class GRCStore:
    """One repository per declared entity over a shared backend.

    Repositories are reachable by slug (store.repository("pci-assessments"))
    or attribute (store.pci_assessments).
    """

    def __init__(
        self,
        backend: SQLBackend,
        timeout: float = 10.0,
        default_page_size: int = 20,
        max_page_size: int = 200,
        fetch_limit: int = 5000,
        entities: Optional[dict[str, EntityDefinition]] = None,
    ) -> None:
        self.backend = backend
        self._repositories: dict[str, EntityRepository] = {
            slug: EntityRepository(backend, definition, timeout, default_page_size, max_page_size, fetch_limit)
            for slug, definition in (entities or ENTITIES).items()
        }

    @classmethod
    def from_settings(cls, settings: Settings, backend: Optional[SQLBackend] = None) -> "GRCStore":
        return cls(
            backend or SQLBackend(settings.database_url),
            timeout=settings.request_timeout_seconds,
            default_page_size=settings.default_page_size,
            max_page_size=settings.max_page_size,
            fetch_limit=settings.dashboard_fetch_limit,
        )

    def repository(self, slug: str) -> EntityRepository:
        try:
            return self._repositories[slug]
        except KeyError:
            raise KeyError(f"Unknown entity: {slug}") from None

    def __getattr__(self, name: str) -> EntityRepository:
        repositories = self.__dict__.get("_repositories", {})
        slug = name.replace("_", "-")
        if slug in repositories:
            return repositories[slug]
        raise AttributeError(name)

    def __iter__(self) -> Iterator[EntityRepository]:
        return iter(self._repositories.values())

    @property
    def slugs(self) -> list[str]:
        return list(self._repositories)

    # ------------------------------------------------------------------
    # Dashboards
    # ------------------------------------------------------------------

    async def security_dashboard(self) -> dict[str, Any]:
        """IT security dashboard cards from bounded fetches of the nine source tables."""
        slugs = (
            "incidents",
            "vulnerabilities",
            "policies",
            "controls",
            "assets",
            "pci-assessments",
            "isms-programs",
            "cmmc-programs",
            "alerts",
        )
        results = await asyncio.gather(*(self.repository(s).fetch_all() for s in slugs))
        return security_dashboard_metrics(*results)

    async def compliance_snapshot(self, framework_id: Optional[str] = None) -> dict[str, Any]:
        """Snapshot card computed from a server-side count of assessment statuses."""
        request = SearchRequest(filters={"framework": [framework_id]}) if framework_id else None
        counts = await self.repository("compliance-assessments").count_by("status", request)
        return compliance_snapshot(counts)

    def ping(self) -> bool:
        return self.backend.ping()

    def close(self) -> None:
        self.backend.close()
