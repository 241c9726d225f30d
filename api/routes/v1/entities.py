"""
api/routes/v1/entities.py -- CRUD, search and status routes for every entity.

One router per EntityDefinition, built by build_router() and mounted under
/api/v1/{slug}. Handlers are thin: they turn HTTP input into SearchRequests or
payload dicts, call the entity's repository on app.state.store, and let the
domain exceptions (ValidationError, NotFound, Timeout, RepositoryError) reach
the exception handlers in api/main.py, which map them to the shared error
envelope.

Routes per entity:
  GET    /{slug}                 list (q, sort_by, sort_order, page, page_size, filters)
  POST   /{slug}/search          list with a JSON SearchBody
  GET    /{slug}/stats/{field}   server-side count per value of an enumerated filter
  GET    /{slug}/{id}            get one record
  POST   /{slug}                 create (201)
  PATCH  /{slug}/{id}            partial update (status excluded)
  DELETE /{slug}/{id}            hard delete (204)
  POST   /{slug}/{id}/status     status transition (entities with a status field)

Filters in the query string use the logical filter names and repeat for
multiple values: ?severity=high&severity=critical. Date ranges are written
START..END: ?date_range=2024-01-01..2024-01-31.
"""

from typing import Any, Literal, Optional

from fastapi import APIRouter, Query, Request, Response
from starlette.datastructures import QueryParams

from api.models import EntityInfo, PageResponse, SearchBody, StatusUpdate, build_form_models
from core.errors import ValidationError
from core.filters import FilterKind
from core.models import SearchRequest
from store.entities import ENTITIES, EntityDefinition
from store.repository import EntityRepository

_RESERVED_PARAMS = {"q", "sort_by", "sort_order", "page", "page_size"}
_RANGE_SEPARATOR = ".."


def parse_filter_params(definition: EntityDefinition, params: QueryParams) -> dict[str, Any]:
    """Collect logical filters from query parameters.

    Raises:
        ValidationError: a parameter that is neither reserved nor a declared filter.
    """
    filters: dict[str, Any] = {}
    for name in params.keys():
        if name in _RESERVED_PARAMS or name in filters:
            continue
        spec_field = definition.filters.field(name)
        if spec_field is None:
            raise ValidationError(f"Unknown filter {name!r} for {definition.slug}", field=name)
        if spec_field.kind is FilterKind.date_range:
            raw = params.get(name, "")
            if _RANGE_SEPARATOR in raw:
                start, end = raw.split(_RANGE_SEPARATOR, 1)
                filters[name] = {"start": start, "end": end}
            else:
                filters[name] = raw
        elif spec_field.kind is FilterKind.enum:
            filters[name] = params.get(name)
        else:
            filters[name] = params.getlist(name)
    return filters


def build_router(definition: EntityDefinition) -> APIRouter:
    """Build the router for one entity."""
    create_body, update_body = build_form_models(definition)
    slug = definition.slug
    router = APIRouter(prefix=f"/{slug}", tags=[slug])

    def repository(request: Request) -> EntityRepository:
        return request.app.state.store.repository(slug)

    @router.get("", response_model=PageResponse, name=f"list_{slug}")
    async def list_records(
        request: Request,
        q: Optional[str] = Query(default=None, max_length=200),
        sort_by: Optional[str] = Query(default=None, max_length=64),
        sort_order: Literal["asc", "desc"] = "desc",
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> PageResponse:
        """Return one page of records matching the query-string filters."""
        search = SearchRequest(
            query=q,
            filters=parse_filter_params(definition, request.query_params),
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            page_size=page_size,
        )
        result = await repository(request).list(search)
        return PageResponse(**result.to_dict())

    @router.post("/search", response_model=PageResponse, name=f"search_{slug}")
    async def search_records(request: Request, body: SearchBody) -> PageResponse:
        """Same as the list route, with filters in a JSON body."""
        search = SearchRequest(
            query=body.query,
            filters=body.filters,
            sort_by=body.sort_by,
            sort_order=body.sort_order,
            page=body.page,
            page_size=body.page_size,
        )
        result = await repository(request).list(search)
        return PageResponse(**result.to_dict())

    @router.get("/stats/{field}", response_model=dict[str, int], name=f"stats_{slug}")
    async def record_stats(request: Request, field: str, q: Optional[str] = Query(default=None, max_length=200)):
        """Count records per value of an enumerated filter, narrowed by the other filters."""
        filters = parse_filter_params(definition, request.query_params)
        counts = await repository(request).count_by(field, SearchRequest(query=q, filters=filters))
        return {str(value): n for value, n in counts.items()}

    @router.get("/{record_id}", response_model=dict[str, Any], name=f"get_{slug}")
    async def get_record(request: Request, record_id: str):
        return await repository(request).get_by_id(record_id)

    @router.post("", response_model=dict[str, Any], status_code=201, name=f"create_{slug}")
    async def create_record(request: Request, body: create_body):  # type: ignore[valid-type]
        return await repository(request).create(body.model_dump(exclude_unset=True))

    @router.patch("/{record_id}", response_model=dict[str, Any], name=f"update_{slug}")
    async def update_record(request: Request, record_id: str, body: update_body):  # type: ignore[valid-type]
        return await repository(request).update(record_id, body.model_dump(exclude_unset=True))

    @router.delete("/{record_id}", status_code=204, name=f"delete_{slug}")
    async def delete_record(request: Request, record_id: str) -> Response:
        await repository(request).delete(record_id)
        return Response(status_code=204)

    if definition.status_field:

        @router.post("/{record_id}/status", response_model=dict[str, Any], name=f"status_{slug}")
        async def update_record_status(request: Request, record_id: str, body: StatusUpdate):
            """Change status; the matching timestamp (resolved_at, patched_date, ...) is stamped once."""
            return await repository(request).update_status(record_id, body.status, body.extra)

    return router


def entity_routers() -> list[APIRouter]:
    return [build_router(definition) for definition in ENTITIES.values()]


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------

catalogue_router = APIRouter()


@catalogue_router.get("/entities", response_model=list[EntityInfo])
def list_entities() -> list[EntityInfo]:
    """Declared entities with their filters, statuses and sortable columns."""
    return [EntityInfo(**definition.describe()) for definition in ENTITIES.values()]
