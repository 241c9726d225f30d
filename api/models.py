"""
API request and response models for GRC Admin REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.

Entity bodies are generated from each entity's table by build_form_models(),
so the create/update contract can never drift from the schema. The repository
validates again on every write; these models only give HTTP clients early,
field-level 422s and an accurate OpenAPI schema.

Separation of concerns: core/ models = domain truth; api/ models = API contract.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, create_model

from store.entities import EntityDefinition

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Search and pages
# ---------------------------------------------------------------------------


class SearchBody(BaseModel):
    """Request body for POST /api/v1/{entity}/search.

    filters maps a logical filter name to its value: a list of strings for
    enumerated and id filters, or {"start": ..., "end": ...} for date ranges.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    query: Optional[str] = Field(default=None, max_length=200)
    filters: dict[str, Any] = Field(default_factory=dict)
    sort_by: Optional[str] = Field(default=None, max_length=64)
    sort_order: Literal["asc", "desc"] = "desc"
    page: int = 1
    page_size: Optional[int] = None


class PageResponse(BaseModel):
    """One page of records with the pagination metadata list views bind to."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    data: list[dict[str, Any]]
    total: int
    page: int
    page_size: int = Field(alias="pageSize")
    total_pages: int = Field(alias="totalPages")


class StatusUpdate(BaseModel):
    """Request body for POST /api/v1/{entity}/{id}/status.

    extra carries the fields an entity allows alongside a status change
    (lessons_learned for incidents, remediation_status for vulnerabilities, ...).
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    status: str = Field(min_length=1, max_length=50)
    extra: dict[str, Any] = Field(default_factory=dict)


class FilterFieldInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    kind: str
    allowed: list[str]


class EntityInfo(BaseModel):
    """One entry of GET /api/v1/entities."""

    model_config = ConfigDict(frozen=True)

    slug: str
    name: str
    status_field: Optional[str]
    statuses: list[str]
    filters: list[FilterFieldInfo]
    search_columns: list[str]
    sortable: list[str]


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------


class SecurityDashboardResponse(BaseModel):
    """Response for GET /api/v1/dashboard/security."""

    model_config = ConfigDict(frozen=True)

    total_incidents: int
    open_incidents: int
    critical_incidents: int
    resolved_incidents_30d: int
    total_vulnerabilities: int
    high_critical_vulnerabilities: int
    patched_vulnerabilities_30d: int
    total_policies: int
    active_policies: int
    policies_due_review: int
    total_controls: int
    implemented_controls: int
    effective_controls: int
    total_assets: int
    critical_assets: int
    assets_with_vulnerabilities: int
    pci_compliance_score: float
    isms_certification_status: str
    cmmc_current_level: int
    security_alerts_24h: int
    false_positive_rate: float


class ComplianceSnapshotResponse(BaseModel):
    """Response for GET /api/v1/dashboard/compliance."""

    model_config = ConfigDict(frozen=True)

    framework_id: Optional[str] = None
    compliant_count: int
    partially_compliant_count: int
    non_compliant_count: int
    not_applicable_count: int
    under_review_count: int
    unknown_count: int
    total_requirements: int
    overall_score: float


# ---------------------------------------------------------------------------
# Entity bodies
# ---------------------------------------------------------------------------

_PY_TYPES: dict[str, Any] = {
    "bool": bool,
    "int": int,
    "float": float,
    "str": str,
    "date": str,
    "ref": str,
    "list": list[str],
    "object": dict[str, Any],
}


def _field_type(definition: EntityDefinition, name: str) -> Any:
    kind = definition.column_kind(name)
    allowed = definition.choices.get(name)
    if allowed:
        if kind == "int":
            return Literal[tuple(sorted(int(v) for v in allowed))]
        return Literal[tuple(sorted(allowed))]
    return _PY_TYPES[kind]


def build_form_models(definition: EntityDefinition) -> tuple[type[BaseModel], type[BaseModel]]:
    """Return (CreateModel, UpdateModel) for one entity.

    Server-managed columns are absent from both. The update model makes every
    field optional and omits the status field, which only changes through the
    status endpoint.
    """
    create_fields: dict[str, Any] = {}
    update_fields: dict[str, Any] = {}
    for column in definition.table.columns:
        name = column.name
        if name in definition.server_managed:
            continue
        py_type = _field_type(definition, name)
        if name in definition.required:
            create_fields[name] = (py_type, ...)
        else:
            create_fields[name] = (Optional[py_type], None)
        if name != definition.status_field:
            update_fields[name] = (Optional[py_type], None)

    prefix = "".join(part.capitalize() for part in definition.slug.split("-"))
    config = ConfigDict(extra="forbid", str_strip_whitespace=True)
    create_model_cls = create_model(f"{prefix}Create", __config__=config, **create_fields)
    update_model_cls = create_model(f"{prefix}Update", __config__=config, **update_fields)
    return create_model_cls, update_model_cls
