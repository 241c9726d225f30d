"""
api/routes/v1/dashboard.py -- Aggregated metrics endpoints for GRC Admin.

Returns payloads suitable for driving dashboard widgets:
  - /dashboard/security   -- IT security card set (incidents, vulnerabilities,
                             policies, controls, assets, PCI/ISMS/CMMC, alerts)
  - /dashboard/compliance -- compliance snapshot for one framework (or all)

These are read-only aggregate routes -- no mutations here. The security
dashboard folds bounded fetches in memory; the compliance snapshot is a single
GROUP BY on the backend.
"""

from typing import Optional

from fastapi import APIRouter, Query, Request

from api.limiter import limiter
from api.models import ComplianceSnapshotResponse, SecurityDashboardResponse
from store.repository import GRCStore

router = APIRouter(prefix="/dashboard")


@router.get("/security", response_model=SecurityDashboardResponse)
@limiter.limit("30/minute")
async def get_security_dashboard(request: Request) -> SecurityDashboardResponse:
    """Return the IT security dashboard metrics."""
    store: GRCStore = request.app.state.store
    metrics = await store.security_dashboard()
    return SecurityDashboardResponse(**metrics)


@router.get("/compliance", response_model=ComplianceSnapshotResponse)
@limiter.limit("60/minute")
async def get_compliance_snapshot(
    request: Request,
    framework_id: Optional[str] = Query(default=None, max_length=36),
) -> ComplianceSnapshotResponse:
    """Return per-status assessment counts and the overall score.

    overall_score = compliant / (total - not_applicable) * 100, 0 when nothing applies.
    """
    store: GRCStore = request.app.state.store
    snapshot = await store.compliance_snapshot(framework_id)
    return ComplianceSnapshotResponse(framework_id=framework_id, **snapshot)
