"""TAXOMETRICS — Integration API Routes."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlmodel import Session

from taxometrics.config import settings
from taxometrics.database import get_session
from taxometrics.integration.pipeline import run_integration, validate_date
from taxometrics.integration.review import integration_status, list_metrics, list_runs
from taxometrics.models.integrated_models import IntegrationResult
from taxometrics.core.logging import get_logger

logger = get_logger("api.integration")

router = APIRouter(tags=["Integration"])


# ── Request / Response Models ──


class RunIntegrationRequest(BaseModel):
    """Request body for POST /integration/run."""

    tenant_id: Optional[str] = None
    """Tenant to integrate. Defaults to the configured default tenant."""
    date: Optional[str] = None
    """Reporting date in YYYY-MM-DD format. Defaults to yesterday (UTC)."""

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"tenant_id": "acme", "date": "2026-02-18"},
                {"tenant_id": "acme"},
            ]
        }
    }


class RunIntegrationResponse(BaseModel):
    """Response for POST /integration/run."""

    status: str = "success"
    result: IntegrationResult


# ── Endpoints ──


@router.post("/integration/run", response_model=RunIntegrationResponse)
async def trigger_integration(request: RunIntegrationRequest):
    """Run matching, combining, aggregation and persistence for one date.

    A failed run still returns its structured result; callers decide whether
    to retry.
    """
    if request.date and not validate_date(request.date):
        raise HTTPException(status_code=422, detail="date must be YYYY-MM-DD")
    tenant_id = request.tenant_id or settings.default_tenant_id
    result = await run_integration(tenant_id, request.date)
    if not result.success:
        logger.error(f"Integration failed for {tenant_id}: {result.errors}")
    return RunIntegrationResponse(
        status="success" if result.success else "failed", result=result
    )


@router.get("/integration/status")
async def get_integration_status(
    tenant_id: Optional[str] = Query(None, description="Defaults to the configured tenant"),
    session: Session = Depends(get_session),
):
    """Last run, row counts and the unresolved review queue."""
    status = integration_status(session, tenant_id or settings.default_tenant_id)
    if status["last_run"] is None:
        return {"status": "no_data", "message": "No integration has been run yet.", **status}
    return {"status": "success", **status}


@router.get("/integration/runs")
async def get_integration_runs(
    tenant_id: Optional[str] = Query(None),
    date: Optional[str] = Query(None, description="Filter by metrics date (YYYY-MM-DD)"),
    limit: int = Query(10, ge=1, le=100),
    session: Session = Depends(get_session),
):
    """Stored results of past runs, newest first."""
    runs = list_runs(
        session, tenant_id or settings.default_tenant_id, validate_date(date), limit
    )
    return {"status": "success", "count": len(runs), "runs": runs}


@router.get("/metrics")
async def get_integrated_metrics(
    date: str = Query(..., description="Metrics date (YYYY-MM-DD)"),
    tenant_id: Optional[str] = Query(None),
    entity_type: Optional[str] = Query(None, pattern="^(node|product)$"),
    aggregated_only: bool = Query(False),
    session: Session = Depends(get_session),
):
    """Integrated rows for one tenant and date."""
    if not validate_date(date):
        raise HTTPException(status_code=422, detail="date must be YYYY-MM-DD")
    rows = list_metrics(
        session,
        tenant_id or settings.default_tenant_id,
        date,
        entity_type=entity_type,
        aggregated_only=aggregated_only,
    )
    return {
        "status": "success",
        "count": len(rows),
        "metrics": [row.model_dump(mode="json", exclude={"id"}) for row in rows],
    }
