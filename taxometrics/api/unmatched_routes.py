"""TAXOMETRICS — Unmatched Review API Routes."""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlmodel import Session

from taxometrics.config import settings
from taxometrics.database import get_session
from taxometrics.integration.review import (
    ReviewError,
    describe_unmatched,
    list_unmatched,
    resolve_unmatched,
)
from taxometrics.core.logging import get_logger

logger = get_logger("api.unmatched")

router = APIRouter(prefix="/unmatched", tags=["Review"])


class ResolveRequest(BaseModel):
    """Request body for POST /unmatched/{id}/resolve."""

    entity_type: Literal["node", "product"]
    entity_id: str
    confidence: Optional[float] = None
    """Mapping confidence in [0, 1]; legacy 0–100 values are converted."""


@router.get("")
async def get_unmatched(
    tenant_id: Optional[str] = Query(None),
    source: Optional[str] = Query(None, pattern="^(gsc|ga4|market)$"),
    include_resolved: bool = Query(False),
    limit: int = Query(100, ge=1, le=1000),
    session: Session = Depends(get_session),
):
    """Identifiers waiting for review, most retried first."""
    rows = list_unmatched(
        session,
        tenant_id or settings.default_tenant_id,
        source=source,
        include_resolved=include_resolved,
        limit=limit,
    )
    return {
        "status": "success",
        "count": len(rows),
        "unmatched": [describe_unmatched(row) for row in rows],
    }


@router.post("/{unmatched_id}/resolve")
async def resolve(
    unmatched_id: int,
    request: ResolveRequest,
    session: Session = Depends(get_session),
):
    """Create a manual mapping for an unmatched identifier."""
    try:
        mapping = resolve_unmatched(
            session,
            unmatched_id,
            request.entity_type,
            request.entity_id,
            request.confidence,
        )
    except ReviewError as e:
        logger.warning(f"Resolve rejected: {e}")
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "success", "mapping": mapping.model_dump(mode="json")}
