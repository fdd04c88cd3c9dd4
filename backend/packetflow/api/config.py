from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from packetflow.api.deps import get_orchestrator
from packetflow.config import DOLLARS_PER_CREDIT, MODEL_CREDITS_PER_PAGE, estimate_cost
from packetflow.services.orchestrator import PacketOrchestrator

router = APIRouter()


@router.get("/config")
async def get_config(orchestrator: PacketOrchestrator = Depends(get_orchestrator)):
    """Default processing options, the model price table and the category catalog."""
    catalog = orchestrator.catalog
    return {
        "defaults": orchestrator.default_config.model_dump(),
        "models": MODEL_CREDITS_PER_PAGE,
        "dollars_per_credit": DOLLARS_PER_CREDIT,
        "categories": [
            {"id": c.id, "name": c.name, "fields": c.field_keys, "critical_fields": c.critical_fields}
            for c in catalog.categories
        ],
        "split_types": catalog.subdocument_types(),
    }


@router.get("/config/estimate")
async def get_estimate(
    pages: int = Query(..., ge=1),
    model: Optional[str] = Query(None),
    n_consensus: Optional[int] = Query(None, ge=1, le=5),
    cost_optimize: Optional[bool] = Query(None),
    orchestrator: PacketOrchestrator = Depends(get_orchestrator),
):
    """Estimate credits and dollars for a packet of `pages` pages."""
    try:
        config = orchestrator.default_config.with_overrides(
            model=model, n_consensus=n_consensus, cost_optimize=cost_optimize,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "pages": pages,
        "model": config.model,
        "n_consensus": config.n_consensus,
        "split_model": config.split_model,
        **estimate_cost(pages, config),
    }
