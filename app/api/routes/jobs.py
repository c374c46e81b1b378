from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api.deps import get_services
from app.models.schemas import DispatchResponse, SweepResponse
from app.services.container import Services

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.post("/sweep", response_model=SweepResponse)
async def sweep(services: Services = Depends(get_services)):
    """Scheduler hook: one Reaper pass."""
    report = await services.reaper.sweep()
    return report.to_dict()


@router.post("/dispatch", response_model=DispatchResponse)
async def dispatch(services: Services = Depends(get_services)):
    processed = await services.worker.dispatch_once()
    return {"processed": processed}
