from fastapi import APIRouter, Depends

from packetflow.api.deps import get_orchestrator
from packetflow.config import settings
from packetflow.services.orchestrator import PacketOrchestrator

router = APIRouter()


@router.get("/health")
async def health_check(orchestrator: PacketOrchestrator = Depends(get_orchestrator)):
    """Liveness plus a glance at the queue. The remote API is not probed."""
    return {
        "ok": True,
        "document_api": {"base_url": settings.document_api_base_url},
        "queue": orchestrator.queue_status().model_dump(),
    }
