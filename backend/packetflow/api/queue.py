from fastapi import APIRouter, Depends

from packetflow.api.deps import get_orchestrator
from packetflow.models.schemas import ConcurrencyUpdate, QueueStatus
from packetflow.services.orchestrator import PacketOrchestrator

router = APIRouter()


@router.get("/queue/status", response_model=QueueStatus)
async def get_queue_status(orchestrator: PacketOrchestrator = Depends(get_orchestrator)):
    """Get current queue status."""
    return orchestrator.queue_status()


@router.post("/queue/pause", response_model=QueueStatus)
async def pause_queue(orchestrator: PacketOrchestrator = Depends(get_orchestrator)):
    await orchestrator.pause()
    return orchestrator.queue_status()


@router.post("/queue/resume", response_model=QueueStatus)
async def resume_queue(orchestrator: PacketOrchestrator = Depends(get_orchestrator)):
    await orchestrator.resume()
    return orchestrator.queue_status()


@router.put("/queue/concurrency", response_model=QueueStatus)
async def set_concurrency(body: ConcurrencyUpdate, orchestrator: PacketOrchestrator = Depends(get_orchestrator)):
    await orchestrator.set_concurrency(body.concurrency)
    return orchestrator.queue_status()
