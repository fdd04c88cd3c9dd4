from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from packetflow.api.deps import get_history
from packetflow.models.schemas import HistoryEntryResponse
from packetflow.services.history import HistoryStore

router = APIRouter()


def _require_history(history=Depends(get_history)) -> HistoryStore:
    if history is None:
        raise HTTPException(status_code=503, detail="History store not initialized")
    return history


@router.get("/history", response_model=List[HistoryEntryResponse])
async def list_history(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    history: HistoryStore = Depends(_require_history),
):
    """List processed packets, newest first."""
    return await history.list(limit=limit, offset=offset)


@router.get("/history/{packet_id}", response_model=HistoryEntryResponse)
async def get_history_entry(packet_id: str, history: HistoryStore = Depends(_require_history)):
    entry = await history.get(packet_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="History entry not found")
    return entry


@router.delete("/history/{packet_id}")
async def delete_history_entry(packet_id: str, history: HistoryStore = Depends(_require_history)):
    if not await history.delete(packet_id):
        raise HTTPException(status_code=404, detail="History entry not found")
    return {"message": "History entry deleted", "id": packet_id}
