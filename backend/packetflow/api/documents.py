import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from packetflow.api.deps import get_orchestrator, optional_api_key
from packetflow.models.schemas import (
    ApproveReviewRequest,
    CategoryOverride,
    DocumentSnapshot,
    RejectDocumentRequest,
)
from packetflow.services.orchestrator import DocumentNotFound, PacketOrchestrator
from packetflow.services.state_machine import InvalidTransition

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/documents/{document_id}")
async def get_document(document_id: str, orchestrator: PacketOrchestrator = Depends(get_orchestrator)):
    """Merged document view plus review accuracy when a reviewer has touched it."""
    try:
        return orchestrator.document_detail(document_id)
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Document not found")


@router.post("/documents/{document_id}/retry", response_model=DocumentSnapshot, status_code=202)
async def retry_document(
    document_id: str,
    api_key: Optional[str] = Depends(optional_api_key),
    orchestrator: PacketOrchestrator = Depends(get_orchestrator),
):
    try:
        document = await orchestrator.retry_document(document_id, api_key)
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Document not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=401, detail=str(e))
    return orchestrator.document_snapshot(document)


@router.post("/documents/{document_id}/approve", response_model=DocumentSnapshot)
async def approve_document(
    document_id: str,
    body: ApproveReviewRequest,
    orchestrator: PacketOrchestrator = Depends(get_orchestrator),
):
    """Approve a document, applying reviewer corrections."""
    try:
        document = await orchestrator.approve_review(document_id, body.corrections, body.reviewer)
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Document not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return orchestrator.document_snapshot(document)


@router.post("/documents/{document_id}/reject", response_model=DocumentSnapshot)
async def reject_document(
    document_id: str,
    body: RejectDocumentRequest,
    orchestrator: PacketOrchestrator = Depends(get_orchestrator),
):
    try:
        document = await orchestrator.reject_document(document_id, body.reason, body.reviewer)
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Document not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return orchestrator.document_snapshot(document)


@router.post("/documents/{document_id}/reclassify", response_model=DocumentSnapshot)
async def reclassify_document(
    document_id: str,
    override: CategoryOverride,
    orchestrator: PacketOrchestrator = Depends(get_orchestrator),
):
    """Override the category. Edits outside the new schema are dropped."""
    try:
        document = await orchestrator.reclassify(document_id, override)
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Document not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return orchestrator.document_snapshot(document)
