import json
import logging
import re
import unicodedata
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import ValidationError as PydanticValidationError

from packetflow.api.deps import get_orchestrator, optional_api_key, require_api_key
from packetflow.config import settings
from packetflow.models.schemas import PacketSnapshot, PipelineSnapshot, ProcessingOverrides, UploadResponse
from packetflow.services.orchestrator import PacketNotFound, PacketOrchestrator
from packetflow.services.state_machine import InvalidTransition

logger = logging.getLogger(__name__)

router = APIRouter()


def _sanitize_filename(filename: str) -> str:
    filename = (filename or "").replace("\x00", "")
    filename = unicodedata.normalize("NFKC", filename)

    # Drop any path components
    filename = filename.split("/")[-1].split("\\")[-1]

    filename = "".join(ch for ch in filename if ch.isprintable() and ch not in "\r\n\t")
    filename = re.sub(r"\s+", " ", filename).strip()
    filename = re.sub(r"[^A-Za-z0-9.\- _()]+", "_", filename)

    if not filename or filename in {".", ".."}:
        return "packet.pdf"

    if len(filename) > 180:
        base, _, ext = filename.rpartition(".")
        if base and ext:
            return f"{base[:160].rstrip(' ._-')}.{ext[:16]}"
        return filename[:180]

    return filename


def _parse_overrides(raw: Optional[str]) -> ProcessingOverrides:
    if not raw:
        return ProcessingOverrides()
    try:
        return ProcessingOverrides(**json.loads(raw))
    except (json.JSONDecodeError, TypeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid config JSON: {e}")
    except PydanticValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors())


def _is_pdf(upload: UploadFile, content: bytes) -> bool:
    name_ok = (upload.filename or "").lower().endswith(".pdf")
    type_ok = upload.content_type in ("application/pdf", "application/x-pdf")
    return (name_ok or type_ok) and content[:5] == b"%PDF-"


@router.post("/packets", response_model=UploadResponse, status_code=202)
async def upload_packets(
    files: List[UploadFile] = File(..., description="One or more PDF packets"),
    config: Optional[str] = Form(None, description="JSON processing overrides"),
    api_key: str = Depends(require_api_key),
    orchestrator: PacketOrchestrator = Depends(get_orchestrator),
):
    """Upload PDF packets and queue them for processing."""
    overrides = _parse_overrides(config)
    try:
        run_config = orchestrator.default_config.with_overrides(**overrides.model_dump())
    except PydanticValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors())

    accepted: List[PacketSnapshot] = []
    rejected = []
    for upload in files:
        safe_filename = _sanitize_filename(upload.filename or "")
        content = await upload.read()
        if len(content) > settings.max_upload_bytes:
            rejected.append({"filename": safe_filename, "reason": "File too large"})
            continue
        if not _is_pdf(upload, content):
            rejected.append({"filename": safe_filename, "reason": "Not a PDF file"})
            continue

        packet = await orchestrator.enqueue(safe_filename, content, api_key, run_config)
        logger.info(f"Packet {packet.id} uploaded: {safe_filename} ({len(content)} bytes)")
        accepted.append(orchestrator.packet_snapshot(packet))

    if not accepted and rejected:
        raise HTTPException(status_code=400, detail={"rejected": rejected})
    return UploadResponse(packets=accepted, rejected=rejected)


@router.get("/packets", response_model=PipelineSnapshot)
async def list_packets(orchestrator: PacketOrchestrator = Depends(get_orchestrator)):
    """Consistent snapshot of every packet, document and the queue."""
    return orchestrator.snapshot()


@router.get("/packets/{packet_id}", response_model=PacketSnapshot)
async def get_packet(packet_id: str, orchestrator: PacketOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.packet_snapshot(orchestrator.get_packet(packet_id))
    except PacketNotFound:
        raise HTTPException(status_code=404, detail="Packet not found")


@router.post("/packets/{packet_id}/retry", response_model=PacketSnapshot, status_code=202)
async def retry_packet(
    packet_id: str,
    api_key: Optional[str] = Depends(optional_api_key),
    orchestrator: PacketOrchestrator = Depends(get_orchestrator),
):
    """Re-queue a failed packet. Completed documents are kept."""
    try:
        packet = await orchestrator.retry_packet(packet_id, api_key)
    except PacketNotFound:
        raise HTTPException(status_code=404, detail="Packet not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=401, detail=str(e))
    return orchestrator.packet_snapshot(packet)


@router.post("/packets/{packet_id}/cancel", response_model=PacketSnapshot)
async def cancel_packet(packet_id: str, orchestrator: PacketOrchestrator = Depends(get_orchestrator)):
    try:
        packet = await orchestrator.cancel_packet(packet_id)
    except PacketNotFound:
        raise HTTPException(status_code=404, detail="Packet not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return orchestrator.packet_snapshot(packet)


@router.delete("/packets/{packet_id}")
async def remove_packet(packet_id: str, orchestrator: PacketOrchestrator = Depends(get_orchestrator)):
    """Cancel any in-flight work and forget the packet."""
    try:
        await orchestrator.remove_packet(packet_id)
    except PacketNotFound:
        raise HTTPException(status_code=404, detail="Packet not found")
    return {"message": "Packet removed", "id": packet_id}


@router.get("/packets/{packet_id}/quality")
async def get_packet_quality(packet_id: str, orchestrator: PacketOrchestrator = Depends(get_orchestrator)):
    """Trust summary, legacy quality tiers and reviewer accuracy for one packet."""
    try:
        return orchestrator.quality_report(packet_id)
    except PacketNotFound:
        raise HTTPException(status_code=404, detail="Packet not found")
