import logging
from typing import Any, Dict, Iterable, Optional, Set

from packetflow.models.schemas import (
    CategoryOverride,
    Classification,
    Document,
    DocumentStatus,
    ExtractionResult,
    Packet,
    PacketStatus,
    Stage,
    TrustAssessment,
    utcnow,
)
from packetflow.services.catalog import DocumentCatalog
from packetflow.services.quality import assess_review, compute_trust, extraction_confidence
from packetflow.services.review import resolve_category, sanitize_edited_fields
from packetflow.services.stages import StageResult

logger = logging.getLogger(__name__)


class InvalidTransition(Exception):
    pass


D = DocumentStatus
P = PacketStatus

DOCUMENT_TRANSITIONS: Dict[DocumentStatus, Set[DocumentStatus]] = {
    D.pending: {D.classifying, D.extracting, D.failed},
    D.classifying: {D.extracting, D.retrying, D.failed, D.pending},
    D.extracting: {D.completed, D.needs_review, D.retrying, D.failed, D.pending},
    D.retrying: {D.classifying, D.extracting, D.failed, D.pending},
    D.failed: {D.retrying},
    D.completed: {D.reviewed, D.rejected},
    D.needs_review: {D.reviewed, D.rejected},
    D.reviewed: {D.reviewed, D.rejected},
    D.rejected: {D.reviewed},
}

TERMINAL_DOCUMENT_STATES = {D.completed, D.needs_review, D.failed, D.reviewed, D.rejected}
RESOLVED_DOCUMENT_STATES = {D.completed, D.reviewed}

PACKET_TRANSITIONS: Dict[PacketStatus, Set[PacketStatus]] = {
    P.queued: {P.splitting, P.classifying, P.extracting, P.failed},
    P.splitting: {P.classifying, P.extracting, P.retrying, P.failed, P.queued},
    P.retrying: {P.splitting, P.failed, P.queued},
    P.classifying: {P.extracting, P.completed, P.needs_review, P.failed, P.queued},
    P.extracting: {P.completed, P.needs_review, P.failed, P.queued},
    P.completed: {P.needs_review, P.failed, P.classifying, P.extracting},
    P.needs_review: {P.completed, P.failed, P.classifying, P.extracting},
    P.failed: {P.queued, P.completed, P.needs_review, P.classifying, P.extracting},
}

TERMINAL_PACKET_STATES = {P.completed, P.needs_review, P.failed}


def aggregate_packet_status(documents: Iterable[Document]) -> Optional[PacketStatus]:
    """
    Packet outcome from its documents, or None while any is still running.

    needs_review wins over failed, failed wins over completed. Rejected
    documents count as failed.
    """
    documents = list(documents)
    if not documents:
        return P.failed
    if any(d.status not in TERMINAL_DOCUMENT_STATES for d in documents):
        return None
    if any(d.status == D.needs_review or (d.needs_review and d.status != D.failed) for d in documents):
        return P.needs_review
    if any(d.status in (D.failed, D.rejected) for d in documents):
        return P.failed
    return P.completed


class PacketStateMachine:
    def __init__(self, packet: Packet):
        self.packet = packet

    def can_transition(self, status: PacketStatus) -> bool:
        return status == self.packet.status or status in PACKET_TRANSITIONS[self.packet.status]

    def transition(self, status: PacketStatus, error: Optional[str] = None) -> None:
        current = self.packet.status
        if status == current:
            if error is not None:
                self.packet.error = error
            return
        if status not in PACKET_TRANSITIONS[current]:
            raise InvalidTransition(f"Packet {self.packet.id}: cannot move from {current.value} to {status.value}")

        logger.debug(f"Packet {self.packet.id}: {current.value} -> {status.value}")
        self.packet.status = status
        if status == P.splitting and self.packet.started_at is None:
            self.packet.started_at = utcnow()
        if status in TERMINAL_PACKET_STATES:
            self.packet.completed_at = utcnow()
        if status == P.failed:
            self.packet.error = error or self.packet.error
        elif status in (P.queued, P.completed, P.needs_review):
            self.packet.error = error

    def advance(self, status: PacketStatus) -> None:
        """Move forward only when allowed; used for the per-document stage mirror."""
        if self.can_transition(status):
            self.transition(status)

    def settle(self) -> Optional[PacketStatus]:
        """Apply the aggregate document outcome if every document is terminal."""
        outcome = aggregate_packet_status(self.packet.documents)
        if outcome is None:
            return None
        error = None
        if outcome == P.failed:
            error = failure_summary(self.packet)
        self.transition(outcome, error=error)
        return outcome


def failure_summary(packet: Packet) -> str:
    if not packet.documents:
        return packet.error or "Split returned no documents"
    failed = [d for d in packet.documents if d.status in (D.failed, D.rejected)]
    if not failed:
        return packet.error or "Processing failed"
    first = failed[0].error or failed[0].rejection_reason or failed[0].status.value
    return f"{len(failed)} of {len(packet.documents)} documents failed: {first}"


class DocumentStateMachine:
    """Owns every status change of one document."""

    def __init__(self, document: Document, catalog: DocumentCatalog):
        self.document = document
        self.catalog = catalog

    @property
    def status(self) -> DocumentStatus:
        return self.document.status

    def transition(self, status: DocumentStatus) -> None:
        current = self.document.status
        if status not in DOCUMENT_TRANSITIONS[current]:
            raise InvalidTransition(
                f"Document {self.document.id}: cannot move from {current.value} to {status.value}"
            )
        logger.debug(f"Document {self.document.id}: {current.value} -> {status.value}")
        self.document.status = status

    def start_stage(self, stage: Stage) -> None:
        target = D.classifying if stage == Stage.classify else D.extracting
        if self.document.status == target:
            return
        self.transition(target)
        self.document.attempts += 1
        if self.document.started_at is None:
            self.document.started_at = utcnow()

    def mark_retrying(self) -> None:
        if self.document.status != D.retrying:
            self.transition(D.retrying)

    def unschedule(self) -> None:
        """Put an interrupted document back to pending so a later run picks it up."""
        if self.document.status in (D.classifying, D.extracting, D.retrying):
            self.transition(D.pending)

    def record_classification(self, classification: Classification) -> None:
        self.document.classification = classification

    def record_extraction(self, result: ExtractionResult, n_consensus: int,
                          confidence_threshold: float) -> TrustAssessment:
        document = self.document
        document.extraction = result
        document.extraction_confidence = extraction_confidence(result, n_consensus)
        document.error = None
        document.failed_stage = None

        reasons = assess_review(result, resolve_category(document), self.catalog, confidence_threshold)
        document.review_reasons = reasons
        document.needs_review = bool(reasons)
        self.transition(D.needs_review if reasons else D.completed)
        document.completed_at = utcnow()
        return compute_trust(document, self.catalog)

    def record_failure(self, result: StageResult) -> None:
        document = self.document
        document.error = result.error
        document.failed_stage = result.stage
        document.needs_review = False
        self.transition(D.failed)
        document.completed_at = utcnow()

    def reset_for_retry(self) -> Stage:
        """Re-arm a failed document. Returns the stage that failed."""
        if self.document.status != D.failed:
            raise InvalidTransition(f"Document {self.document.id} is {self.document.status.value}, not failed")
        stage = self.document.failed_stage or Stage.extract
        self.transition(D.retrying)
        self.document.error = None
        self.document.completed_at = None
        return stage

    def approve(self, corrections: Dict[str, Any], reviewer: Optional[str] = None) -> None:
        document = self.document
        if document.status not in (D.completed, D.needs_review, D.reviewed, D.rejected):
            raise InvalidTransition(f"Document {document.id} is {document.status.value} and cannot be reviewed")
        edited = {**document.edited_fields, **corrections}
        document.edited_fields = sanitize_edited_fields(edited, document, self.catalog)
        self.transition(D.reviewed)
        document.needs_review = False
        document.rejection_reason = None
        document.reviewed_by = reviewer
        document.reviewed_at = utcnow()

    def reject(self, reason: Optional[str] = None, reviewer: Optional[str] = None) -> None:
        document = self.document
        if document.status not in (D.completed, D.needs_review, D.reviewed):
            raise InvalidTransition(f"Document {document.id} is {document.status.value} and cannot be rejected")
        self.transition(D.rejected)
        document.needs_review = False
        document.rejection_reason = reason
        document.reviewed_by = reviewer
        document.reviewed_at = utcnow()

    def reclassify(self, override: CategoryOverride) -> None:
        document = self.document
        if document.status not in TERMINAL_DOCUMENT_STATES and document.status != D.pending:
            raise InvalidTransition(f"Document {document.id} is still processing")
        document.category_override = override
        document.edited_fields = sanitize_edited_fields(document.edited_fields, document, self.catalog)
