import base64
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from packetflow.config import ProcessingConfig


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


class PacketStatus(str, Enum):
    queued = "queued"
    splitting = "splitting"
    classifying = "classifying"
    extracting = "extracting"
    retrying = "retrying"
    completed = "completed"
    needs_review = "needs_review"
    failed = "failed"


class DocumentStatus(str, Enum):
    pending = "pending"
    classifying = "classifying"
    extracting = "extracting"
    retrying = "retrying"
    completed = "completed"
    needs_review = "needs_review"
    failed = "failed"
    reviewed = "reviewed"
    rejected = "rejected"


class Stage(str, Enum):
    split = "split"
    classify = "classify"
    extract = "extract"


class JobStatus(str, Enum):
    validating = "validating"
    queued = "queued"
    in_progress = "in_progress"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"
    expired = "expired"


TERMINAL_JOB_STATUSES = {JobStatus.completed, JobStatus.failed, JobStatus.cancelled, JobStatus.expired}


# Remote API payloads
class DocumentPayload(BaseModel):
    """A file as sent to the remote API: filename plus base64 data URL."""

    filename: str
    url: str

    @classmethod
    def from_bytes(cls, filename: str, data: bytes, mime_type: str = "application/pdf") -> "DocumentPayload":
        encoded = base64.b64encode(data).decode("ascii")
        return cls(filename=filename, url=f"data:{mime_type};base64,{encoded}")


class SplitSegment(BaseModel):
    split_type: str
    pages: List[int] = Field(default_factory=list)

    @field_validator("pages")
    @classmethod
    def sort_pages(cls, v: List[int]) -> List[int]:
        return sorted(set(int(p) for p in v))

    @property
    def page_range(self) -> Optional[Tuple[int, int]]:
        if not self.pages:
            return None
        return self.pages[0], self.pages[-1]


class SplitResult(BaseModel):
    segments: List[SplitSegment] = Field(default_factory=list)
    page_count: Optional[int] = None


class Classification(BaseModel):
    category: str
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    reasoning: Optional[str] = None
    source: Literal["api", "split"] = "api"


class ExtractionResult(BaseModel):
    """Normalized extraction: one shape regardless of the wire format it came from."""

    fields: Dict[str, Any] = Field(default_factory=dict)
    likelihoods: Dict[str, Any] = Field(default_factory=dict)
    requires_human_review: bool = False
    page_count: Optional[int] = None


class JobState(BaseModel):
    id: str
    status: JobStatus
    response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


# Packet / document state
class CategoryOverride(BaseModel):
    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    is_custom: bool = False


class DocumentUsage(BaseModel):
    pages: int = 0
    credits: float = 0.0
    api_calls: int = 0


class UsageTotals(BaseModel):
    model: Optional[str] = None
    n_consensus: int = 1
    page_count: int = 0
    split_credits: float = 0.0
    classify_credits: float = 0.0
    extract_credits: float = 0.0
    api_calls: int = 0

    @property
    def credits(self) -> float:
        return self.split_credits + self.classify_credits + self.extract_credits

    def add(self, stage: "Stage", credits: float) -> None:
        if stage == Stage.split:
            self.split_credits += credits
        elif stage == Stage.classify:
            self.classify_credits += credits
        else:
            self.extract_credits += credits
        self.api_calls += 1


class Progress(BaseModel):
    doc_index: int = 0
    total_docs: int = 0


class Document(BaseModel):
    id: str = Field(default_factory=lambda: new_id("doc"))
    packet_id: str
    split_index: int
    split_type: str
    pages: List[int] = Field(default_factory=list)
    status: DocumentStatus = DocumentStatus.pending
    classification: Optional[Classification] = None
    extraction: Optional[ExtractionResult] = None
    extraction_confidence: Optional[float] = None
    needs_review: bool = False
    review_reasons: List[str] = Field(default_factory=list)
    category_override: Optional[CategoryOverride] = None
    edited_fields: Dict[str, Any] = Field(default_factory=dict)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    error: Optional[str] = None
    failed_stage: Optional[Stage] = None
    schema_fingerprint: Optional[str] = None
    attempts: int = 0
    usage: DocumentUsage = Field(default_factory=DocumentUsage)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def page_range(self) -> Optional[Tuple[int, int]]:
        if not self.pages:
            return None
        return self.pages[0], self.pages[-1]


class Packet(BaseModel):
    id: str = Field(default_factory=lambda: new_id("pkt"))
    filename: str
    size_bytes: int = 0
    status: PacketStatus = PacketStatus.queued
    documents: List[Document] = Field(default_factory=list)
    splits: Optional[List[SplitSegment]] = None
    page_count: Optional[int] = None
    config: Optional[ProcessingConfig] = None
    usage: UsageTotals = Field(default_factory=UsageTotals)
    progress: Progress = Field(default_factory=Progress)
    error: Optional[str] = None
    uploaded_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def get_document(self, document_id: str) -> Optional[Document]:
        return next((d for d in self.documents if d.id == document_id), None)


# Quality / review
class TrustAssessment(BaseModel):
    trust: float
    score: int
    confidence_coverage: Optional[float] = None
    critical_completeness: float
    is_reviewed: bool
    is_needs_review: bool
    is_unscored: bool


class TrustSummary(BaseModel):
    quality_score: int = 0
    quality_score_scored_only: Optional[int] = None
    scored_count: int = 0
    avg_confidence_coverage: float = 0.0
    avg_critical_completeness: float = 0.0
    reviewed: int = 0
    needs_review: int = 0
    unscored: int = 0
    total: int = 0


class MergedData(BaseModel):
    data: Dict[str, Any] = Field(default_factory=dict)
    likelihoods: Dict[str, Any] = Field(default_factory=dict)
    original_data: Dict[str, Any] = Field(default_factory=dict)
    edited_fields: Dict[str, Any] = Field(default_factory=dict)


# Snapshots
class DocumentSnapshot(BaseModel):
    id: str
    packet_id: str
    split_index: int
    split_type: str
    pages: List[int]
    status: DocumentStatus
    category: Optional[str] = None
    category_name: Optional[str] = None
    classification_confidence: Optional[float] = None
    extraction_confidence: Optional[float] = None
    needs_review: bool = False
    review_reasons: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)
    likelihoods: Dict[str, Any] = Field(default_factory=dict)
    edited_fields: Dict[str, Any] = Field(default_factory=dict)
    category_override: Optional[CategoryOverride] = None
    trust: Optional[TrustAssessment] = None
    error: Optional[str] = None
    failed_stage: Optional[Stage] = None
    schema_fingerprint: Optional[str] = None
    usage: DocumentUsage = Field(default_factory=DocumentUsage)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None


class PacketSnapshot(BaseModel):
    id: str
    filename: str
    status: PacketStatus
    error: Optional[str] = None
    progress: Progress
    page_count: Optional[int] = None
    usage: UsageTotals
    credits: float = 0.0
    cost: float = 0.0
    trust: TrustSummary = Field(default_factory=TrustSummary)
    documents: List[DocumentSnapshot] = Field(default_factory=list)
    uploaded_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QueueStatus(BaseModel):
    paused: bool
    concurrency: int
    queued: int
    active: int
    in_flight: int
    pending_work: int


class PipelineSnapshot(BaseModel):
    packets: List[PacketSnapshot] = Field(default_factory=list)
    queue: QueueStatus
    totals: Dict[str, int] = Field(default_factory=dict)


# Request bodies
class ApproveReviewRequest(BaseModel):
    corrections: Dict[str, Any] = Field(default_factory=dict)
    reviewer: Optional[str] = Field(None, max_length=255)


class RejectDocumentRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)
    reviewer: Optional[str] = Field(None, max_length=255)


class ConcurrencyUpdate(BaseModel):
    concurrency: int = Field(..., ge=1, le=10)


class ProcessingOverrides(BaseModel):
    model: Optional[str] = None
    n_consensus: Optional[int] = Field(None, ge=1, le=5)
    image_dpi: Optional[int] = Field(None, ge=72, le=600)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    confidence_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    concurrency: Optional[int] = Field(None, ge=1, le=10)
    classify: Optional[bool] = None
    first_n_pages: Optional[int] = Field(None, ge=1)
    use_jobs: Optional[bool] = None
    stream: Optional[bool] = None
    chunking: Optional[bool] = None
    cost_optimize: Optional[bool] = None
    source_quotes: Optional[bool] = None
    reasoning_prompts: Optional[bool] = None


class UploadResponse(BaseModel):
    packets: List[PacketSnapshot]
    rejected: List[Dict[str, str]] = Field(default_factory=list)


class HistoryEntryResponse(BaseModel):
    id: str
    filename: str
    status: str
    document_count: int
    needs_review_count: int
    failed_count: int
    page_count: Optional[int]
    credits: float
    cost: float
    model: Optional[str]
    error: Optional[str] = None
    summary_json: Optional[Dict[str, Any]]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
