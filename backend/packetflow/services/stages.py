"""
Stage executors: one remote call each, no retry and no shared state.

The orchestrator wraps these with scheduling, retry and state transitions.
"""
import logging
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from packetflow.config import ProcessingConfig
from packetflow.models.schemas import Classification, DocumentPayload, ExtractionResult, SplitResult, Stage
from packetflow.services.cancellation import CancellationToken
from packetflow.services.catalog import CategorySchema, DocumentCatalog
from packetflow.services.document_api import DocumentAPIClient, ProgressCallback
from packetflow.services.errors import DocumentAPIError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StageResult(Generic[T]):
    """Outcome of one stage: either a value or a classified failure."""

    stage: Stage
    value: Optional[T] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    http_status: Optional[int] = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, stage: Stage, value: T) -> "StageResult[T]":
        return cls(stage=stage, value=value)

    @classmethod
    def failure(cls, stage: Stage, error: Exception) -> "StageResult[Any]":
        if isinstance(error, DocumentAPIError):
            return cls(stage=stage, error=error.message, error_kind=error.kind,
                       http_status=error.http_status, retryable=error.retryable)
        return cls(stage=stage, error=str(error) or error.__class__.__name__, error_kind="internal")


async def split_packet(api: DocumentAPIClient, document: DocumentPayload, config: ProcessingConfig,
                       catalog: DocumentCatalog, token: Optional[CancellationToken] = None) -> SplitResult:
    result = await api.split(
        document,
        subdocuments=catalog.subdocument_types(),
        model=config.split_model,
        image_dpi=config.split_image_dpi,
        token=token,
    )
    logger.info(f"Split {document.filename}: {len(result.segments)} documents, {result.page_count} pages")
    return result


async def classify_document(api: DocumentAPIClient, document: DocumentPayload, config: ProcessingConfig,
                            catalog: DocumentCatalog, token: Optional[CancellationToken] = None) -> Classification:
    classification = await api.classify(
        document,
        categories=catalog.classification_categories(),
        model=config.model,
        first_n_pages=config.first_n_pages,
        token=token,
    )
    if catalog.get(classification.category) is None:
        mapped = catalog.category_for_split(classification.category)
        logger.info(f"Classifier returned unknown category '{classification.category}', using '{mapped}'")
        classification = classification.model_copy(update={"category": mapped})
    return classification


def classification_from_split(split_type: str, catalog: DocumentCatalog) -> Classification:
    """Category implied by the split label, used when classification is disabled."""
    return Classification(
        category=catalog.category_for_split(split_type),
        confidence=None,
        reasoning=f"Derived from split type '{split_type}'",
        source="split",
    )


async def extract_document(api: DocumentAPIClient, document: DocumentPayload, schema: CategorySchema,
                           config: ProcessingConfig, token: Optional[CancellationToken] = None,
                           on_job_progress: Optional[ProgressCallback] = None) -> ExtractionResult:
    json_schema = schema.json_schema(source_quotes=config.source_quotes, reasoning_prompts=config.reasoning_prompts)
    chunking_keys = schema.chunking_keys() if config.chunking else None
    if config.use_jobs:
        return await api.extract_via_job(
            document,
            json_schema=json_schema,
            model=config.model,
            temperature=config.effective_temperature,
            n_consensus=config.n_consensus,
            image_dpi=config.image_dpi,
            chunking_keys=chunking_keys,
            on_progress=on_job_progress,
            token=token,
        )
    return await api.extract(
        document,
        json_schema=json_schema,
        model=config.model,
        temperature=config.effective_temperature,
        n_consensus=config.n_consensus,
        image_dpi=config.image_dpi,
        chunking_keys=chunking_keys,
        stream=config.stream,
        token=token,
    )
