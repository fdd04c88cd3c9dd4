import asyncio
import io
from typing import Any, Dict, List, Optional

import pytest
from pypdf import PdfWriter
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from packetflow.config import ProcessingConfig
from packetflow.models.database import Base
from packetflow.models.schemas import (
    Classification,
    Document,
    DocumentPayload,
    DocumentStatus,
    ExtractionResult,
    JobStatus,
    SplitResult,
    SplitSegment,
)
from packetflow.services.catalog import CategorySchema, DocumentCatalog, FieldDefinition, SplitType
from packetflow.services.event_bus import EventBus
from packetflow.services.history import InMemoryHistoryStore
from packetflow.services.orchestrator import PacketOrchestrator
from packetflow.services.retry import RetryPolicy
from packetflow.services.scheduler import Scheduler


def make_pdf(page_count: int = 3) -> bytes:
    writer = PdfWriter()
    for _ in range(page_count):
        writer.add_blank_page(width=612, height=792)
    output = io.BytesIO()
    writer.write(output)
    return output.getvalue()


@pytest.fixture
def catalog():
    """Small catalog with one deed category, one lien category and the catch-all."""
    return DocumentCatalog(
        categories=[
            CategorySchema(
                id="recorded_transfer_deed",
                name="Recorded Transfer Deed Documents",
                critical_fields=["recording_date", "grantor_name"],
                fields=[
                    FieldDefinition(key="recording_date"),
                    FieldDefinition(key="grantor_name"),
                    FieldDefinition(key="grantee_name"),
                    FieldDefinition(key="sales_price", type="number"),
                ],
            ),
            CategorySchema(
                id="tax_lien",
                name="State, Federal & General Tax Liens",
                critical_fields=["taxpayer_name"],
                fields=[
                    FieldDefinition(key="taxpayer_name"),
                    FieldDefinition(key="total_amount_owed", type="number"),
                ],
            ),
            CategorySchema(
                id="other_recorded",
                name="All Other Recorded Documents",
                critical_fields=["document_title"],
                fields=[FieldDefinition(key="document_title"), FieldDefinition(key="recording_date")],
            ),
        ],
        split_types=[
            SplitType(name="deed", description="Transfer deeds"),
            SplitType(name="tax_lien", description="Tax liens"),
            SplitType(name="cover_sheet", description="Cover sheets"),
        ],
        split_to_category={"deed": "recorded_transfer_deed", "tax_lien": "tax_lien"},
    )


@pytest.fixture
def make_document():
    """Build a document already through extraction."""
    def _make(category: str = "recorded_transfer_deed", fields: Optional[Dict[str, Any]] = None,
              likelihoods: Optional[Dict[str, Any]] = None, status: DocumentStatus = DocumentStatus.completed,
              extraction_confidence: Optional[float] = None, needs_review: bool = False) -> Document:
        return Document(
            packet_id="pkt_test",
            split_index=0,
            split_type="deed",
            pages=[1, 2],
            status=status,
            classification=Classification(category=category, confidence=0.9),
            extraction=ExtractionResult(fields=fields or {}, likelihoods=likelihoods or {}),
            extraction_confidence=extraction_confidence,
            needs_review=needs_review,
        )
    return _make


GOOD_DEED = ExtractionResult(
    fields={"recording_date": "2024-01-02", "grantor_name": "Jane Seller", "grantee_name": "John Buyer",
            "sales_price": 250000},
    likelihoods={"recording_date": 0.97, "grantor_name": 0.95, "grantee_name": 0.93, "sales_price": 0.9},
)


class FakeDocumentAPI:
    """
    In-memory stand-in for DocumentAPIClient.

    `failures` maps a call key ("split", "classify:<filename>", "extract:<filename>")
    to a list of exceptions raised in order before the call succeeds.
    """

    def __init__(self, segments: Optional[List[SplitSegment]] = None,
                 extraction: Optional[ExtractionResult] = None,
                 category: str = "recorded_transfer_deed",
                 delay: float = 0.0):
        self.segments = segments if segments is not None else [SplitSegment(split_type="deed", pages=[1, 2])]
        self.extraction = extraction or GOOD_DEED
        self.extractions: Dict[str, ExtractionResult] = {}
        self.category = category
        self.delay = delay
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[str] = []
        self.split_kwargs: List[Dict[str, Any]] = []
        self.extract_kwargs: List[Dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.gate: Optional[asyncio.Event] = None

    async def _enter(self, key: str) -> None:
        self.calls.append(key)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            pending = self.failures.get(key)
            if pending:
                raise pending.pop(0)
        finally:
            self.in_flight -= 1

    async def split(self, document: DocumentPayload, subdocuments, model, image_dpi=192,
                    context=None, token=None) -> SplitResult:
        await self._enter("split")
        self.split_kwargs.append({"model": model, "image_dpi": image_dpi})
        pages = {p for s in self.segments for p in s.pages}
        return SplitResult(segments=list(self.segments), page_count=len(pages) or None)

    async def classify(self, document: DocumentPayload, categories, model, first_n_pages=None,
                       context=None, token=None) -> Classification:
        await self._enter(f"classify:{document.filename}")
        return Classification(category=self.category, confidence=0.92, reasoning="fake")

    async def extract(self, document: DocumentPayload, json_schema, model, temperature=0.0, n_consensus=1,
                      image_dpi=192, chunking_keys=None, stream=False, token=None) -> ExtractionResult:
        await self._enter(f"extract:{document.filename}")
        self.extract_kwargs.append({"n_consensus": n_consensus, "temperature": temperature, "stream": stream,
                                    "json_schema": json_schema})
        return self.extractions.get(document.filename, self.extraction)

    async def extract_via_job(self, document: DocumentPayload, json_schema, model, temperature=0.0,
                              n_consensus=1, image_dpi=192, chunking_keys=None, on_progress=None,
                              token=None) -> ExtractionResult:
        await self._enter(f"job:{document.filename}")
        if on_progress is not None:
            await on_progress(100, JobStatus.completed)
        return self.extractions.get(document.filename, self.extraction)


@pytest.fixture
def fake_api():
    return FakeDocumentAPI()


@pytest.fixture
def fast_retry():
    """Retry policy without sleeps."""
    return RetryPolicy(max_attempts=4, base_delay=0, jitter=0, rate_limit_base_delay=0)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def history_store():
    return InMemoryHistoryStore()


@pytest.fixture
async def scheduler():
    scheduler = Scheduler(concurrency=2)
    await scheduler.start()
    yield scheduler
    await scheduler.stop()


@pytest.fixture
async def orchestrator(scheduler, event_bus, catalog, history_store, fake_api, fast_retry):
    orchestrator = PacketOrchestrator(
        scheduler,
        event_bus,
        catalog=catalog,
        history=history_store,
        client_factory=lambda api_key: fake_api,
        retry_policy=fast_retry,
        default_config=ProcessingConfig(concurrency=2),
    )
    yield orchestrator
    await orchestrator.shutdown()


@pytest.fixture
async def db_session_maker():
    """In-memory history database shared across sessions of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
