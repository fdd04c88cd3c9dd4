import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from packetflow.config import DOLLARS_PER_CREDIT, ProcessingConfig, credits_per_page, settings
from packetflow.models.schemas import (
    CategoryOverride,
    Document,
    DocumentPayload,
    DocumentSnapshot,
    DocumentStatus,
    Packet,
    PacketSnapshot,
    PacketStatus,
    PipelineSnapshot,
    QueueStatus,
    Stage,
)
from packetflow.services.cancellation import CancellationToken
from packetflow.services.catalog import DocumentCatalog, get_catalog
from packetflow.services.document_api import ClientFactory, DocumentAPIClient, default_client_factory
from packetflow.services.errors import DocumentAPIError, ProcessingCancelled
from packetflow.services.event_bus import ALL_PACKETS, EventBus, EventType
from packetflow.services.history import HistoryStore, build_history_record
from packetflow.services.pdf_utils import count_pages, extract_pages
from packetflow.services.quality import aggregate_quality_tiers, aggregate_trust, compute_trust, quality_tier
from packetflow.services.retry import RetryPolicy, call_with_retry
from packetflow.services.review import (
    aggregate_review_accuracy,
    compute_review_accuracy,
    display_data,
    merge_extraction,
    resolve_category,
)
from packetflow.services.scheduler import Scheduler
from packetflow.services.stages import (
    StageResult,
    classification_from_split,
    classify_document,
    extract_document,
    split_packet,
)
from packetflow.services.state_machine import (
    TERMINAL_DOCUMENT_STATES,
    TERMINAL_PACKET_STATES,
    DocumentStateMachine,
    InvalidTransition,
    PacketStateMachine,
)

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"
REQUEUE_REASONS = ("paused", "shutdown")


class PacketNotFound(KeyError):
    pass


class DocumentNotFound(KeyError):
    pass


@dataclass
class PacketRun:
    """One in-flight pass over a packet. Discarded when the pass ends."""

    packet_id: str
    config: ProcessingConfig
    api: DocumentAPIClient
    token: CancellationToken = field(default_factory=CancellationToken)
    task: Optional[asyncio.Task] = None
    slots: Optional[asyncio.Semaphore] = None

    def __post_init__(self):
        # Per-run cap, nested inside the shared scheduler limit
        if self.slots is None:
            self.slots = asyncio.Semaphore(self.config.concurrency)


class PacketOrchestrator:
    """
    Drives packets through split, classify and extract.

    Every remote call goes through the shared Scheduler, so the concurrency
    limit holds across all packets. A run's own `concurrency` setting caps
    how many of those slots it may hold. Retries happen outside the scheduler:
    each attempt takes a fresh slot and backoff sleeps hold none.
    """

    def __init__(self, scheduler: Scheduler, event_bus: EventBus,
                 catalog: Optional[DocumentCatalog] = None,
                 history: Optional[HistoryStore] = None,
                 client_factory: ClientFactory = default_client_factory,
                 retry_policy: Optional[RetryPolicy] = None,
                 default_config: Optional[ProcessingConfig] = None):
        self.scheduler = scheduler
        self.event_bus = event_bus
        self.catalog = catalog or get_catalog()
        self.history = history
        self.client_factory = client_factory
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.default_config = default_config or settings.default_processing_config()

        self._packets: Dict[str, Packet] = {}
        self._sources: Dict[str, bytes] = {}
        self._api_keys: Dict[str, str] = {}
        self._runs: Dict[str, PacketRun] = {}
        self._waiting: Deque[str] = deque()
        self._usage_locks: Dict[str, asyncio.Lock] = {}
        self._paused = False

    @property
    def paused(self) -> bool:
        return self._paused

    # Lookup

    def get_packet(self, packet_id: str) -> Packet:
        packet = self._packets.get(packet_id)
        if packet is None:
            raise PacketNotFound(packet_id)
        return packet

    def find_document(self, document_id: str) -> Tuple[Packet, Document]:
        for packet in self._packets.values():
            document = packet.get_document(document_id)
            if document is not None:
                return packet, document
        raise DocumentNotFound(document_id)

    def is_running(self, packet_id: str) -> bool:
        return packet_id in self._runs

    # Intake

    def add_packet(self, filename: str, data: bytes) -> Packet:
        packet = Packet(filename=filename, size_bytes=len(data), page_count=count_pages(data))
        self._packets[packet.id] = packet
        self._sources[packet.id] = data
        logger.info(f"Added packet {packet.id} ({filename}, {len(data)} bytes, {packet.page_count} pages)")
        return packet

    async def submit(self, packet_id: str, api_key: str,
                     config: Optional[ProcessingConfig] = None) -> Packet:
        """Queue a packet for processing with an optional per-run configuration."""
        packet = self.get_packet(packet_id)
        if packet.status != PacketStatus.queued or self.is_running(packet_id):
            raise InvalidTransition(f"Packet {packet_id} is {packet.status.value}, not queued")
        if not api_key:
            raise ValueError("API key is required")

        self._api_keys[packet_id] = api_key
        packet.config = config or packet.config or self.default_config
        await self._enqueue(packet)
        return packet

    async def enqueue(self, filename: str, data: bytes, api_key: str,
                      config: Optional[ProcessingConfig] = None) -> Packet:
        packet = self.add_packet(filename, data)
        return await self.submit(packet.id, api_key, config)

    async def _enqueue(self, packet: Packet) -> None:
        await self.event_bus.publish_status(packet.id, packet.status.value)
        if self._paused:
            self._waiting.append(packet.id)
            logger.info(f"Packet {packet.id} queued while paused")
        else:
            self._launch(packet.id)

    def _launch(self, packet_id: str) -> PacketRun:
        packet = self._packets[packet_id]
        run = PacketRun(
            packet_id=packet_id,
            config=packet.config or self.default_config,
            api=self.client_factory(self._api_keys[packet_id]),
        )
        self._runs[packet_id] = run
        run.task = asyncio.create_task(self._run_packet(run))
        return run

    # Pipeline

    async def _run_packet(self, run: PacketRun) -> None:
        packet = self._packets[run.packet_id]
        machine = PacketStateMachine(packet)
        try:
            if packet.splits is None:
                await self._split(run, packet, machine)

            if not packet.splits:
                machine.transition(PacketStatus.failed, error="Split returned no documents")
                await self.event_bus.publish_error(packet.id, packet.error)
                await self._save_history(packet)
                return

            await self._ensure_documents(packet)
            machine.advance(PacketStatus.classifying if run.config.classify else PacketStatus.extracting)
            await self._publish_progress(packet)

            todo = [d for d in packet.documents if d.status in (DocumentStatus.pending, DocumentStatus.retrying)]
            results = await asyncio.gather(
                *(self._process_document(run, packet, d) for d in todo),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, ProcessingCancelled):
                    raise result
                if isinstance(result, BaseException) and not isinstance(result, Exception):
                    raise result

            await self._settle(packet)

        except ProcessingCancelled as e:
            await self._handle_interrupt(packet, machine, e.reason)
        except DocumentAPIError as e:
            logger.error(f"Packet {packet.id} split failed: {e}")
            machine.transition(PacketStatus.failed, error=f"Split failed: {e}")
            await self.event_bus.publish_error(packet.id, packet.error)
            await self._save_history(packet)
        except Exception as e:
            logger.exception(f"Unexpected error processing packet {packet.id}")
            if machine.can_transition(PacketStatus.failed):
                machine.transition(PacketStatus.failed, error=f"Processing error: {e}")
            await self.event_bus.publish_error(packet.id, str(e))
            await self._save_history(packet)
        finally:
            if self._runs.get(run.packet_id) is run:
                del self._runs[run.packet_id]

    async def _split(self, run: PacketRun, packet: Packet, machine: PacketStateMachine) -> None:
        source = self._packet_payload(packet)

        async def on_start():
            machine.transition(PacketStatus.splitting)
            await self.event_bus.publish_status(packet.id, packet.status.value, stage=Stage.split.value)

        async def on_retry(attempt: int, error: DocumentAPIError, delay: float):
            machine.transition(PacketStatus.retrying)
            await self.event_bus.publish_status(
                packet.id, packet.status.value, stage=Stage.split.value,
                attempt=attempt, delay=round(delay, 2), error=str(error),
            )

        async def attempt():
            async with run.slots:
                return await self.scheduler.run(
                    lambda: split_packet(run.api, source, run.config, self.catalog, run.token),
                    token=run.token, on_start=on_start, label=f"split:{packet.id}", packet_id=packet.id,
                )

        result = await call_with_retry(attempt, self.retry_policy, token=run.token, on_retry=on_retry,
                                       description=f"Split {packet.filename}")
        packet.splits = result.segments
        if result.page_count:
            packet.page_count = result.page_count
        pages = packet.page_count or len({p for s in result.segments for p in s.pages}) or 1
        await self._record_usage(packet, None, Stage.split, pages, run.config, model=run.config.split_model)

    async def _ensure_documents(self, packet: Packet) -> None:
        if packet.documents:
            return
        packet.documents = [
            Document(packet_id=packet.id, split_index=index, split_type=segment.split_type, pages=segment.pages)
            for index, segment in enumerate(packet.splits or [])
        ]
        packet.progress.total_docs = len(packet.documents)
        logger.info(f"Packet {packet.id}: {len(packet.documents)} documents detected")
        await self.event_bus.publish(packet.id, EventType.documents_detected, {
            "count": len(packet.documents),
            "documents": [
                {"id": d.id, "split_index": d.split_index, "split_type": d.split_type, "pages": d.pages}
                for d in packet.documents
            ],
        })

    async def _process_document(self, run: PacketRun, packet: Packet, document: Document) -> None:
        """Run the remaining stages of one document. Only ProcessingCancelled escapes."""
        machine = DocumentStateMachine(document, self.catalog)
        config = run.config
        stage = Stage.classify
        try:
            source = self._document_payload(packet, document)

            if document.classification is None:
                if config.classify:
                    classification = await self._stage_call(
                        run, packet, machine, Stage.classify,
                        lambda: classify_document(run.api, source, config, self.catalog, run.token),
                    )
                    machine.record_classification(classification)
                    pages = len(document.pages) or 1
                    if config.first_n_pages:
                        pages = min(pages, config.first_n_pages)
                    await self._record_usage(packet, document, Stage.classify, pages, config)
                else:
                    machine.record_classification(classification_from_split(document.split_type, self.catalog))

            stage = Stage.extract
            schema = self.catalog.schema_for(resolve_category(document))

            async def on_job_progress(progress: int, job_status):
                await self.event_bus.publish_status(
                    packet.id, document.status.value, stage=Stage.extract.value,
                    document_id=document.id, progress=progress, job_status=job_status.value,
                )

            result = await self._stage_call(
                run, packet, machine, Stage.extract,
                lambda: extract_document(run.api, source, schema, config, run.token, on_job_progress),
            )
            pages = result.page_count or len(document.pages) or 1
            document.schema_fingerprint = schema.fingerprint()
            await self._record_usage(packet, document, Stage.extract, pages, config)
            assessment = machine.record_extraction(result, config.n_consensus, config.confidence_threshold)

            logger.info(
                f"Document {document.id} ({schema.id}) {document.status.value}, "
                f"trust={assessment.score}, reasons={len(document.review_reasons)}"
            )
            await self.event_bus.publish(packet.id, EventType.document_processed, {
                "document_id": document.id,
                "status": document.status.value,
                "category": schema.id,
                "needs_review": document.needs_review,
                "review_reasons": document.review_reasons,
                "trust_score": assessment.score,
            })

        except ProcessingCancelled:
            machine.unschedule()
            raise
        except Exception as e:
            if not isinstance(e, DocumentAPIError):
                logger.exception(f"Unexpected error processing document {document.id}")
            failure = StageResult.failure(stage, e)
            machine.record_failure(failure)
            logger.warning(f"Document {document.id} failed at {stage.value}: {failure.error}")
            await self.event_bus.publish(packet.id, EventType.document_processed, {
                "document_id": document.id,
                "status": document.status.value,
                "failed_stage": stage.value,
                "error": failure.error,
                "error_kind": failure.error_kind,
            })

        if document.status in TERMINAL_DOCUMENT_STATES:
            await self._publish_progress(packet)

    async def _stage_call(self, run: PacketRun, packet: Packet, machine: DocumentStateMachine,
                          stage: Stage, call: Callable[[], Awaitable[Any]]) -> Any:
        document = machine.document
        packet_machine = PacketStateMachine(packet)

        async def on_start():
            machine.start_stage(stage)
            packet_machine.advance(PacketStatus.extracting if stage == Stage.extract else PacketStatus.classifying)
            await self.event_bus.publish_status(
                packet.id, document.status.value, stage=stage.value, document_id=document.id,
            )

        async def on_retry(attempt: int, error: DocumentAPIError, delay: float):
            machine.mark_retrying()
            await self.event_bus.publish_status(
                packet.id, document.status.value, stage=stage.value, document_id=document.id,
                attempt=attempt, delay=round(delay, 2), error=str(error),
            )

        async def attempt():
            async with run.slots:
                return await self.scheduler.run(
                    call, token=run.token, on_start=on_start,
                    label=f"{stage.value}:{document.id}", packet_id=packet.id,
                )

        return await call_with_retry(attempt, self.retry_policy, token=run.token, on_retry=on_retry,
                                     description=f"{stage.value.capitalize()} {document.id}")

    async def _record_usage(self, packet: Packet, document: Optional[Document], stage: Stage,
                            pages: int, config: ProcessingConfig, model: Optional[str] = None) -> None:
        multiplier = max(1, config.n_consensus) if stage == Stage.extract else 1
        credits = credits_per_page(model or config.model) * pages * multiplier
        async with self._usage_lock(packet.id):
            packet.usage.model = config.model
            packet.usage.n_consensus = config.n_consensus
            packet.usage.add(stage, credits)
            if stage == Stage.split:
                packet.usage.page_count = pages
            if document is not None:
                document.usage.pages = max(document.usage.pages, pages)
                document.usage.credits += credits
                document.usage.api_calls += 1

    def _usage_lock(self, packet_id: str) -> asyncio.Lock:
        lock = self._usage_locks.get(packet_id)
        if lock is None:
            lock = self._usage_locks[packet_id] = asyncio.Lock()
        return lock

    def _packet_payload(self, packet: Packet) -> DocumentPayload:
        data = self._sources.get(packet.id)
        if data is None:
            raise ProcessingCancelled("removed")
        return DocumentPayload.from_bytes(packet.filename, data)

    def _document_payload(self, packet: Packet, document: Document) -> DocumentPayload:
        data = self._sources.get(packet.id)
        if data is None:
            raise ProcessingCancelled("removed")
        stem = Path(packet.filename).stem or "document"
        return DocumentPayload.from_bytes(
            f"{stem}_part{document.split_index + 1}.pdf",
            extract_pages(data, document.pages),
        )

    async def _publish_progress(self, packet: Packet) -> None:
        packet.progress.total_docs = len(packet.documents)
        packet.progress.doc_index = sum(1 for d in packet.documents if d.status in TERMINAL_DOCUMENT_STATES)
        await self.event_bus.publish_progress(packet.id, packet.progress.doc_index, packet.progress.total_docs)

    async def _settle(self, packet: Packet) -> None:
        outcome = PacketStateMachine(packet).settle()
        if outcome is None:
            return
        logger.info(f"Packet {packet.id} finished: {outcome.value}")
        await self.event_bus.publish(packet.id, EventType.completed, {
            "status": outcome.value,
            "error": packet.error,
            "credits": packet.usage.credits,
            "cost": packet.usage.credits * DOLLARS_PER_CREDIT,
            "trust": aggregate_trust(packet.documents, self.catalog).model_dump(),
        })
        await self._save_history(packet)

    async def _handle_interrupt(self, packet: Packet, machine: PacketStateMachine, reason: str) -> None:
        if packet.id not in self._packets:
            logger.info(f"Packet {packet.id} stopped after removal")
            return
        if reason in REQUEUE_REASONS:
            machine.transition(PacketStatus.queued)
            if packet.id not in self._waiting:
                self._waiting.append(packet.id)
            logger.info(f"Packet {packet.id} re-queued ({reason})")
            await self.event_bus.publish(packet.id, EventType.paused, {"status": packet.status.value})
            return

        machine.transition(PacketStatus.failed, error=CANCELLED_BY_USER)
        logger.info(f"Packet {packet.id} cancelled")
        await self.event_bus.publish(packet.id, EventType.cancelled, {"status": packet.status.value})
        await self._save_history(packet)

    async def _save_history(self, packet: Packet) -> None:
        if self.history is None or packet.id not in self._packets:
            return
        try:
            await self.history.save(build_history_record(packet, self.catalog))
        except Exception as e:
            logger.warning(f"Failed to save history for packet {packet.id}: {e}")

    # Controls

    async def retry_packet(self, packet_id: str, api_key: Optional[str] = None) -> Packet:
        """Re-queue a failed packet. Completed stages are not repeated."""
        packet = self.get_packet(packet_id)
        if packet.status != PacketStatus.failed or self.is_running(packet_id):
            raise InvalidTransition(f"Packet {packet_id} is {packet.status.value}, only failed packets can be retried")
        if api_key:
            self._api_keys[packet_id] = api_key
        if packet_id not in self._api_keys:
            raise ValueError("API key is required")

        for document in packet.documents:
            if document.status == DocumentStatus.failed:
                DocumentStateMachine(document, self.catalog).reset_for_retry()
        if not packet.splits:
            packet.splits = None

        PacketStateMachine(packet).transition(PacketStatus.queued)
        packet.completed_at = None
        logger.info(f"Retrying packet {packet_id}")
        await self._enqueue(packet)
        return packet

    async def retry_document(self, document_id: str, api_key: Optional[str] = None) -> Document:
        """Re-run the failed stage of one document with the same pages."""
        packet, document = self.find_document(document_id)
        if self.is_running(packet.id) or packet.id in self._waiting:
            raise InvalidTransition(f"Packet {packet.id} is still processing")
        if self._paused:
            raise InvalidTransition("Processing is paused, resume before retrying documents")
        if api_key:
            self._api_keys[packet.id] = api_key
        if packet.id not in self._api_keys:
            raise ValueError("API key is required")

        stage = DocumentStateMachine(document, self.catalog).reset_for_retry()
        if stage == Stage.classify:
            document.classification = None
        PacketStateMachine(packet).transition(
            PacketStatus.classifying if stage == Stage.classify else PacketStatus.extracting
        )
        packet.completed_at = None
        logger.info(f"Retrying document {document_id} from {stage.value}")

        run = PacketRun(
            packet_id=packet.id,
            config=packet.config or self.default_config,
            api=self.client_factory(self._api_keys[packet.id]),
        )
        self._runs[packet.id] = run
        run.task = asyncio.create_task(self._run_document_retry(run, packet, document))
        return document

    async def _run_document_retry(self, run: PacketRun, packet: Packet, document: Document) -> None:
        machine = PacketStateMachine(packet)
        try:
            await self._process_document(run, packet, document)
            await self._settle(packet)
        except ProcessingCancelled as e:
            await self._handle_interrupt(packet, machine, e.reason)
        finally:
            if self._runs.get(run.packet_id) is run:
                del self._runs[run.packet_id]

    async def approve_review(self, document_id: str, corrections: Optional[Dict[str, Any]] = None,
                             reviewer: Optional[str] = None) -> Document:
        packet, document = self.find_document(document_id)
        DocumentStateMachine(document, self.catalog).approve(corrections or {}, reviewer)
        logger.info(f"Document {document_id} approved with {len(corrections or {})} corrections")
        await self._after_review(packet, document)
        return document

    async def reject_document(self, document_id: str, reason: Optional[str] = None,
                              reviewer: Optional[str] = None) -> Document:
        packet, document = self.find_document(document_id)
        DocumentStateMachine(document, self.catalog).reject(reason, reviewer)
        logger.info(f"Document {document_id} rejected")
        await self._after_review(packet, document)
        return document

    async def reclassify(self, document_id: str, override: CategoryOverride) -> Document:
        packet, document = self.find_document(document_id)
        if override.id and not override.is_custom and self.catalog.get(override.id) is None:
            raise ValueError(f"Unknown category '{override.id}'")
        DocumentStateMachine(document, self.catalog).reclassify(override)
        logger.info(f"Document {document_id} reclassified to {override.id}")
        await self._after_review(packet, document)
        return document

    async def _after_review(self, packet: Packet, document: Document) -> None:
        await self.event_bus.publish(packet.id, EventType.document_processed, {
            "document_id": document.id,
            "status": document.status.value,
            "needs_review": document.needs_review,
        })
        if self.is_running(packet.id):
            return
        if packet.status in TERMINAL_PACKET_STATES:
            await self._settle(packet)
        else:
            await self._save_history(packet)

    async def cancel_packet(self, packet_id: str) -> Packet:
        packet = self.get_packet(packet_id)
        run = self._runs.get(packet_id)
        if run is not None:
            run.token.cancel("cancelled")
            self.scheduler.cancel_packet(packet_id)
            await asyncio.gather(run.task, return_exceptions=True)
            return packet
        if packet_id in self._waiting:
            self._waiting.remove(packet_id)
            await self._handle_interrupt(packet, PacketStateMachine(packet), "cancelled")
            return packet
        raise InvalidTransition(f"Packet {packet_id} is {packet.status.value} and not processing")

    async def remove_packet(self, packet_id: str) -> None:
        self.get_packet(packet_id)
        run = self._runs.get(packet_id)
        if packet_id in self._waiting:
            self._waiting.remove(packet_id)
        self._packets.pop(packet_id, None)
        self._sources.pop(packet_id, None)
        self._api_keys.pop(packet_id, None)
        self._usage_locks.pop(packet_id, None)
        if run is not None:
            run.token.cancel("removed")
            self.scheduler.cancel_packet(packet_id, "removed")
            await asyncio.gather(run.task, return_exceptions=True)
        logger.info(f"Removed packet {packet_id}")
        await self.event_bus.publish(packet_id, EventType.removed, {})

    async def pause(self) -> None:
        """Stop admitting work and interrupt running packets; they resume from their last completed stage."""
        if self._paused:
            return
        self._paused = True
        runs = list(self._runs.values())
        for run in runs:
            run.token.cancel("paused")
        for run in runs:
            self.scheduler.cancel_packet(run.packet_id, "paused")
        if runs:
            await asyncio.gather(*(r.task for r in runs if r.task), return_exceptions=True)
        logger.info(f"Processing paused, {len(self._waiting)} packets waiting")
        await self.event_bus.publish(ALL_PACKETS, EventType.paused, {"paused": True})

    async def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        launched = 0
        while self._waiting:
            packet_id = self._waiting.popleft()
            packet = self._packets.get(packet_id)
            if packet is None or packet.status != PacketStatus.queued:
                continue
            self._launch(packet_id)
            launched += 1
        logger.info(f"Processing resumed, {launched} packets relaunched")
        await self.event_bus.publish(ALL_PACKETS, EventType.status, {"paused": False})

    async def set_concurrency(self, value: int) -> int:
        return await self.scheduler.set_concurrency(value)

    async def wait_for(self, packet_id: str) -> Packet:
        """Wait until the packet's current run (if any) finishes."""
        run = self._runs.get(packet_id)
        if run is not None and run.task is not None:
            await asyncio.gather(run.task, return_exceptions=True)
        return self.get_packet(packet_id)

    async def wait_idle(self) -> None:
        while self._runs:
            tasks = [r.task for r in self._runs.values() if r.task is not None]
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        runs = list(self._runs.values())
        for run in runs:
            run.token.cancel("shutdown")
        if runs:
            await asyncio.gather(*(r.task for r in runs if r.task), return_exceptions=True)
        logger.info("Orchestrator stopped")

    # Views

    def document_snapshot(self, document: Document) -> DocumentSnapshot:
        merged = merge_extraction(document, self.catalog)
        category = resolve_category(document)
        trust = None
        if document.extraction is not None or document.status == DocumentStatus.reviewed:
            trust = compute_trust(document, self.catalog)
        classification = document.classification
        return DocumentSnapshot(
            id=document.id,
            packet_id=document.packet_id,
            split_index=document.split_index,
            split_type=document.split_type,
            pages=document.pages,
            status=document.status,
            category=category,
            category_name=self.catalog.display_name(category) if category else None,
            classification_confidence=classification.confidence if classification else None,
            extraction_confidence=document.extraction_confidence,
            needs_review=document.needs_review,
            review_reasons=document.review_reasons,
            data=display_data(merged),
            likelihoods=merged.likelihoods,
            edited_fields=merged.edited_fields,
            category_override=document.category_override,
            trust=trust,
            error=document.error,
            failed_stage=document.failed_stage,
            schema_fingerprint=document.schema_fingerprint,
            usage=document.usage,
            reviewed_by=document.reviewed_by,
            reviewed_at=document.reviewed_at,
        )

    def document_detail(self, document_id: str) -> Dict[str, Any]:
        _, document = self.find_document(document_id)
        accuracy = compute_review_accuracy(document, self.catalog)
        return {
            "document": self.document_snapshot(document).model_dump(mode="json"),
            "review_accuracy": accuracy.model_dump(mode="json") if accuracy else None,
        }

    def quality_report(self, packet_id: str) -> Dict[str, Any]:
        packet = self.get_packet(packet_id)
        return {
            "packet_id": packet.id,
            "status": packet.status.value,
            "trust": aggregate_trust(packet.documents, self.catalog).model_dump(),
            "tiers": aggregate_quality_tiers(packet.documents),
            "review_accuracy": aggregate_review_accuracy(packet.documents, self.catalog),
            "documents": [
                {
                    "id": d.id,
                    "status": d.status.value,
                    "tier": quality_tier(d).value,
                    "trust": compute_trust(d, self.catalog).model_dump(),
                }
                for d in packet.documents
            ],
        }

    def packet_snapshot(self, packet: Packet) -> PacketSnapshot:
        credits = packet.usage.credits
        return PacketSnapshot(
            id=packet.id,
            filename=packet.filename,
            status=packet.status,
            error=packet.error,
            progress=packet.progress,
            page_count=packet.page_count,
            usage=packet.usage,
            credits=credits,
            cost=credits * DOLLARS_PER_CREDIT,
            trust=aggregate_trust(packet.documents, self.catalog),
            documents=[self.document_snapshot(d) for d in packet.documents],
            uploaded_at=packet.uploaded_at,
            started_at=packet.started_at,
            completed_at=packet.completed_at,
        )

    def queue_status(self) -> QueueStatus:
        return QueueStatus(
            paused=self._paused,
            concurrency=self.scheduler.concurrency,
            queued=sum(1 for p in self._packets.values() if p.status == PacketStatus.queued),
            active=len(self._runs),
            in_flight=self.scheduler.in_flight,
            pending_work=self.scheduler.pending_count,
        )

    def snapshot(self) -> PipelineSnapshot:
        packets: List[PacketSnapshot] = [self.packet_snapshot(p) for p in self._packets.values()]
        totals: Dict[str, int] = {status.value: 0 for status in PacketStatus}
        for packet in self._packets.values():
            totals[packet.status.value] += 1
        return PipelineSnapshot(packets=packets, queue=self.queue_status(), totals=totals)
