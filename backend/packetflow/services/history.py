"""
Processing history.

The orchestrator writes a summary of each settled packet through the
HistoryStore protocol. SQLHistoryStore persists to the history database;
InMemoryHistoryStore backs tests and ephemeral runs.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from packetflow.config import DOLLARS_PER_CREDIT
from packetflow.models.database import Base, HistoryEntry
from packetflow.models.schemas import DocumentStatus, Packet
from packetflow.services.catalog import DocumentCatalog
from packetflow.services.quality import aggregate_quality_tiers, aggregate_trust
from packetflow.services.review import aggregate_review_accuracy

logger = logging.getLogger(__name__)


def build_history_record(packet: Packet, catalog: DocumentCatalog) -> Dict[str, Any]:
    """Flatten a packet into the history row. The API key is never part of a packet."""
    documents = packet.documents
    credits = packet.usage.credits
    return {
        "id": packet.id,
        "filename": packet.filename,
        "status": packet.status.value,
        "document_count": len(documents),
        "needs_review_count": sum(1 for d in documents if d.status == DocumentStatus.needs_review),
        "failed_count": sum(1 for d in documents if d.status == DocumentStatus.failed),
        "page_count": packet.page_count,
        "credits": credits,
        "cost": credits * DOLLARS_PER_CREDIT,
        "model": packet.usage.model,
        "error": packet.error,
        "summary_json": {
            "trust": aggregate_trust(documents, catalog).model_dump(),
            "tiers": aggregate_quality_tiers(documents),
            "review_accuracy": aggregate_review_accuracy(documents, catalog),
            "usage": packet.usage.model_dump(),
            "documents": [
                {
                    "id": d.id,
                    "split_type": d.split_type,
                    "category": d.classification.category if d.classification else None,
                    "category_override": d.category_override.id if d.category_override else None,
                    "pages": d.pages,
                    "status": d.status.value,
                    "review_reasons": d.review_reasons,
                    "error": d.error,
                    "schema_fingerprint": d.schema_fingerprint,
                }
                for d in documents
            ],
        },
    }


class HistoryStore(Protocol):
    async def save(self, record: Dict[str, Any]) -> None: ...

    async def list(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]: ...

    async def get(self, packet_id: str) -> Optional[Dict[str, Any]]: ...

    async def delete(self, packet_id: str) -> bool: ...


class InMemoryHistoryStore:
    def __init__(self):
        self._entries: Dict[str, Dict[str, Any]] = {}

    async def save(self, record: Dict[str, Any]) -> None:
        now = datetime.utcnow()
        existing = self._entries.get(record["id"])
        created_at = existing["created_at"] if existing else now
        self._entries[record["id"]] = {**record, "created_at": created_at, "updated_at": now}

    async def list(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        entries = sorted(self._entries.values(), key=lambda e: e["created_at"], reverse=True)
        return entries[offset:offset + limit]

    async def get(self, packet_id: str) -> Optional[Dict[str, Any]]:
        return self._entries.get(packet_id)

    async def delete(self, packet_id: str) -> bool:
        return self._entries.pop(packet_id, None) is not None


def _entry_to_dict(entry: HistoryEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "filename": entry.filename,
        "status": entry.status,
        "document_count": entry.document_count,
        "needs_review_count": entry.needs_review_count,
        "failed_count": entry.failed_count,
        "page_count": entry.page_count,
        "credits": entry.credits,
        "cost": entry.cost,
        "model": entry.model,
        "error": entry.error,
        "summary_json": entry.summary_json,
        "created_at": entry.created_at,
        "updated_at": entry.updated_at,
    }


class SQLHistoryStore:
    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    async def create_tables(engine: AsyncEngine) -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def save(self, record: Dict[str, Any]) -> None:
        async with self.session_factory() as session:
            entry = await session.get(HistoryEntry, record["id"])
            if entry is None:
                entry = HistoryEntry(**record)
                session.add(entry)
            else:
                for key, value in record.items():
                    setattr(entry, key, value)
                entry.updated_at = datetime.utcnow()
            await session.commit()
        logger.info(f"Saved history for packet {record['id']} ({record['status']})")

    async def list(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(HistoryEntry).order_by(HistoryEntry.created_at.desc()).offset(offset).limit(limit)
            )
            return [_entry_to_dict(e) for e in result.scalars().all()]

    async def get(self, packet_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            entry = await session.get(HistoryEntry, packet_id)
            return _entry_to_dict(entry) if entry else None

    async def delete(self, packet_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(delete(HistoryEntry).where(HistoryEntry.id == packet_id))
            await session.commit()
            return result.rowcount > 0
