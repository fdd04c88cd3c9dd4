import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

ALL_PACKETS = "*"


class EventType:
    status = "status"
    documents_detected = "documents_detected"
    document_processed = "document_processed"
    progress = "progress"
    completed = "completed"
    error = "error"
    cancelled = "cancelled"
    paused = "paused"
    removed = "removed"


class EventBus:
    """
    Fan-out of pipeline events to Server-Sent-Events subscribers.

    Subscribers register for one packet id or for ALL_PACKETS. Events are
    pushed as fully formatted SSE messages.
    """

    def __init__(self):
        self._connections: Dict[str, Set[Callable]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, packet_id: str, send_func: Callable[[str], Any]) -> Callable:
        """Subscribe to packet events. Returns unsubscribe function."""
        async with self._lock:
            self._connections.setdefault(packet_id, set()).add(send_func)

        async def unsubscribe():
            async with self._lock:
                if packet_id in self._connections:
                    self._connections[packet_id].discard(send_func)
                    if not self._connections[packet_id]:
                        del self._connections[packet_id]

        return unsubscribe

    async def publish_status(self, packet_id: str, status: str, stage: Optional[str] = None,
                             document_id: Optional[str] = None, progress: Optional[int] = None,
                             **extra: Any) -> None:
        event_data: Dict[str, Any] = {"status": status}
        if stage is not None:
            event_data["stage"] = stage
        if document_id is not None:
            event_data["document_id"] = document_id
        if progress is not None:
            event_data["progress"] = progress
        event_data.update(extra)
        await self.publish(packet_id, EventType.status, event_data)

    async def publish_progress(self, packet_id: str, doc_index: int, total_docs: int) -> None:
        await self.publish(packet_id, EventType.progress, {"doc_index": doc_index, "total_docs": total_docs})

    async def publish_error(self, packet_id: str, error_message: str,
                            document_id: Optional[str] = None) -> None:
        event_data: Dict[str, Any] = {"error_message": error_message}
        if document_id is not None:
            event_data["document_id"] = document_id
        await self.publish(packet_id, EventType.error, event_data)

    async def publish(self, packet_id: str, event_type: str, event_data: Dict[str, Any]) -> None:
        """Publish an event to subscribers of the packet and of every packet."""
        payload = {
            "type": event_type,
            "packet_id": packet_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **event_data,
        }
        await self._publish_event(packet_id, payload)
        if packet_id != ALL_PACKETS:
            await self._publish_event(ALL_PACKETS, payload)

    async def _publish_event(self, channel: str, event_data: dict) -> None:
        async with self._lock:
            if channel not in self._connections:
                return
            subscribers = list(self._connections[channel])

        # SSE events must end with a blank line
        message = "\n".join([
            "event: packet-update",
            f"data: {json.dumps(event_data, default=str)}",
            "",
        ]) + "\n"

        disconnected = set()
        for send_func in subscribers:
            try:
                await send_func(message)
            except Exception as e:
                logger.warning(f"Failed to send SSE to subscriber: {e}")
                disconnected.add(send_func)

        if disconnected:
            async with self._lock:
                if channel in self._connections:
                    for send_func in disconnected:
                        self._connections[channel].discard(send_func)
                    if not self._connections[channel]:
                        del self._connections[channel]

    async def get_active_connections_count(self, packet_id: str) -> int:
        async with self._lock:
            return len(self._connections.get(packet_id, set()))
