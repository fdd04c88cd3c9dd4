import asyncio

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from packetflow.api.deps import get_orchestrator
from packetflow.services.event_bus import ALL_PACKETS, EventBus
from packetflow.services.orchestrator import PacketNotFound, PacketOrchestrator

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Cache-Control",
}


def _event_stream(event_bus: EventBus, channel: str) -> StreamingResponse:
    async def event_generator():
        """Generate SSE events for the channel."""
        messages: asyncio.Queue = asyncio.Queue()

        async def send_message(message: str):
            await messages.put(message)

        unsubscribe = await event_bus.subscribe(channel, send_message)

        try:
            yield "event: connected\ndata: {}\n\n"

            while True:
                try:
                    yield await asyncio.wait_for(messages.get(), timeout=15.0)
                except asyncio.TimeoutError:
                    # Comment line so proxies keep the stream open
                    yield ": keep-alive\n\n"

        except asyncio.CancelledError:
            # Client disconnected
            pass
        finally:
            await unsubscribe()

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/packets/{packet_id}/events")
async def packet_events(packet_id: str, orchestrator: PacketOrchestrator = Depends(get_orchestrator)):
    """SSE endpoint for real-time events of one packet."""
    try:
        orchestrator.get_packet(packet_id)
    except PacketNotFound:
        raise HTTPException(status_code=404, detail="Packet not found")
    return _event_stream(orchestrator.event_bus, packet_id)


@router.get("/events")
async def all_events(orchestrator: PacketOrchestrator = Depends(get_orchestrator)):
    """SSE endpoint for events of every packet."""
    return _event_stream(orchestrator.event_bus, ALL_PACKETS)
