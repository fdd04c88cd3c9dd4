from typing import Optional

from fastapi import Header, HTTPException

from packetflow.services.history import HistoryStore
from packetflow.services.orchestrator import PacketOrchestrator


def get_orchestrator() -> PacketOrchestrator:
    import packetflow.main as app_main
    if app_main.orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return app_main.orchestrator


def get_history() -> Optional[HistoryStore]:
    import packetflow.main as app_main
    return app_main.history_store


def require_api_key(api_key: Optional[str] = Header(None, alias="Api-Key")) -> str:
    """The remote API key, forwarded per request. Never logged or persisted."""
    if not api_key:
        raise HTTPException(status_code=401, detail="Api-Key header is required")
    return api_key


def optional_api_key(api_key: Optional[str] = Header(None, alias="Api-Key")) -> Optional[str]:
    return api_key or None
