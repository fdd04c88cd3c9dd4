import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from packetflow.api import config, documents, health, history, packets, queue, sse
from packetflow.config import settings
from packetflow.services.event_bus import EventBus
from packetflow.services.history import SQLHistoryStore
from packetflow.services.orchestrator import DocumentNotFound, PacketNotFound, PacketOrchestrator
from packetflow.services.scheduler import Scheduler
from packetflow.services.state_machine import InvalidTransition

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

# Global services
event_bus = EventBus()
scheduler = Scheduler(concurrency=settings.default_concurrency)
orchestrator = None
history_store = None

# Database setup
Path(settings.data_dir).mkdir(parents=True, exist_ok=True)
engine = create_async_engine(settings.database_url, echo=False)
async_session_maker = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    global orchestrator, history_store

    history_store = SQLHistoryStore(async_session_maker)
    await SQLHistoryStore.create_tables(engine)

    await scheduler.start()
    orchestrator = PacketOrchestrator(scheduler, event_bus, history=history_store)
    logger.info(f"Orchestrator initialized (concurrency={scheduler.concurrency})")

    logger.info("Application started")

    yield

    # Shutdown
    logger.info("Shutting down application...")

    if orchestrator:
        await orchestrator.shutdown()
    await scheduler.stop()

    await engine.dispose()
    logger.info("Application shutdown")


# Create FastAPI app
app = FastAPI(
    title="PacketFlow API",
    description="PDF packet processing - split, classify and extract through the document API",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _cors_headers() -> dict:
    return {
        "Access-Control-Allow-Origin": settings.cors_origins[0] if settings.cors_origins else "*",
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "*",
        "Access-Control-Allow-Headers": "*",
    }


# Custom exception handlers to ensure CORS headers on errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    return JSONResponse(status_code=422, content={"detail": exc.errors()}, headers=_cors_headers())


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=_cors_headers())


@app.exception_handler(PacketNotFound)
@app.exception_handler(DocumentNotFound)
async def not_found_handler(request, exc):
    return JSONResponse(status_code=404, content={"detail": f"Not found: {exc.args[0]}"}, headers=_cors_headers())


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request, exc):
    return JSONResponse(status_code=409, content={"detail": str(exc)}, headers=_cors_headers())


@app.exception_handler(Exception)
async def generic_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"}, headers=_cors_headers())


# Include routers
app.include_router(
    health.router,
    prefix="/api",
    tags=["health"]
)

app.include_router(
    packets.router,
    prefix="/api",
    tags=["packets"]
)

app.include_router(
    documents.router,
    prefix="/api",
    tags=["documents"]
)

app.include_router(
    queue.router,
    prefix="/api",
    tags=["queue"]
)

app.include_router(
    sse.router,
    prefix="/api",
    tags=["sse"]
)

app.include_router(
    history.router,
    prefix="/api",
    tags=["history"]
)

app.include_router(
    config.router,
    prefix="/api",
    tags=["config"]
)


@app.get("/")
async def root():
    return {"message": "PacketFlow API", "version": "1.0.0"}
