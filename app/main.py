"""
FastAPI application entry point.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.db import async_session_maker, close_db, get_db_context, init_db
from app.exceptions import ChatError
from app.realtime.handlers import ChatEventDispatcher
from app.realtime.hub import EventHub
from app.services.chat_store import ChatStore
from app.services.pipeline import MessagePipeline
from app.settings import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s" if settings.log_format == "text" else None,
)
logger = logging.getLogger(__name__)


async def retention_sweeper(interval_minutes: int) -> None:
    """Periodically delete messages past their room's retention window."""
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            async with get_db_context() as db:
                await ChatStore(db).purge_expired_messages()
        except Exception as e:
            logger.error(f"Retention sweep failed: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info(f"Starting {settings.app_name}...")
    await init_db()

    hub = EventHub()
    await hub.start()
    pipeline = MessagePipeline(hub, async_session_maker)
    app.state.hub = hub
    app.state.pipeline = pipeline
    app.state.dispatcher = ChatEventDispatcher(hub, pipeline, async_session_maker)

    sweeper = None
    if settings.chat_retention_sweep_minutes > 0:
        sweeper = asyncio.create_task(
            retention_sweeper(settings.chat_retention_sweep_minutes), name="chat-retention-sweeper"
        )

    yield

    logger.info(f"Shutting down {settings.app_name}...")
    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
    await hub.stop()
    await close_db()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    debug=settings.debug,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request ID middleware
@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Add request ID to all requests for logging."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# Health check endpoint
@app.get("/healthz", tags=["health"])
@app.get("/health", tags=["health"])
async def healthz():
    """Health check endpoint for load balancers."""
    hub = getattr(app.state, "hub", None)
    return {
        "status": "healthy",
        "connections": hub.connection_count if hub else 0,
    }


# Meta endpoint for diagnostics
@app.get("/meta", tags=["meta"])
async def meta():
    return {"name": settings.app_name, "version": settings.app_version}


# Import and include routers
from app.routers import chat, realtime  # noqa: E402

app.include_router(chat.router)
app.include_router(realtime.router)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    """Map chat domain errors onto their HTTP status."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse({"message": exc.message}, status_code=exc.status_code)


# Generic exception handler for unhandled errors
@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse({"message": "Internal server error"}, status_code=500)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
