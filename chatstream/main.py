"""Main FastAPI application for chatstream."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatstream.api.threads import router as threads_router
from chatstream.config import create_stream_controller, get_settings
from chatstream.database import AsyncSessionLocal, close_db, init_db
from chatstream.services.message_store import MessageStore
from chatstream.transports.base import TransportConfigurationError

logger = logging.getLogger(__name__)
settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown tasks."""
    # Startup
    logger.info(f"Starting {settings.app_name}")

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    app.state.store = MessageStore(AsyncSessionLocal)

    # Stream controller (optional: history stays readable without a transport)
    try:
        app.state.controller = create_stream_controller(app.state.store, settings=settings)
        logger.info(f"Stream controller ready ({settings.transport_type.value} transport)")
    except TransportConfigurationError as e:
        app.state.controller = None
        logger.warning(f"Streaming disabled: {e}")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}")

    if app.state.controller is not None:
        await app.state.controller.shutdown()
        logger.info("Active streams cancelled")

    # Close database
    await close_db()
    logger.info("Database closed")


app = FastAPI(
    title=settings.app_name,
    description="Reconstructs research agent event streams into durable conversation messages",
    version=settings.app_version,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(threads_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "docs_url": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
    )
