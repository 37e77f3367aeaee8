"""MyFlow Backend Application.

This is the main entry point for the MyFlow backend service.
MyFlow is an ephemeral room chat for moving text, links and files between
one person's devices (or a small group) without accounts.

Modules:
    - chat: rooms, membership, message lifecycle and the WebSocket gateway
    - files: room-scoped upload storage
    - preview: link preview scraping
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from myflow.chat.gateway import get_gateway
from myflow.chat.router import router as chat_router
from myflow.chat.sweeper import start_sweeper, stop_sweeper
from myflow.config import get_config
from myflow.files.router import router as files_router
from myflow.preview.router import router as preview_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# httpx/httpcore log every connection made while fetching link previews.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in myflow.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    gateway = get_gateway()
    sweeper = start_sweeper(gateway, config.retention.sweep_interval_seconds)
    logger.info(
        f"Server running on http://{config.server.host}:{config.server.port}"
    )

    yield  # Application runs here

    # Shutdown
    await stop_sweeper(sweeper)
    await gateway.shutdown()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="MyFlow API",
    description="Backend service for MyFlow - ephemeral cross-device room chat",
    version="0.1.0",
    lifespan=lifespan,
)

# Register all routers
app.include_router(chat_router)
app.include_router(files_router)
app.include_router(preview_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
