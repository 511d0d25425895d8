"""Parley Backend Application.

This is the main entry point for the Parley chat service.

Modules:
    - chat: WebSocket-based rooms, DMs, presence and typing
    - files: HTTP file upload and download
    - client: Python client session (not mounted; used by chat clients)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from parley import __version__
from parley.chat.presence import typing_tracker
from parley.chat.registry import registry
from parley.chat.rooms import RoomDirectory
from parley.chat.router import router as chat_router
from parley.chat.store import ChatStore
from parley.config import get_config
from parley.files.router import router as files_router
from parley.files.service import FileStorageService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "uvicorn.access",
    "websockets",
    "duckdb",
    "httpx",
    "httpcore",
    "multipart",
    "python_multipart",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in parley.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    # Presence is process-local; start from a clean slate.
    registry.clear()
    typing_tracker.clear()

    store = ChatStore.get_instance(config.storage.db_path)
    RoomDirectory(store).seed(config.chat.default_rooms)

    logger.info(
        f"Parley running on http://{config.server.host}:{config.server.port} "
        f"({len(config.chat.default_rooms)} default rooms)"
    )

    yield  # Application runs here

    # Shutdown
    registry.clear()
    typing_tracker.clear()
    ChatStore.reset_instance()
    FileStorageService.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Parley API",
    description="Real-time room and direct-message chat service",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(chat_router)
app.include_router(files_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with the number of online users.
    """
    return {"status": "ok", "online": len(registry.list_online())}


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "parley.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level,
    )
