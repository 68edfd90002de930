"""chatrelay backend application.

This is the main entry point for the chat relay service: clients join named
rooms over a WebSocket, exchange persisted text messages and see live
presence and typing state of the other room members.

Modules:
    - gateway: WebSocket endpoint, identity binding and event dispatch
    - rooms: Presence tables and the room coordinator
    - store: DuckDB message log and the history endpoint
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatrelay import __version__
from chatrelay.config import get_config
from chatrelay.gateway.router import router as gateway_router
from chatrelay.rooms.coordinator import coordinator
from chatrelay.store.router import router as history_router
from chatrelay.store.service import MessageStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence per-request access and protocol chatter.
for _noisy in (
    "uvicorn.access",
    "websockets",
    "httpx",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    MessageStore.get_instance(config.store.db_path)
    coordinator.history_seed_limit = config.store.history_seed_limit
    logger.info(
        "Message store ready (history seed=%d)", coordinator.history_seed_limit
    )

    yield  # Application runs here

    # Shutdown
    MessageStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="chatrelay API",
    description="Real-time room-based chat relay with presence and history",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(gateway_router)
app.include_router(history_router)


@app.get("/")
async def root() -> dict:
    """Service banner.

    Returns:
        dict: Object identifying the service.
    """
    return {"ok": True, "service": "chatrelay"}


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


def run() -> None:
    """Run the server with uvicorn using the configured host and port."""
    import uvicorn

    config = get_config()
    uvicorn.run(app, host=config.server.host, port=config.server.port)


if __name__ == "__main__":
    run()
