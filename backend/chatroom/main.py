"""Chatroom Backend Application.

Main entry point of the chat service: a single shared group room, private
rooms between pairs of users, presence, typing indicators, persisted history
and call-signaling relay over one WebSocket per browser tab.

Modules:
    - chat: WebSocket transport, rooms, relay, presence and signaling
    - identity: Session cookies, identity resolution and renames
    - storage: DuckDB-backed users, conversations and messages
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatroom.chat.manager import ChatManager
from chatroom.chat.router import router as chat_router
from chatroom.config import get_config
from chatroom.identity.router import router as identity_router
from chatroom.storage.service import ChatStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers; uvicorn.access logs every request
# and websockets logs every frame at debug level.
for _noisy in (
    "uvicorn.access",
    "websockets",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chatroom.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    if getattr(app.state, "chat_manager", None) is None:
        store = ChatStore.get_instance(config.storage.db_path, group_name=config.chat.group_name)
        app.state.chat_manager = ChatManager(store=store, config=config)
        logger.info("Chat manager ready (storage: %s)", config.storage.db_path)

    logger.info(f"Chat server running on http://{config.server.host}:{config.server.port}")

    yield  # Application runs here

    # Shutdown
    manager = getattr(app.state, "chat_manager", None)
    if manager is not None:
        await manager.drain()
    ChatStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Chatroom API",
    description="Group and private chat with presence, history and call signaling",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(chat_router)
app.include_router(identity_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


@app.get("/health/db")
async def health_db():
    """Database health check: 503 when storage cannot answer a trivial query."""
    manager: ChatManager = app.state.chat_manager
    try:
        await manager.store.ping()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "database": "unavailable"})
    return {"status": "ok", "database": "ok"}


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(
        "chatroom.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
    )
