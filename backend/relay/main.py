"""Chat Relay Application.

This is the main entry point for the chat relay service. Clients publish
short text messages tagged with a username; the server stores each message
and fans it out to every connected client, and serves recent history to
clients that (re)connect.

Modules:
    - messages: DuckDB-backed append-only message store
    - chat: connection registry, broadcast fanout, ingestion pipeline,
      history query, and the HTTP/WebSocket router
    - config: YAML + environment configuration
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relay.chat.context import ChatContext, build_context
from relay.chat.router import router as chat_router
from relay.config import AppConfig, get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn.access logs every HTTP request and WebSocket handshake; the relay
# logs the ones that matter itself.
for _noisy in (
    "uvicorn.access",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config: AppConfig = app.state.config

    # Apply configured log level to root logger so that
    # `server.log_level: "debug"` in relay.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.server.log_level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.server.log_level.upper())

    owns_context = getattr(app.state, "chat", None) is None
    if owns_context:
        # A missing database URL raises ConfigError here and aborts startup
        app.state.chat = build_context(config)
        logger.info("Message store connected")

    yield  # Application runs here

    # Shutdown
    if owns_context:
        app.state.chat.close()
        app.state.chat = None
    logger.info("Application shutdown complete")


def create_app(
    config: Optional[AppConfig] = None,
    context: Optional[ChatContext] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Application config; defaults to the context's config, then
            to get_config().
        context: Pre-built chat context (tests pass one with a substitute
            store). When omitted the lifespan builds one from config.

    Returns:
        The configured FastAPI app.
    """
    if config is None:
        config = context.config if context is not None else get_config()

    application = FastAPI(
        title="Chat Relay API",
        description="Real-time chat relay with durable message history",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.state.config = config
    application.state.chat = context

    application.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    application.include_router(chat_router)

    @application.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object with the number of live WebSocket connections.
        """
        chat = application.state.chat
        return {
            "status": "ok",
            "connections": len(chat.registry) if chat is not None else 0,
        }

    return application


app = create_app()
