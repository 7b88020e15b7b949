"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, cast

import httpx
from fastapi import APIRouter, FastAPI, HTTPException, Request
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.responses import Response
import structlog

from .api.routes import (
    data_sources_router,
    google_router,
    knowledge_router,
    oauth_router,
    slack_router,
    sync_router,
)
from .api.routes.knowledge import limiter as slowapi_limiter
from .config import load_settings
from .core.errors import AppError, app_error_handler, http_exception_handler
from .db.postgres import ConnectionStore
from .knowledge.bedrock import KnowledgeBaseClient, create_bedrock_client
from .sync.content_store import ContentStore, create_s3_client

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Connects the Connection store and builds the AWS and HTTP clients on
    startup, closing them on shutdown. Clients are stored in app.state for
    dependency injection.
    """
    settings = load_settings()
    app.state.settings = settings

    app.state.connection_store = ConnectionStore(settings.database_url)
    await app.state.connection_store.connect()
    await app.state.connection_store.create_tables()

    s3_client = create_s3_client(
        settings.aws_region,
        settings.aws_access_key_id,
        settings.aws_secret_access_key,
    )
    app.state.content_store = ContentStore(s3_client, settings.knowledge_base_bucket)
    app.state.http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    app.state.knowledge_base = KnowledgeBaseClient(
        create_bedrock_client(
            settings.aws_region,
            settings.aws_access_key_id,
            settings.aws_secret_access_key,
        ),
        app.state.content_store,
        settings.bedrock_knowledge_base_id,
        settings.bedrock_model_arn,
    )
    logger.info("application_started", app_env=settings.app_env)

    yield

    if getattr(app.state, "http_client", None) is not None:
        await app.state.http_client.aclose()
    if getattr(app.state, "connection_store", None) is not None:
        await app.state.connection_store.disconnect()
    logger.info("application_stopped")


router = APIRouter()


@router.get("/health")
def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="Askoro Backend",
        version="0.1.0",
        description="Syncs connected content repositories into a knowledge base and answers questions from it",
        lifespan=lifespan,
    )

    # Register slowapi rate limiter for the knowledge-base query endpoint
    app.state.limiter = slowapi_limiter
    app.add_exception_handler(
        RateLimitExceeded,
        cast(Callable[[Request, Exception], Response], _rate_limit_exceeded_handler),
    )

    # Register exception handlers
    app.add_exception_handler(
        AppError,
        cast(Callable[[Request, Exception], Awaitable[Response]], app_error_handler),
    )
    app.add_exception_handler(
        HTTPException,
        cast(Callable[[Request, Exception], Awaitable[Response]], http_exception_handler),
    )

    # Register routers
    app.include_router(router)
    app.include_router(oauth_router, prefix="/api/v1")
    app.include_router(sync_router, prefix="/api/v1")
    app.include_router(data_sources_router, prefix="/api/v1")
    app.include_router(google_router, prefix="/api/v1")
    app.include_router(knowledge_router, prefix="/api/v1")
    app.include_router(slack_router, prefix="/api/v1")
    return app


def run() -> None:
    """Run the application with uvicorn."""
    import uvicorn

    settings = load_settings()
    uvicorn.run("askoro_backend.main:app", host=settings.backend_host, port=settings.backend_port)


app = create_app()
