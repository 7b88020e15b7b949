"""FastAPI dependencies shared by the API routes.

Clients live on ``app.state`` (see ``main.lifespan``); tests replace these
getters through ``app.dependency_overrides``.
"""

from typing import Callable, Optional

import httpx
from fastapi import Depends, Header, HTTPException, Request

from ..config import Settings
from ..db.postgres import ConnectionStore
from ..knowledge.bedrock import KnowledgeBaseClient
from ..slack.command import SlackCommandHandler
from ..sync.base import BaseConnector
from ..sync.content_store import ContentStore
from ..sync.manager import SyncOrchestrator, create_connector, create_sync_orchestrator
from ..sync.models import ProviderTag

USER_ID_HEADER = "X-User-Id"

ConnectorFactory = Callable[[ProviderTag], BaseConnector]
OrchestratorFactory = Callable[[ProviderTag], SyncOrchestrator]


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias=USER_ID_HEADER),
) -> str:
    """Return the authenticated user id set by the auth proxy.

    Raises:
        HTTPException: 401 when the header is absent
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()


async def get_optional_user_id(
    x_user_id: Optional[str] = Header(default=None, alias=USER_ID_HEADER),
) -> Optional[str]:
    """Like ``get_current_user_id`` but returns None instead of raising."""
    if not x_user_id or not x_user_id.strip():
        return None
    return x_user_id.strip()


async def get_app_settings(request: Request) -> Settings:
    """Get Settings from app.state."""
    return request.app.state.settings


async def get_connection_store(request: Request) -> ConnectionStore:
    """Get the Connection store from app.state."""
    return request.app.state.connection_store


async def get_content_store(request: Request) -> ContentStore:
    """Get the object-store gateway from app.state."""
    return request.app.state.content_store


async def get_http_client(request: Request) -> httpx.AsyncClient:
    """Get the shared outbound HTTP client from app.state."""
    return request.app.state.http_client


async def get_knowledge_base(request: Request) -> KnowledgeBaseClient:
    """Get the knowledge-base client from app.state."""
    return request.app.state.knowledge_base


async def get_connector_factory(
    settings: Settings = Depends(get_app_settings),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> ConnectorFactory:
    """Return a callable building a provider connector on the shared HTTP client."""

    def factory(provider: ProviderTag) -> BaseConnector:
        return create_connector(provider, settings, http_client)

    return factory


async def get_orchestrator_factory(
    settings: Settings = Depends(get_app_settings),
    connection_store: ConnectionStore = Depends(get_connection_store),
    content_store: ContentStore = Depends(get_content_store),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> OrchestratorFactory:
    """Return a callable building a SyncOrchestrator for a provider."""

    def factory(provider: ProviderTag) -> SyncOrchestrator:
        return create_sync_orchestrator(
            provider,
            settings,
            connection_store,
            content_store,
            http_client,
        )

    return factory


async def get_slack_handler(
    knowledge_base: KnowledgeBaseClient = Depends(get_knowledge_base),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> SlackCommandHandler:
    return SlackCommandHandler(knowledge_base, http_client)
