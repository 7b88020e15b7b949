"""OAuth authorize-flow endpoints for every provider.

``POST /{provider}/oauth/start`` returns the provider authorize URL with a
state token carrying the chosen root location. ``GET /{provider}/oauth/callback``
exchanges the code, stores the Connection, starts a background sync and
redirects the browser back to the data page with a status flag.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...config import Settings
from ...core.errors import (
    REQUIRES_AUTHENTICATION_MESSAGE,
    AppError,
    DatabaseError,
    OAuthExchangeFailedError,
    ProviderNotConfiguredError,
    ValidationError,
)
from ...db.postgres import ConnectionStore
from ...sync.confluence_connector import ConfluenceConnector, parse_confluence_url, select_resource
from ...sync.manager import run_background_sync
from ...sync.models import AUTH_MODELS, ConfluenceAuth, ConnectionAuth, ProviderTag
from ...sync.oauth import OAUTH_PROVIDERS, OAuthProvider
from ...sync.state import StatePayload, decode_state, encode_state, generate_nonce
from ..dependencies import (
    ConnectorFactory,
    OrchestratorFactory,
    get_app_settings,
    get_connection_store,
    get_connector_factory,
    get_current_user_id,
    get_optional_user_id,
    get_orchestrator_factory,
)
from ..utils import is_absolute_url, parse_json_body

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["oauth"])

# Providers whose authorize flow completes with a code exchange
CALLBACK_PROVIDERS = frozenset({"github", "confluence", "notion", "google"})

# Background sync failures on these providers also record why
SYNC_FAILURE_MESSAGES = {
    ProviderTag.CONFLUENCE: REQUIRES_AUTHENTICATION_MESSAGE,
}


class OAuthStartRequest(BaseModel):
    """Request body for an OAuth start."""

    model_config = ConfigDict(populate_by_name=True)

    root_folder_url: str = Field(..., alias="rootFolderUrl")

    @field_validator("root_folder_url")
    @classmethod
    def validate_root_folder_url(cls, value: str) -> str:
        if not is_absolute_url(value):
            raise ValueError("A valid root folder URL is required")
        return value


def _get_provider(provider_key: str, callback: bool = False) -> OAuthProvider:
    provider = OAUTH_PROVIDERS.get(provider_key)
    if provider is None or (callback and provider_key not in CALLBACK_PROVIDERS):
        raise HTTPException(status_code=404, detail="Not Found")
    return provider


def _status_redirect(settings: Settings, status: str, message: Optional[str] = None) -> RedirectResponse:
    url = f"{settings.frontend_url}/data?status={status}"
    if message is not None:
        url += f"&message={quote(message, safe='')}"
    return RedirectResponse(url, status_code=307)


@router.post("/{provider_key}/oauth/start")
async def start_oauth(
    provider_key: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(get_app_settings),
    connection_store: ConnectionStore = Depends(get_connection_store),
) -> dict[str, Any]:
    """
    Begin the authorize flow for a provider.

    Returns:
        ``{"authorizeUrl", "state", "nonce"}``
    """
    provider = _get_provider(provider_key)
    body = await parse_json_body(request, OAuthStartRequest)
    root_folder_url = body.root_folder_url

    oauth_app = settings.oauth_app(provider.key)
    if not oauth_app.configured:
        logger.error("oauth_provider_not_configured", provider=provider.key)
        raise ProviderNotConfiguredError(provider.display_name)

    if provider.tag is ProviderTag.CONFLUENCE and parse_confluence_url(root_folder_url) is None:
        raise ValidationError("Invalid Confluence URL")

    nonce = generate_nonce()
    state = encode_state(StatePayload(nonce=nonce, root_folder_url=root_folder_url))
    authorize_url = provider.authorize_url(oauth_app, state, owner=settings.notion_owner)

    if provider.records_pending:
        pending = AUTH_MODELS[provider.tag](state=state, root_folder_url=root_folder_url)
        try:
            await connection_store.record_connection(user_id, provider.tag, pending)
        except DatabaseError as e:
            logger.error(
                "oauth_pending_connection_failed",
                provider=provider.key,
                user_id=user_id,
                error=e.message,
            )
            raise HTTPException(status_code=500, detail="Failed to persist data source metadata") from e

    logger.info("oauth_started", provider=provider.key, user_id=user_id)
    return {"authorizeUrl": authorize_url, "state": state, "nonce": nonce}


async def _build_callback_auth(
    provider: OAuthProvider,
    connector_factory: ConnectorFactory,
    code: str,
    state: str,
    payload: StatePayload,
) -> ConnectionAuth:
    """Exchange the code and build the auth blob to store."""
    connector = connector_factory(provider.tag)
    tokens = await connector.exchange_code_for_tokens(code)
    fields: dict[str, Any] = {
        "state": state,
        "nonce": payload.nonce,
        "root_folder_url": payload.root_folder_url,
        "tokens": tokens,
        "last_sync_status": "success",
    }

    if isinstance(connector, ConfluenceConnector):
        resources = await connector.get_accessible_resources(tokens.access_token or "")
        locator = parse_confluence_url(payload.root_folder_url)
        resource = select_resource(resources, locator.site_base_url if locator else None)
        if resource is None:
            raise OAuthExchangeFailedError(
                provider.display_name,
                "No accessible Confluence resource found for this account",
            )
        return ConfluenceAuth(
            **fields,
            cloud_id=resource.id,
            site_base_url=resource.url,
            last_sync_message=None,
        )

    return AUTH_MODELS[provider.tag](**fields)


@router.get("/{provider_key}/oauth/callback")
async def oauth_callback(
    provider_key: str,
    background_tasks: BackgroundTasks,
    state: Optional[str] = Query(None),
    code: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    user_id: Optional[str] = Depends(get_optional_user_id),
    settings: Settings = Depends(get_app_settings),
    connection_store: ConnectionStore = Depends(get_connection_store),
    connector_factory: ConnectorFactory = Depends(get_connector_factory),
    orchestrator_factory: OrchestratorFactory = Depends(get_orchestrator_factory),
) -> RedirectResponse:
    """Complete the authorize flow and redirect to ``/data?status=...``."""
    provider = _get_provider(provider_key, callback=True)
    prefix = provider.key

    if error:
        logger.warning("oauth_provider_returned_error", provider=prefix, error=error)
        return _status_redirect(settings, f"{prefix}_error")
    if not state or not code:
        logger.warning("oauth_callback_missing_params", provider=prefix)
        return _status_redirect(settings, f"{prefix}_missing_params")
    if user_id is None:
        return _status_redirect(settings, f"{prefix}_missing_user")

    try:
        payload = decode_state(state)
        auth = await _build_callback_auth(provider, connector_factory, code, state, payload)
        connection = await connection_store.upsert_connection(
            user_id,
            provider.tag,
            auth,
            last_sync_time=datetime.now(timezone.utc),
        )
    except Exception as e:
        message = e.message if isinstance(e, AppError) else str(e)
        logger.error(
            "oauth_callback_failed",
            provider=prefix,
            user_id=user_id,
            error=message,
        )
        return _status_redirect(settings, f"{prefix}_exchange_failed", message or "Unknown error")

    logger.info(
        "oauth_callback_completed",
        provider=prefix,
        user_id=user_id,
        connection_id=connection.id,
    )

    if payload.root_folder_url:
        background_tasks.add_task(
            run_background_sync,
            orchestrator_factory(provider.tag),
            connection_store,
            user_id,
            payload.root_folder_url,
            SYNC_FAILURE_MESSAGES.get(provider.tag),
        )

    return _status_redirect(settings, f"{prefix}_success")
