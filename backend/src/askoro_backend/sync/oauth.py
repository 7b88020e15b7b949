"""OAuth authorize-URL builders and the shared token-endpoint helper."""

from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx
import structlog

from ..config import OAuthApp
from ..core.errors import OAuthExchangeFailedError, OAuthRefreshFailedError
from .models import ProviderTag

logger = structlog.get_logger(__name__)

GITHUB_AUTHORIZE_ENDPOINT = "https://github.com/login/oauth/authorize"
ATLASSIAN_AUTHORIZE_ENDPOINT = "https://auth.atlassian.com/authorize"
NOTION_AUTHORIZE_ENDPOINT = "https://api.notion.com/v1/oauth/authorize"
GOOGLE_AUTHORIZE_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
ONEDRIVE_AUTHORIZE_ENDPOINT = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
QUIP_AUTHORIZE_ENDPOINT = "https://platform.quip.com/1/oauth/login"


def _github_params(app: OAuthApp, state: str, owner: str) -> list[tuple[str, str]]:
    return [
        ("client_id", app.client_id or ""),
        ("redirect_uri", app.redirect_uri or ""),
        ("scope", app.scopes),
        ("state", state),
    ]


def _confluence_params(app: OAuthApp, state: str, owner: str) -> list[tuple[str, str]]:
    return [
        ("audience", "api.atlassian.com"),
        ("client_id", app.client_id or ""),
        ("scope", app.scopes),
        ("redirect_uri", app.redirect_uri or ""),
        ("state", state),
        ("response_type", "code"),
        ("prompt", "consent"),
    ]


def _notion_params(app: OAuthApp, state: str, owner: str) -> list[tuple[str, str]]:
    return [
        ("client_id", app.client_id or ""),
        ("redirect_uri", app.redirect_uri or ""),
        ("response_type", "code"),
        ("owner", owner),
        ("state", state),
    ]


def _google_params(app: OAuthApp, state: str, owner: str) -> list[tuple[str, str]]:
    return [
        ("client_id", app.client_id or ""),
        ("redirect_uri", app.redirect_uri or ""),
        ("response_type", "code"),
        ("scope", app.scopes),
        ("access_type", "offline"),
        ("prompt", "consent"),
        ("state", state),
    ]


def _onedrive_params(app: OAuthApp, state: str, owner: str) -> list[tuple[str, str]]:
    return [
        ("client_id", app.client_id or ""),
        ("response_type", "code"),
        ("redirect_uri", app.redirect_uri or ""),
        ("scope", app.scopes),
        ("response_mode", "query"),
        ("state", state),
    ]


def _quip_params(app: OAuthApp, state: str, owner: str) -> list[tuple[str, str]]:
    return [
        ("response_type", "code"),
        ("client_id", app.client_id or ""),
        ("redirect_uri", app.redirect_uri or ""),
        ("scope", app.scopes),
        ("state", state),
    ]


@dataclass(frozen=True)
class OAuthProvider:
    """Authorize-flow description for one provider.

    Attributes:
        key: Route and settings key (``/api/v1/{key}/oauth/start``)
        display_name: Name used in user-facing messages
        tag: Persisted provider tag
        authorize_endpoint: Provider authorize URL
        build_params: Query parameters for the authorize URL
        records_pending: Whether start persists a pending Connection
    """

    key: str
    display_name: str
    tag: ProviderTag
    authorize_endpoint: str
    build_params: Callable[[OAuthApp, str, str], list[tuple[str, str]]]
    records_pending: bool = False

    def authorize_url(self, app: OAuthApp, state: str, owner: str = "user") -> str:
        query = urlencode(self.build_params(app, state, owner))
        return f"{self.authorize_endpoint}?{query}"

    @property
    def start_endpoint(self) -> str:
        return f"/api/v1/{self.key}/oauth/start"


OAUTH_PROVIDERS: dict[str, OAuthProvider] = {
    provider.key: provider
    for provider in (
        OAuthProvider("github", "GitHub", ProviderTag.GITHUB, GITHUB_AUTHORIZE_ENDPOINT, _github_params),
        OAuthProvider(
            "confluence", "Confluence", ProviderTag.CONFLUENCE, ATLASSIAN_AUTHORIZE_ENDPOINT, _confluence_params
        ),
        OAuthProvider("notion", "Notion", ProviderTag.NOTION, NOTION_AUTHORIZE_ENDPOINT, _notion_params),
        OAuthProvider(
            "google",
            "Google Drive",
            ProviderTag.GOOGLE_DRIVE,
            GOOGLE_AUTHORIZE_ENDPOINT,
            _google_params,
            records_pending=True,
        ),
        OAuthProvider(
            "onedrive",
            "OneDrive",
            ProviderTag.ONEDRIVE,
            ONEDRIVE_AUTHORIZE_ENDPOINT,
            _onedrive_params,
            records_pending=True,
        ),
        OAuthProvider(
            "quip",
            "Quip",
            ProviderTag.QUIP,
            QUIP_AUTHORIZE_ENDPOINT,
            _quip_params,
            records_pending=True,
        ),
    )
}


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        message = payload.get("error_description") or payload.get("error") or payload.get("message")
        if message:
            return str(message)
    return str(payload)


async def post_token_request(
    client: httpx.AsyncClient,
    provider: str,
    url: str,
    *,
    json: Optional[dict[str, Any]] = None,
    data: Optional[dict[str, Any]] = None,
    headers: Optional[dict[str, str]] = None,
    auth: Optional[httpx.Auth | tuple[str, str]] = None,
    refresh: bool = False,
) -> dict[str, Any]:
    """POST to a token endpoint and return the JSON payload.

    Args:
        client: HTTP client
        provider: Provider display name for errors and logs
        url: Token endpoint
        json: JSON body
        data: Form body
        headers: Extra headers
        auth: Basic auth credentials, if the provider wants them
        refresh: Whether this is a refresh-token grant

    Returns:
        Token payload with an ``access_token``

    Raises:
        OAuthExchangeFailedError: Code exchange rejected
        OAuthRefreshFailedError: Refresh rejected
    """
    error_cls = OAuthRefreshFailedError if refresh else OAuthExchangeFailedError
    request_headers = {"Accept": "application/json"}
    if headers:
        request_headers.update(headers)

    try:
        response = await client.post(
            url,
            json=json,
            data=data,
            headers=request_headers,
            auth=auth,
        )
    except httpx.HTTPError as e:
        logger.warning("oauth_token_request_failed", provider=provider, refresh=refresh, error=str(e))
        raise error_cls(provider, str(e)) from e

    if response.is_error:
        message = _error_message(response)
        logger.warning(
            "oauth_token_request_rejected",
            provider=provider,
            refresh=refresh,
            status_code=response.status_code,
            error=message,
        )
        raise error_cls(provider, message)

    try:
        payload = response.json()
    except ValueError as e:
        raise error_cls(provider, "Token endpoint returned invalid JSON") from e

    if not isinstance(payload, dict):
        raise error_cls(provider, "Token endpoint returned an unexpected payload")
    if payload.get("error"):
        message = payload.get("error_description") or payload["error"]
        logger.warning("oauth_token_payload_error", provider=provider, refresh=refresh, error=message)
        raise error_cls(provider, str(message))
    if not payload.get("access_token"):
        raise error_cls(provider, f"No access token received from {provider}")

    return payload
