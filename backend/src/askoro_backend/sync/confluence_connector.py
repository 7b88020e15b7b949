"""Atlassian Confluence sync connector.

Lists pages of a Confluence Cloud site (optionally one space) through the
Atlassian API gateway and stores each page's exported HTML.
"""

import re
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import ValidationError as PydanticValidationError

from ..core.errors import NotConfiguredError, OAuthExchangeFailedError, OAuthRefreshFailedError
from .base import AuthUpdatedCallback, BaseConnector
from .models import (
    ConfluenceAuth,
    ConfluenceTokens,
    FetchedDocument,
    ProviderTag,
    RemoteDocument,
)
from .oauth import post_token_request

ATLASSIAN_TOKEN_ENDPOINT = "https://auth.atlassian.com/oauth/token"
ACCESSIBLE_RESOURCES_URL = "https://api.atlassian.com/oauth/token/accessible-resources"
CONFLUENCE_API_BASE = "https://api.atlassian.com/ex/confluence"

PAGE_SIZE = 100
LIST_EXPAND = "body.export_view,version,space,history"
FETCH_EXPAND = "body.export_view,version,space,_links"

_SPACE_PATTERN = re.compile(r"/spaces/([^/]+)")


@dataclass(frozen=True)
class ConfluenceLocator:
    site_base_url: str
    space_key: Optional[str] = None


@dataclass(frozen=True)
class AccessibleResource:
    """One Atlassian cloud site the token can reach."""

    id: str
    url: str
    name: str = ""
    scopes: tuple[str, ...] = ()


def parse_confluence_url(url: str) -> Optional[ConfluenceLocator]:
    """Return the site base URL and, for ``/spaces/{key}`` URLs, the space key."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    match = _SPACE_PATTERN.search(parsed.path)
    return ConfluenceLocator(
        site_base_url=f"{parsed.scheme}://{parsed.netloc}",
        space_key=match.group(1) if match else None,
    )


def select_resource(
    resources: list[AccessibleResource],
    site_base_url: Optional[str],
) -> Optional[AccessibleResource]:
    """Pick the resource for the requested site, else the first one."""
    if site_base_url:
        for resource in resources:
            if resource.url.startswith(site_base_url):
                return resource
    return resources[0] if resources else None


def _web_link(links: Optional[dict[str, Any]]) -> str:
    links = links or {}
    base = links.get("base")
    webui = links.get("webui")
    return f"{base}{webui}" if base and webui else ""


class ConfluenceConnector(BaseConnector[ConfluenceAuth, ConfluenceLocator]):
    """Sync connector for Confluence Cloud over OAuth 2.0 (3LO).

    Access tokens are short-lived; a listing auth failure is retried once
    after a refresh-token grant.
    """

    provider = ProviderTag.CONFLUENCE
    display_name = "Confluence"
    oauth_key = "confluence"
    supports_refresh = True

    def parse_locator(self, root_url: str) -> Optional[ConfluenceLocator]:
        return parse_confluence_url(root_url)

    @staticmethod
    def _headers(access_token: Optional[str]) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token or ''}",
            "Accept": "application/json",
        }

    def _content_url(self, cloud_id: str) -> str:
        return f"{CONFLUENCE_API_BASE}/{cloud_id}/wiki/rest/api/content"

    # OAuth

    async def exchange_code_for_tokens(self, code: str) -> ConfluenceTokens:
        client = await self._get_client()
        payload = await post_token_request(
            client,
            self.display_name,
            ATLASSIAN_TOKEN_ENDPOINT,
            json={
                "grant_type": "authorization_code",
                "client_id": self._oauth_app.client_id,
                "client_secret": self._oauth_app.client_secret,
                "code": code,
                "redirect_uri": self._oauth_app.redirect_uri,
            },
        )
        self._logger.info("confluence_token_exchanged")
        return ConfluenceTokens.model_validate(payload)

    async def refresh_tokens(self, refresh_token: str) -> ConfluenceTokens:
        """Exchange a refresh token for new tokens.

        Raises:
            OAuthRefreshFailedError: If Atlassian rejects the refresh or answers with malformed tokens
        """
        client = await self._get_client()
        payload = await post_token_request(
            client,
            self.display_name,
            ATLASSIAN_TOKEN_ENDPOINT,
            json={
                "grant_type": "refresh_token",
                "client_id": self._oauth_app.client_id,
                "client_secret": self._oauth_app.client_secret,
                "refresh_token": refresh_token,
                "redirect_uri": self._oauth_app.redirect_uri,
            },
            refresh=True,
        )
        try:
            tokens = ConfluenceTokens.model_validate(payload)
        except PydanticValidationError as e:
            raise OAuthRefreshFailedError(self.display_name, "malformed token response") from e
        self._logger.info("confluence_token_refreshed")
        return tokens

    async def get_accessible_resources(self, access_token: str) -> list[AccessibleResource]:
        """List the cloud sites reachable with ``access_token``.

        Raises:
            OAuthExchangeFailedError: If the resource listing is rejected
        """
        client = await self._get_client()
        response = await client.get(ACCESSIBLE_RESOURCES_URL, headers=self._headers(access_token))
        if response.is_error:
            raise OAuthExchangeFailedError(
                self.display_name,
                f"Failed to list accessible resources: HTTP {response.status_code}",
            )
        return [
            AccessibleResource(
                id=item["id"],
                url=item.get("url", ""),
                name=item.get("name", ""),
                scopes=tuple(item.get("scopes") or ()),
            )
            for item in response.json()
            if item.get("id")
        ]

    async def ensure_credentials(
        self,
        auth: ConfluenceAuth,
        on_auth_updated: AuthUpdatedCallback,
    ) -> ConfluenceAuth:
        self.require_tokens(auth)
        if not auth.cloud_id or not auth.site_base_url:
            raise NotConfiguredError(self.display_name, "missing cloud info")
        return auth

    async def refresh_auth(self, auth: ConfluenceAuth) -> ConfluenceAuth:
        """Return auth with refreshed tokens merged over the stored ones.

        Raises:
            OAuthRefreshFailedError: If there is no refresh token or the grant fails
        """
        tokens = auth.tokens or ConfluenceTokens()
        if not tokens.refresh_token:
            raise OAuthRefreshFailedError(self.display_name, "no refresh token available")
        refreshed = await self.refresh_tokens(tokens.refresh_token)
        return auth.merged(tokens=tokens.merged(refreshed))

    # Listing and fetching

    async def list_documents(
        self,
        auth: ConfluenceAuth,
        locator: Optional[ConfluenceLocator],
    ) -> list[RemoteDocument]:
        """Page through the content API until a short page is returned."""
        client = await self._get_client()
        access_token = auth.tokens.access_token if auth.tokens else None
        space_key = locator.space_key if locator else None

        params: dict[str, Any] = {"expand": LIST_EXPAND, "limit": PAGE_SIZE, "type": "page"}
        if space_key:
            params["spaceKey"] = space_key

        documents: list[RemoteDocument] = []
        start = 0
        while True:
            response = await client.get(
                self._content_url(auth.cloud_id or ""),
                headers=self._headers(access_token),
                params={**params, "start": start},
            )
            self._raise_for_list_status(response, "list content")
            data = response.json()

            for item in data.get("results", []):
                documents.append(
                    RemoteDocument(
                        id=str(item["id"]),
                        name=item.get("title") or str(item["id"]),
                        permalink=_web_link(item.get("_links")) or None,
                    )
                )

            size = int(data.get("size", 0))
            limit = int(data.get("limit", PAGE_SIZE))
            if size < limit or limit <= 0:
                break
            start = int(data.get("start", start)) + limit

        self._logger.info(
            "confluence_pages_listed",
            cloud_id=auth.cloud_id,
            space_key=space_key,
            count=len(documents),
        )
        return documents

    async def fetch_document(
        self,
        auth: ConfluenceAuth,
        document: RemoteDocument,
        locator: Optional[ConfluenceLocator],
    ) -> FetchedDocument:
        """Fetch a page's export-view HTML."""
        client = await self._get_client()
        response = await client.get(
            f"{self._content_url(auth.cloud_id or '')}/{document.id}",
            headers=self._headers(auth.tokens.access_token if auth.tokens else None),
            params={"expand": FETCH_EXPAND},
        )
        response.raise_for_status()
        data = response.json()

        html = ((data.get("body") or {}).get("export_view") or {}).get("value") or ""
        return FetchedDocument(
            body=html.encode("utf-8"),
            content_type="text/html",
            permalink=_web_link(data.get("_links")) or document.permalink,
        )

    # Storage layout

    def object_identity(self, document: RemoteDocument) -> str:
        return f"{document.id}.html"

    def build_metadata(
        self,
        document: RemoteDocument,
        fetched: FetchedDocument,
        auth: ConfluenceAuth,
        locator: Optional[ConfluenceLocator],
    ) -> dict[str, Any]:
        permalink = document.permalink or f"{auth.site_base_url}/wiki/spaces"
        return self._metadata(
            permalink,
            **{"page-id": document.id, "page-title": document.name},
        )
