"""Sync orchestrator for provider connectors.

One orchestrator drives any ``BaseConnector`` through the same steps:
load the Connection, ensure credentials, list, then dedupe, fetch and
upload each document, and finally record the sync time.
"""

import asyncio
from enum import Enum
from typing import Any, Optional

import httpx
import structlog

from ..config import Settings
from ..core.errors import (
    REQUIRES_AUTHENTICATION_MESSAGE,
    InvalidLocatorError,
    NotConfiguredError,
    OAuthRefreshFailedError,
    ProviderAuthError,
    ProviderListFailedError,
    RequiresAuthenticationError,
)
from ..db.postgres import ConnectionStore
from .base import AuthUpdatedCallback, BaseConnector
from .confluence_connector import ConfluenceConnector
from .content_store import ContentStore
from .github_connector import GitHubConnector
from .google_drive_connector import GoogleDriveConnector, GoogleOAuthClient
from .models import Connection, ConnectionAuth, ProviderTag, RemoteDocument, SyncResult
from .notion_connector import NotionConnector

logger = structlog.get_logger(__name__)

DEFAULT_MAX_CONCURRENCY = 1

# Connector class mapping
CONNECTOR_CLASSES: dict[ProviderTag, type[BaseConnector]] = {
    ProviderTag.GITHUB: GitHubConnector,
    ProviderTag.CONFLUENCE: ConfluenceConnector,
    ProviderTag.NOTION: NotionConnector,
    ProviderTag.GOOGLE_DRIVE: GoogleDriveConnector,
}


class DocumentOutcome(str, Enum):
    SYNCED = "synced"
    SKIPPED = "skipped"
    ERROR = "error"


class SyncOrchestrator:
    """Runs one sync of a Connection through its provider connector.

    Per-document failures are logged and counted; they never abort the run.

    Example:
        orchestrator = SyncOrchestrator(connector, connection_store, content_store)
        result = await orchestrator.sync(user_id, "https://github.com/acme/docs")
    """

    def __init__(
        self,
        connector: BaseConnector,
        connection_store: ConnectionStore,
        content_store: ContentStore,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            connector: Provider connector
            connection_store: Connection persistence
            content_store: Object-store gateway
            max_concurrency: Concurrent fetch/upload pairs (1 = sequential)
        """
        self._connector = connector
        self._connections = connection_store
        self._content = content_store
        self._max_concurrency = max(1, max_concurrency)
        self._logger = logger.bind(provider=connector.provider.value)

    @property
    def connector(self) -> BaseConnector:
        return self._connector

    async def sync(self, user_id: str, root_folder_url: str) -> SyncResult:
        """Sync every document under ``root_folder_url`` for ``user_id``.

        Returns:
            Counters for synced, skipped and failed documents

        Raises:
            InvalidLocatorError: Root URL unparseable and the provider needs a scope
            NotConfiguredError: No Connection, auth blob, or access token
            RequiresAuthenticationError: Credentials expired and refresh failed
            ProviderListFailedError: Listing failed
        """
        connector = self._connector
        log = self._logger.bind(user_id=user_id, root_folder_url=root_folder_url)

        locator = connector.parse_locator(root_folder_url)
        if locator is None and connector.locator_required:
            raise InvalidLocatorError(connector.display_name, root_folder_url)

        connection = await self._connections.get_connection(
            user_id, connector.provider, root_folder_url
        )
        if connection is None or connection.auth is None:
            raise NotConfiguredError(connector.display_name, "data source not found or not configured")

        log.info("sync_started", connection_id=connection.id)

        async def on_auth_updated(auth: ConnectionAuth) -> None:
            connection.auth = auth
            await self._connections.update_connection(connection.id, auth=auth)
            log.info("sync_credentials_persisted", connection_id=connection.id)

        auth = await connector.ensure_credentials(connection.auth, on_auth_updated)
        auth, documents = await self._list_documents(connection, auth, locator, on_auth_updated)
        log.info("sync_documents_listed", count=len(documents))

        outcomes = await self._sync_documents(user_id, auth, locator, documents)
        result = SyncResult(
            synced=outcomes.count(DocumentOutcome.SYNCED),
            skipped=outcomes.count(DocumentOutcome.SKIPPED),
            errors=outcomes.count(DocumentOutcome.ERROR),
        )

        await self._connections.touch_last_sync_time(connection.id)
        log.info(
            "sync_completed",
            connection_id=connection.id,
            synced=result.synced,
            skipped=result.skipped,
            errors=result.errors,
        )
        return result

    async def _list_once(self, auth: ConnectionAuth, locator: Any) -> list[RemoteDocument]:
        try:
            return await self._connector.list_documents(auth, locator)
        except httpx.HTTPError as e:
            raise ProviderListFailedError(self._connector.display_name, str(e)) from e

    async def _list_documents(
        self,
        connection: Connection,
        auth: ConnectionAuth,
        locator: Any,
        on_auth_updated: AuthUpdatedCallback,
    ) -> tuple[ConnectionAuth, list[RemoteDocument]]:
        """List documents, refreshing credentials once on an auth failure."""
        connector = self._connector
        try:
            return auth, await self._list_once(auth, locator)
        except ProviderAuthError as e:
            if not connector.supports_refresh:
                raise
            self._logger.info("sync_listing_unauthorized", connection_id=connection.id, error=str(e))

        try:
            auth = await connector.refresh_auth(auth)
            await on_auth_updated(auth)
            documents = await self._list_once(auth, locator)
        except (OAuthRefreshFailedError, ProviderListFailedError) as e:
            self._logger.error(
                "sync_requires_authentication",
                connection_id=connection.id,
                error=str(e),
            )
            await self._connections.mark_sync_failed(connection, REQUIRES_AUTHENTICATION_MESSAGE)
            raise RequiresAuthenticationError(
                connector.display_name, connector.start_endpoint
            ) from e
        return auth, documents

    async def _sync_documents(
        self,
        user_id: str,
        auth: ConnectionAuth,
        locator: Any,
        documents: list[RemoteDocument],
    ) -> list[DocumentOutcome]:
        if self._max_concurrency == 1:
            return [
                await self._sync_document(user_id, auth, locator, document)
                for document in documents
            ]

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(document: RemoteDocument) -> DocumentOutcome:
            async with semaphore:
                return await self._sync_document(user_id, auth, locator, document)

        return list(await asyncio.gather(*(_bounded(document) for document in documents)))

    async def _sync_document(
        self,
        user_id: str,
        auth: ConnectionAuth,
        locator: Any,
        document: RemoteDocument,
    ) -> DocumentOutcome:
        connector = self._connector
        if connector.should_skip(document):
            self._logger.debug(
                "document_skipped_unsupported",
                document_id=document.id,
                mime_type=document.mime_type,
            )
            return DocumentOutcome.SKIPPED

        key = connector.object_key(user_id, document)
        try:
            if await self._content.object_exists(key):
                self._logger.debug("document_already_synced", key=key)
                return DocumentOutcome.SKIPPED

            fetched = await connector.fetch_document(auth, document, locator)
            metadata = connector.build_metadata(document, fetched, auth, locator)
            await self._content.upload(key, fetched.body, fetched.content_type, metadata)
        except Exception as e:
            self._logger.warning(
                "document_sync_failed",
                document_id=document.id,
                document_name=document.name,
                key=key,
                error=str(e),
            )
            return DocumentOutcome.ERROR

        self._logger.debug("document_synced", key=key)
        return DocumentOutcome.SYNCED


def create_connector(
    provider: ProviderTag,
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> BaseConnector:
    """Build the connector for a provider from settings.

    Raises:
        ValueError: If the provider has no sync implementation
    """
    connector_class = CONNECTOR_CLASSES.get(provider)
    if connector_class is None:
        raise ValueError(f"No sync connector for provider {provider.value}")

    oauth_app = settings.oauth_app(connector_class.oauth_key)
    if connector_class is GoogleDriveConnector:
        oauth_client = GoogleOAuthClient(oauth_app, http_client) if http_client is not None else None
        return GoogleDriveConnector(
            oauth_app,
            client=http_client,
            timeout=settings.http_timeout_seconds,
            oauth_client=oauth_client,
        )
    return connector_class(oauth_app, client=http_client, timeout=settings.http_timeout_seconds)


def create_sync_orchestrator(
    provider: ProviderTag,
    settings: Settings,
    connection_store: ConnectionStore,
    content_store: ContentStore,
    http_client: Optional[httpx.AsyncClient] = None,
) -> SyncOrchestrator:
    """Factory function to create a configured SyncOrchestrator."""
    return SyncOrchestrator(
        create_connector(provider, settings, http_client),
        connection_store,
        content_store,
        max_concurrency=settings.sync_max_concurrency,
    )


async def run_background_sync(
    orchestrator: SyncOrchestrator,
    connection_store: ConnectionStore,
    user_id: str,
    root_folder_url: str,
    failure_message: Optional[str] = None,
) -> Optional[SyncResult]:
    """Run a sync detached from the request that started it.

    Failures are logged and the Connection is marked failed; nothing is raised.
    """
    provider = orchestrator.connector.provider
    try:
        return await orchestrator.sync(user_id, root_folder_url)
    except Exception as e:
        logger.error(
            "background_sync_failed",
            provider=provider.value,
            user_id=user_id,
            error=str(e),
        )

    try:
        connection = await connection_store.get_connection(user_id, provider, root_folder_url)
        if connection is not None:
            await connection_store.mark_sync_failed(connection, failure_message)
    except Exception as e:
        logger.warning(
            "background_sync_mark_failed_error",
            provider=provider.value,
            user_id=user_id,
            error=str(e),
        )
    return None
