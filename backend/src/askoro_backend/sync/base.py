"""Base connector interface for provider content sync.

Every provider with implemented sync provides the same capability set:
locator parsing, credential checks, listing, fetching, and the rules that
turn a listed document into an object-store key and metadata. The
``SyncOrchestrator`` drives any connector through one shared loop.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import httpx
import structlog

from ..config import OAuthApp
from ..core.errors import NotConfiguredError, ProviderAuthError, ProviderListFailedError
from .content_store import PERMALINK_METADATA_KEY, build_object_key
from .models import (
    PROVIDER_SEGMENTS,
    ConnectionAuth,
    FetchedDocument,
    ProviderTag,
    ProviderTokens,
    RemoteDocument,
)

logger = structlog.get_logger(__name__)

AuthT = TypeVar("AuthT", bound=ConnectionAuth)
LocatorT = TypeVar("LocatorT")

AuthUpdatedCallback = Callable[[ConnectionAuth], Awaitable[None]]

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


class BaseConnector(ABC, Generic[AuthT, LocatorT]):
    """Abstract base class for provider connectors.

    Example:
        class MyConnector(BaseConnector[MyAuth, MyLocator]):
            provider = ProviderTag.GITHUB
            display_name = "GitHub"

            def parse_locator(self, root_url): ...
            async def list_documents(self, auth, locator): ...
            async def fetch_document(self, auth, document, locator): ...
            def object_identity(self, document): ...
            def build_metadata(self, document, fetched, auth, locator): ...
            async def exchange_code_for_tokens(self, code): ...
    """

    provider: ProviderTag
    display_name: str
    oauth_key: str
    # Whether listing auth failures may be retried once after a refresh
    supports_refresh: bool = False
    # Whether an unparseable root URL aborts the sync
    locator_required: bool = True

    def __init__(
        self,
        oauth_app: OAuthApp,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the connector.

        Args:
            oauth_app: OAuth registration for this provider
            client: Shared HTTP client; a private one is created lazily if omitted
            timeout: Timeout for the private client
        """
        self._oauth_app = oauth_app
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._logger = logger.bind(provider=self.provider.value)

    @property
    def segment(self) -> str:
        """Object-store key segment for this provider."""
        return PROVIDER_SEGMENTS[self.provider]

    @property
    def start_endpoint(self) -> str:
        return f"/api/v1/{self.oauth_key}/oauth/start"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this connector created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _raise_for_list_status(self, response: httpx.Response, operation: str) -> None:
        """Map a non-2xx listing response to the sync error taxonomy."""
        if not response.is_error:
            return
        reason = f"{operation} returned HTTP {response.status_code}"
        if response.status_code in (401, 403):
            raise ProviderAuthError(self.display_name, reason, response.status_code)
        raise ProviderListFailedError(self.display_name, reason, response.status_code)

    # Locator and credentials

    @abstractmethod
    def parse_locator(self, root_url: str) -> Optional[LocatorT]:
        """Parse a root-location URL; returns None instead of raising."""
        ...

    def require_tokens(self, auth: AuthT) -> ProviderTokens:
        """Return the stored tokens, or raise NotConfiguredError."""
        tokens = getattr(auth, "tokens", None)
        if tokens is None or not tokens.access_token:
            raise NotConfiguredError(self.display_name, "missing access token")
        return tokens

    async def ensure_credentials(
        self,
        auth: AuthT,
        on_auth_updated: AuthUpdatedCallback,
    ) -> AuthT:
        """Return auth with a usable access token.

        Connectors whose tokens rotate transparently call ``on_auth_updated``
        with the new auth before returning it.
        """
        self.require_tokens(auth)
        return auth

    async def refresh_auth(self, auth: AuthT) -> AuthT:
        """Refresh the access token after a listing auth failure."""
        raise NotImplementedError(f"{self.display_name} does not support token refresh")

    @abstractmethod
    async def exchange_code_for_tokens(self, code: str) -> ProviderTokens:
        """Exchange an authorization code for tokens."""
        ...

    # Listing and fetching

    @abstractmethod
    async def list_documents(self, auth: AuthT, locator: Optional[LocatorT]) -> list[RemoteDocument]:
        """Return every document reachable under ``locator``, fully paged.

        Raises:
            ProviderListFailedError: On any non-2xx provider response
        """
        ...

    @abstractmethod
    async def fetch_document(
        self,
        auth: AuthT,
        document: RemoteDocument,
        locator: Optional[LocatorT],
    ) -> FetchedDocument:
        """Download one document's body."""
        ...

    def should_skip(self, document: RemoteDocument) -> bool:
        """Return True for documents that cannot be exported as raw bytes."""
        return False

    # Storage layout

    @abstractmethod
    def object_identity(self, document: RemoteDocument) -> str:
        """Stable per-provider identity used in the object key."""
        ...

    def object_key(self, user_id: str, document: RemoteDocument) -> str:
        return build_object_key(user_id, self.segment, self.object_identity(document))

    @abstractmethod
    def build_metadata(
        self,
        document: RemoteDocument,
        fetched: FetchedDocument,
        auth: AuthT,
        locator: Optional[LocatorT],
    ) -> dict[str, Any]:
        """Return object metadata, including the permalink and ``source`` tag."""
        ...

    def _metadata(self, permalink: Optional[str], **fields: Any) -> dict[str, Any]:
        metadata: dict[str, Any] = {}
        if permalink:
            metadata[PERMALINK_METADATA_KEY] = permalink
        metadata["source"] = self.segment
        metadata.update(fields)
        return metadata
