"""Google Drive sync connector.

Lists the files of one folder (or the whole drive) through the Drive v3 REST
API and downloads their raw bytes. Google Workspace formats (Docs, Sheets,
Slides) have no raw body and are skipped.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import parse_qs, urlparse

import httpx
import structlog
from google.auth import transport
from google.auth.exceptions import GoogleAuthError
from google.auth.transport import requests as google_requests
from google.oauth2.credentials import Credentials

from ..config import OAuthApp
from ..core.errors import OAuthRefreshFailedError
from .base import AuthUpdatedCallback, BaseConnector
from .models import (
    FetchedDocument,
    GoogleDriveAuth,
    GoogleTokens,
    ProviderTag,
    RemoteDocument,
)
from .oauth import post_token_request

logger = structlog.get_logger(__name__)

GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
DRIVE_FILES_URL = "https://www.googleapis.com/drive/v3/files"

ROOT_FOLDER_ID = "root"
ALL_FOLDERS_NAME = "All Folders"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
WORKSPACE_MIME_PREFIX = "application/vnd.google-apps."

FILE_FIELDS = "nextPageToken, files(id, name, mimeType, webViewLink)"
PAGE_SIZE = 1000

_FOLDER_PATH_PATTERN = re.compile(r"/folders/([A-Za-z0-9_-]+)")
_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

TokensUpdatedCallback = Callable[[GoogleTokens], Awaitable[None]]


@dataclass(frozen=True)
class DriveLocator:
    folder_id: str

    @property
    def is_root(self) -> bool:
        return self.folder_id == ROOT_FOLDER_ID


@dataclass(frozen=True)
class DriveFolder:
    id: str
    name: str
    web_view_link: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "webViewLink": self.web_view_link}


def parse_drive_folder_url(url: str) -> Optional[DriveLocator]:
    """Resolve a folder URL, ``?id=`` link, or the literal ``"root"``."""
    if url == ROOT_FOLDER_ID:
        return DriveLocator(folder_id=ROOT_FOLDER_ID)
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None

    match = _FOLDER_PATH_PATTERN.search(parsed.path)
    if match:
        return DriveLocator(folder_id=match.group(1))

    ids = parse_qs(parsed.query).get("id")
    if ids and _ID_PATTERN.match(ids[0]):
        return DriveLocator(folder_id=ids[0])
    return None


def folder_url(folder_id: str) -> str:
    return f"https://drive.google.com/drive/folders/{folder_id}"


def files_query(locator: Optional[DriveLocator]) -> str:
    """Drive search query for the locator; the root has no parent filter."""
    if locator is None or locator.is_root:
        return "trashed = false"
    folder_id = locator.folder_id.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{folder_id}' in parents and trashed = false"


class GoogleOAuthClient:
    """Google OAuth 2.0 token client.

    The code exchange goes through the shared token POST; refreshing is left to
    google-auth ``Credentials``, whose blocking grant runs on a worker thread.
    Constructed once per application and passed to the connector, so tests can
    substitute their own transports or clock.
    """

    def __init__(
        self,
        oauth_app: OAuthApp,
        client: httpx.AsyncClient,
        token_request: Optional[transport.Request] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._oauth_app = oauth_app
        self._client = client
        self._token_request = token_request
        self._clock = clock

    def _get_token_request(self) -> transport.Request:
        if self._token_request is None:
            self._token_request = google_requests.Request()
        return self._token_request

    def _tokens_from_payload(self, payload: dict[str, Any]) -> GoogleTokens:
        data = dict(payload)
        expires_in = data.pop("expires_in", None)
        if expires_in is not None:
            data["expiry_date"] = int(self._clock() * 1000) + int(expires_in) * 1000
        return GoogleTokens.model_validate(data)

    async def exchange_code(self, code: str) -> GoogleTokens:
        payload = await post_token_request(
            self._client,
            "Google",
            GOOGLE_TOKEN_ENDPOINT,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self._oauth_app.client_id,
                "client_secret": self._oauth_app.client_secret,
                "redirect_uri": self._oauth_app.redirect_uri,
            },
        )
        return self._tokens_from_payload(payload)

    def credentials(self, tokens: GoogleTokens) -> Credentials:
        """Build google-auth credentials from stored tokens."""
        expiry = None
        if tokens.expiry_date is not None:
            # google-auth compares naive UTC datetimes
            expiry = datetime.fromtimestamp(tokens.expiry_date / 1000, tz=timezone.utc).replace(tzinfo=None)
        return Credentials(
            token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            id_token=tokens.id_token,
            token_uri=GOOGLE_TOKEN_ENDPOINT,
            client_id=self._oauth_app.client_id,
            client_secret=self._oauth_app.client_secret,
            expiry=expiry,
        )

    @staticmethod
    def _tokens_from_credentials(tokens: GoogleTokens, credentials: Credentials) -> GoogleTokens:
        data = tokens.model_dump(exclude_none=True)
        data["access_token"] = credentials.token
        if credentials.refresh_token:
            data["refresh_token"] = credentials.refresh_token
        if credentials.id_token:
            data["id_token"] = credentials.id_token
        if credentials.expiry is not None:
            data["expiry_date"] = int(credentials.expiry.replace(tzinfo=timezone.utc).timestamp() * 1000)
        return GoogleTokens.model_validate(data)

    async def get_access_token(self, tokens: GoogleTokens) -> GoogleTokens:
        """Return tokens holding a live access token, refreshing when needed.

        Raises:
            OAuthRefreshFailedError: If the token is stale and cannot be refreshed
        """
        credentials = self.credentials(tokens)
        if credentials.valid:
            return tokens
        if not tokens.refresh_token:
            raise OAuthRefreshFailedError("Google", "access token expired and no refresh token is stored")

        try:
            await asyncio.to_thread(credentials.refresh, self._get_token_request())
        except GoogleAuthError as e:
            raise OAuthRefreshFailedError("Google", str(e)) from e
        logger.info("google_token_refreshed")
        return self._tokens_from_credentials(tokens, credentials)

    async def ensure_access_token(
        self,
        tokens: GoogleTokens,
        on_tokens_updated: TokensUpdatedCallback,
    ) -> GoogleTokens:
        """Like ``get_access_token``, reporting rotated tokens to ``on_tokens_updated`` first."""
        current = await self.get_access_token(tokens)
        if current.access_token != tokens.access_token:
            await on_tokens_updated(current)
        return current


class GoogleDriveConnector(BaseConnector[GoogleDriveAuth, DriveLocator]):
    """Sync connector for Google Drive.

    An unparseable root URL falls back to the whole drive.
    """

    provider = ProviderTag.GOOGLE_DRIVE
    display_name = "Google Drive"
    oauth_key = "google"
    locator_required = False

    def __init__(
        self,
        oauth_app: OAuthApp,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        oauth_client: Optional[GoogleOAuthClient] = None,
    ) -> None:
        super().__init__(oauth_app, client=client, timeout=timeout)
        self._oauth_client = oauth_client

    async def _get_oauth_client(self) -> GoogleOAuthClient:
        if self._oauth_client is None:
            self._oauth_client = GoogleOAuthClient(self._oauth_app, await self._get_client())
        return self._oauth_client

    def parse_locator(self, root_url: str) -> Optional[DriveLocator]:
        return parse_drive_folder_url(root_url)

    @staticmethod
    def _headers(tokens: Optional[GoogleTokens]) -> dict[str, str]:
        return {"Authorization": f"Bearer {tokens.access_token if tokens else ''}"}

    async def exchange_code_for_tokens(self, code: str) -> GoogleTokens:
        oauth_client = await self._get_oauth_client()
        tokens = await oauth_client.exchange_code(code)
        self._logger.info("google_token_exchanged", has_refresh_token=bool(tokens.refresh_token))
        return tokens

    async def ensure_credentials(
        self,
        auth: GoogleDriveAuth,
        on_auth_updated: AuthUpdatedCallback,
    ) -> GoogleDriveAuth:
        """Return auth with a live access token, persisting rotated tokens."""
        self.require_tokens(auth)
        oauth_client = await self._get_oauth_client()
        updated = auth

        async def _persist(tokens: GoogleTokens) -> None:
            nonlocal updated
            updated = auth.merged(tokens=tokens)
            await on_auth_updated(updated)

        await oauth_client.ensure_access_token(auth.tokens, _persist)
        return updated

    async def _list_files(self, tokens: Optional[GoogleTokens], query: str, operation: str, **params: Any) -> list[dict]:
        client = await self._get_client()
        files: list[dict] = []
        page_token: Optional[str] = None
        while True:
            request_params: dict[str, Any] = {
                "q": query,
                "fields": FILE_FIELDS,
                "pageSize": PAGE_SIZE,
                "supportsAllDrives": "true",
                "includeItemsFromAllDrives": "true",
                **params,
            }
            if page_token:
                request_params["pageToken"] = page_token
            response = await client.get(
                DRIVE_FILES_URL,
                headers=self._headers(tokens),
                params=request_params,
            )
            self._raise_for_list_status(response, operation)
            data = response.json()
            files.extend(data.get("files", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return files

    async def list_folders(self, auth: GoogleDriveAuth) -> list[DriveFolder]:
        """List every non-trashed folder, sorted by name."""
        files = await self._list_files(
            auth.tokens,
            f"mimeType = '{FOLDER_MIME_TYPE}' and trashed = false",
            "list folders",
            orderBy="name",
        )
        return [
            DriveFolder(id=item["id"], name=item.get("name", ""), web_view_link=item.get("webViewLink"))
            for item in files
            if item.get("id")
        ]

    async def list_documents(
        self,
        auth: GoogleDriveAuth,
        locator: Optional[DriveLocator],
    ) -> list[RemoteDocument]:
        files = await self._list_files(auth.tokens, files_query(locator), "list files")
        documents = [
            RemoteDocument(
                id=item["id"],
                name=item["name"],
                permalink=item.get("webViewLink"),
                mime_type=item.get("mimeType"),
            )
            for item in files
            if item.get("id") and item.get("name")
        ]
        self._logger.info(
            "google_drive_files_listed",
            folder_id=locator.folder_id if locator else ROOT_FOLDER_ID,
            count=len(documents),
        )
        return documents

    def should_skip(self, document: RemoteDocument) -> bool:
        return bool(document.mime_type and document.mime_type.startswith(WORKSPACE_MIME_PREFIX))

    async def fetch_document(
        self,
        auth: GoogleDriveAuth,
        document: RemoteDocument,
        locator: Optional[DriveLocator],
    ) -> FetchedDocument:
        client = await self._get_client()
        response = await client.get(
            f"{DRIVE_FILES_URL}/{document.id}",
            headers=self._headers(auth.tokens),
            params={"alt": "media", "supportsAllDrives": "true"},
        )
        response.raise_for_status()
        return FetchedDocument(
            body=response.content,
            content_type=document.mime_type or "application/octet-stream",
            permalink=document.permalink,
        )

    def object_identity(self, document: RemoteDocument) -> str:
        return f"{document.id}/{document.name}"

    def build_metadata(
        self,
        document: RemoteDocument,
        fetched: FetchedDocument,
        auth: GoogleDriveAuth,
        locator: Optional[DriveLocator],
    ) -> dict[str, Any]:
        return self._metadata(document.permalink, **{"file-id": document.id})
