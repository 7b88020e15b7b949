"""Data models for provider content sync.

This module defines the provider tags, OAuth token payloads, the typed
per-provider auth blobs stored on a Connection, and the value objects that
flow between connectors and the sync orchestrator.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field


class ProviderTag(str, Enum):
    """Supported provider tags, as persisted in ``data_sources.data_source_type``."""

    CONFLUENCE = "CONFLUENCE"
    GITHUB = "GITHUB"
    GOOGLE_DRIVE = "GOOGLE_DRIVE"
    NOTION = "NOTION"
    ONEDRIVE = "ONEDRIVE"
    QUIP = "QUIP"


# Object-store key segment per provider with implemented sync
PROVIDER_SEGMENTS: dict[ProviderTag, str] = {
    ProviderTag.CONFLUENCE: "confluence",
    ProviderTag.GITHUB: "github",
    ProviderTag.GOOGLE_DRIVE: "google-drive",
    ProviderTag.NOTION: "notion",
}

SyncStatusValue = Literal["success", "failed"]


# OAuth token payloads


class ProviderTokens(BaseModel):
    """Common token fields; provider-specific extras are preserved."""

    model_config = ConfigDict(extra="allow")

    access_token: Optional[str] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None


class GitHubTokens(ProviderTokens):
    """GitHub OAuth app tokens (no refresh support)."""


class ConfluenceTokens(ProviderTokens):
    """Atlassian 3LO tokens."""

    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None

    def merged(self, refreshed: "ConfluenceTokens") -> "ConfluenceTokens":
        """Overlay refreshed tokens, keeping the old refresh token when none is rotated."""
        data = self.model_dump(exclude_none=True)
        data.update(refreshed.model_dump(exclude_none=True))
        return ConfluenceTokens.model_validate(data)


class NotionTokens(ProviderTokens):
    """Notion integration tokens with workspace identity."""

    bot_id: Optional[str] = None
    workspace_id: Optional[str] = None
    workspace_name: Optional[str] = None
    workspace_icon: Optional[str] = None
    owner: Optional[dict[str, Any]] = None


class GoogleTokens(ProviderTokens):
    """Google OAuth tokens; ``expiry_date`` is epoch milliseconds."""

    refresh_token: Optional[str] = None
    expiry_date: Optional[int] = None
    id_token: Optional[str] = None


# Auth blobs (one variant per provider)

AuthT = TypeVar("AuthT", bound="ConnectionAuth")


class ConnectionAuth(BaseModel):
    """Fields shared by every provider's auth blob.

    Stored as JSON using the camelCase aliases so existing rows stay readable.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    state: Optional[str] = None
    nonce: Optional[str] = None
    root_folder_url: Optional[str] = Field(default=None, alias="rootFolderUrl")
    last_sync_status: Optional[SyncStatusValue] = Field(default=None, alias="lastSyncStatus")
    last_sync_message: Optional[str] = Field(default=None, alias="lastSyncMessage")

    def merged(self: AuthT, **changes: Any) -> AuthT:
        """Return a copy with ``changes`` applied.

        Only fields declared on this variant may be updated.

        Raises:
            ValueError: If a change names an unknown field
        """
        known = type(self).model_fields
        unknown = sorted(name for name in changes if name not in known)
        if unknown:
            raise ValueError(
                f"Unknown {type(self).__name__} fields: {', '.join(unknown)}"
            )
        data = {name: getattr(self, name) for name in known}
        data.update(changes)
        return type(self).model_validate(data)

    def to_json(self) -> dict[str, Any]:
        """Serialize for the JSONB ``auth`` column."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class GitHubAuth(ConnectionAuth):
    tokens: Optional[GitHubTokens] = None


class ConfluenceAuth(ConnectionAuth):
    tokens: Optional[ConfluenceTokens] = None
    cloud_id: Optional[str] = Field(default=None, alias="cloudId")
    site_base_url: Optional[str] = Field(default=None, alias="siteBaseUrl")


class NotionAuth(ConnectionAuth):
    tokens: Optional[NotionTokens] = None


class GoogleDriveAuth(ConnectionAuth):
    tokens: Optional[GoogleTokens] = None
    folder_name: Optional[str] = Field(default=None, alias="folderName")
    needs_folder_selection: Optional[bool] = Field(default=None, alias="needsFolderSelection")


class PendingAuth(ConnectionAuth):
    """Providers whose flow stops after recording the authorize request."""


AUTH_MODELS: dict[ProviderTag, type[ConnectionAuth]] = {
    ProviderTag.CONFLUENCE: ConfluenceAuth,
    ProviderTag.GITHUB: GitHubAuth,
    ProviderTag.GOOGLE_DRIVE: GoogleDriveAuth,
    ProviderTag.NOTION: NotionAuth,
    ProviderTag.ONEDRIVE: PendingAuth,
    ProviderTag.QUIP: PendingAuth,
}


def parse_auth(provider: ProviderTag, raw: Optional[dict[str, Any]]) -> Optional[ConnectionAuth]:
    """Decode a stored auth blob into the provider's variant."""
    if raw is None:
        return None
    return AUTH_MODELS[provider].model_validate(raw)


# Connection record


@dataclass
class Connection:
    """One row of the ``data_sources`` table.

    Attributes:
        id: Row identifier
        user_id: Owning user
        provider: Provider tag
        auth: Typed auth blob (None when the row has no auth)
        last_sync_time: Most recent completed sync attempt
        created_at: Row creation time
    """

    id: str
    user_id: str
    provider: ProviderTag
    auth: Optional[ConnectionAuth] = None
    last_sync_time: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def root_folder_url(self) -> Optional[str]:
        return self.auth.root_folder_url if self.auth else None


# Sync value objects


@dataclass
class RemoteDocument:
    """A document reachable under a locator, as returned by a lister.

    Attributes:
        id: Provider identity (page id, file id, or repository path)
        name: Display name or title
        permalink: Provider-native URL, if known
        mime_type: Provider-reported MIME type, if any
        metadata: Provider-specific identifying fields
    """

    id: str
    name: str
    permalink: Optional[str] = None
    mime_type: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchedDocument:
    """Raw body of one document, ready for upload."""

    body: bytes
    content_type: str = "application/octet-stream"
    permalink: Optional[str] = None


@dataclass
class SyncResult:
    """Counters returned by a sync run."""

    synced: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"synced": self.synced, "skipped": self.skipped, "errors": self.errors}
