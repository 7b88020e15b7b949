"""Provider content sync.

Connectors for GitHub, Confluence, Notion and Google Drive share one
capability set (``BaseConnector``) and are driven by ``SyncOrchestrator``
in ``askoro_backend.sync.manager``.
"""

from .base import BaseConnector
from .content_store import ContentStore, build_object_key
from .models import (
    Connection,
    ConnectionAuth,
    FetchedDocument,
    ProviderTag,
    RemoteDocument,
    SyncResult,
)
from .state import StatePayload, decode_state, encode_state, generate_nonce

__all__ = [
    # Models
    "ProviderTag",
    "Connection",
    "ConnectionAuth",
    "RemoteDocument",
    "FetchedDocument",
    "SyncResult",
    # Base
    "BaseConnector",
    # Storage
    "ContentStore",
    "build_object_key",
    # OAuth state
    "StatePayload",
    "encode_state",
    "decode_state",
    "generate_nonce",
]
