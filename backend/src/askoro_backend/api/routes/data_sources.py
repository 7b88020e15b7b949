"""Connection listing and removal."""

from typing import Any

import structlog
from fastapi import APIRouter, Depends

from ...db.postgres import ConnectionStore
from ...sync.models import Connection
from ..dependencies import get_connection_store, get_current_user_id

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/data-sources", tags=["data-sources"])


def serialize_connection(connection: Connection) -> dict[str, Any]:
    """Public view of a Connection; tokens are never returned."""
    auth = connection.auth
    return {
        "id": connection.id,
        "dataSourceType": connection.provider.value,
        "lastSyncTime": connection.last_sync_time.isoformat() if connection.last_sync_time else None,
        "rootFolderUrl": auth.root_folder_url if auth else None,
        "lastSyncStatus": auth.last_sync_status if auth else None,
        "lastSyncMessage": auth.last_sync_message if auth else None,
    }


@router.get("")
async def list_data_sources(
    user_id: str = Depends(get_current_user_id),
    connection_store: ConnectionStore = Depends(get_connection_store),
) -> dict[str, Any]:
    """List the user's Connections, newest first."""
    connections = await connection_store.list_connections(user_id)
    return {"dataSources": [serialize_connection(connection) for connection in connections]}


@router.delete("/{data_source_id}")
async def delete_data_source(
    data_source_id: str,
    user_id: str = Depends(get_current_user_id),
    connection_store: ConnectionStore = Depends(get_connection_store),
) -> dict[str, Any]:
    """Delete one of the user's Connections."""
    await connection_store.delete_connection(user_id, data_source_id)
    return {"success": True}
