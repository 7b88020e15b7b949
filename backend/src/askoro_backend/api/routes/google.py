"""Google Drive folder browsing and selection."""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...db.postgres import ConnectionStore
from ...sync.google_drive_connector import (
    ALL_FOLDERS_NAME,
    ROOT_FOLDER_ID,
    GoogleDriveConnector,
    folder_url,
)
from ...sync.models import ConnectionAuth, GoogleDriveAuth, ProviderTag
from ..dependencies import ConnectorFactory, get_connection_store, get_connector_factory, get_current_user_id
from ..utils import is_absolute_url, parse_json_body

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/google", tags=["google"])

ALL_FOLDERS_ID = "all"
DEFAULT_FOLDER_NAME = "Selected Folder"


class SelectFolderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    folder_id: Optional[str] = Field(default=None, alias="folderId", min_length=1)
    folder_name: Optional[str] = Field(default=None, alias="folderName")
    folder_url: Optional[str] = Field(default=None, alias="folderUrl")

    @field_validator("folder_url")
    @classmethod
    def validate_folder_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_absolute_url(value):
            raise ValueError("folderUrl must be a valid URL")
        return value


@router.get("/folders")
async def list_folders(
    user_id: str = Depends(get_current_user_id),
    connection_store: ConnectionStore = Depends(get_connection_store),
    connector_factory: ConnectorFactory = Depends(get_connector_factory),
) -> dict[str, Any]:
    """List the Drive folders visible through the user's first Google Drive Connection."""
    connection = await connection_store.get_first_connection(user_id, ProviderTag.GOOGLE_DRIVE)
    if connection is None or connection.auth is None:
        raise HTTPException(status_code=404, detail="Google Drive not authenticated")
    auth = connection.auth
    if not isinstance(auth, GoogleDriveAuth) or auth.tokens is None:
        raise HTTPException(status_code=404, detail="No Google Drive tokens found")

    connector = connector_factory(ProviderTag.GOOGLE_DRIVE)
    if not isinstance(connector, GoogleDriveConnector):
        raise HTTPException(status_code=500, detail="Google Drive connector unavailable")

    async def persist_auth(updated: ConnectionAuth) -> None:
        connection.auth = updated
        await connection_store.update_connection(connection.id, auth=updated)

    auth = await connector.ensure_credentials(auth, persist_auth)
    folders = await connector.list_folders(auth)
    logger.info("google_drive_folders_listed", user_id=user_id, count=len(folders))
    return {"folders": [folder.to_dict() for folder in folders]}


@router.post("/select-folder")
async def select_folder(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    connection_store: ConnectionStore = Depends(get_connection_store),
) -> dict[str, Any]:
    """Point the user's Google Drive Connection at one folder, or the whole drive."""
    body = await parse_json_body(request, SelectFolderRequest, allow_empty=True)

    connection = await connection_store.get_first_connection(user_id, ProviderTag.GOOGLE_DRIVE)
    if connection is None or connection.auth is None:
        raise HTTPException(status_code=404, detail="Google Drive data source not found")

    if not body.folder_id or body.folder_id == ALL_FOLDERS_ID:
        root_folder_url = ROOT_FOLDER_ID
        folder_name = ALL_FOLDERS_NAME
    else:
        root_folder_url = body.folder_url or folder_url(body.folder_id)
        folder_name = body.folder_name or DEFAULT_FOLDER_NAME

    auth = connection.auth.merged(
        root_folder_url=root_folder_url,
        folder_name=folder_name,
        needs_folder_selection=False,
    )
    await connection_store.update_connection(connection.id, auth=auth)
    logger.info(
        "google_drive_folder_selected",
        user_id=user_id,
        connection_id=connection.id,
        root_folder_url=root_folder_url,
    )
    return {"success": True, "rootFolderUrl": root_folder_url, "folderName": folder_name}
