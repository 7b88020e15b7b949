"""Manual sync endpoints, one per provider with implemented sync."""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from ...core.errors import AppError, ValidationError
from ...sync.models import PROVIDER_SEGMENTS, ProviderTag
from ..dependencies import OrchestratorFactory, get_current_user_id, get_orchestrator_factory

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])

SEGMENT_PROVIDERS: dict[str, ProviderTag] = {
    segment: provider for provider, segment in PROVIDER_SEGMENTS.items()
}


async def _read_root_folder_url(request: Request) -> Optional[str]:
    try:
        payload = await request.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    value = payload.get("rootFolderUrl")
    return value if isinstance(value, str) and value else None


@router.post("/{segment}")
async def sync_provider(
    segment: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    orchestrator_factory: OrchestratorFactory = Depends(get_orchestrator_factory),
) -> dict[str, Any]:
    """
    Sync a Connection's documents into the knowledge-base bucket.

    Returns:
        ``{"success": true, "synced", "skipped", "errors"}``
    """
    provider = SEGMENT_PROVIDERS.get(segment)
    if provider is None:
        raise HTTPException(status_code=404, detail="Not Found")

    root_folder_url = await _read_root_folder_url(request)
    if root_folder_url is None:
        raise ValidationError("rootFolderUrl is required")

    logger.info(
        "sync_requested",
        provider=provider.value,
        user_id=user_id,
        root_folder_url=root_folder_url,
    )
    orchestrator = orchestrator_factory(provider)
    try:
        result = await orchestrator.sync(user_id, root_folder_url)
    except AppError:
        raise
    except Exception as e:
        logger.error("sync_request_failed", provider=provider.value, user_id=user_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e) or f"Failed to sync {segment}") from e

    return {"success": True, **result.to_dict()}
