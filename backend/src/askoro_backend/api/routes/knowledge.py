"""Knowledge-base question answering endpoint."""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from slowapi import Limiter
from slowapi.util import get_remote_address

from ...config import get_settings
from ...knowledge.bedrock import KnowledgeBaseClient
from ..dependencies import get_knowledge_base
from ..utils import parse_json_body

logger = structlog.get_logger(__name__)

# Rate limiter instance - key function extracts client IP
limiter = Limiter(key_func=get_remote_address)

router = APIRouter(tags=["knowledge"])


def query_rate_limit() -> str:
    return f"{get_settings().rate_limit_per_minute}/minute"


class KnowledgeBaseQueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(..., min_length=1)
    session_id: Optional[str] = Field(default=None, alias="sessionId")


@router.post("/knowledge-base-query")
@limiter.limit(query_rate_limit)
async def query_knowledge_base(
    request: Request,
    knowledge_base: KnowledgeBaseClient = Depends(get_knowledge_base),
) -> dict[str, Any]:
    """
    Answer a question from the knowledge base.

    Returns:
        ``{"output": {"text"}, "citations", "sessionId"}``; citation
        references carry a ``sourceUrl`` when the stored object has one
    """
    body = await parse_json_body(request, KnowledgeBaseQueryRequest)
    logger.info("knowledge_base_query_requested", has_session=body.session_id is not None)
    return await knowledge_base.query(body.query, body.session_id)
