"""Knowledge-base query client over Bedrock retrieve-and-generate.

Answers are passed through unchanged except that every retrieved reference
pointing at an S3 object gains a ``sourceUrl`` read from that object's
permalink metadata.
"""

import asyncio
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
import structlog

from ..core.errors import KnowledgeBaseError, StorageError
from ..sync.content_store import (
    LEGACY_PERMALINK_METADATA_KEY,
    PERMALINK_METADATA_KEY,
    ContentStore,
)

logger = structlog.get_logger(__name__)

S3_URI_SCHEME = "s3://"


def parse_s3_uri(uri: str) -> Optional[tuple[str, str]]:
    """Split ``s3://bucket/key`` into ``(bucket, key)``; None if malformed."""
    if not uri.startswith(S3_URI_SCHEME):
        return None
    bucket, sep, key = uri[len(S3_URI_SCHEME):].partition("/")
    if not sep or not bucket or not key:
        return None
    return bucket, key


def reference_uri(reference: dict[str, Any]) -> Optional[str]:
    """Return the S3 URI of a retrieved reference, if it has one."""
    location = reference.get("location") or {}
    return (location.get("s3Location") or {}).get("uri") or None


def create_bedrock_client(
    region_name: str,
    aws_access_key_id: Optional[str] = None,
    aws_secret_access_key: Optional[str] = None,
):
    """Build a boto3 bedrock-agent-runtime client."""
    kwargs: dict[str, Any] = {"region_name": region_name}
    if aws_access_key_id and aws_secret_access_key:
        kwargs["aws_access_key_id"] = aws_access_key_id
        kwargs["aws_secret_access_key"] = aws_secret_access_key
    return boto3.client("bedrock-agent-runtime", **kwargs)


class KnowledgeBaseClient:
    """
    Retrieve-and-generate passthrough with citation enrichment.

    Attributes:
        knowledge_base_id: Bedrock knowledge base queried
        model_arn: Foundation model generating the answer
    """

    def __init__(
        self,
        client: Any,
        content_store: ContentStore,
        knowledge_base_id: str,
        model_arn: str,
    ) -> None:
        self._client = client
        self._content = content_store
        self.knowledge_base_id = knowledge_base_id
        self.model_arn = model_arn

    async def query(self, text: str, session_id: Optional[str] = None) -> dict[str, Any]:
        """
        Ask the knowledge base a question.

        Args:
            text: The question
            session_id: Conversation session to continue, if any

        Returns:
            ``{"output": {"text"}, "citations", "sessionId"}``

        Raises:
            KnowledgeBaseError: If the service call fails
        """
        request: dict[str, Any] = {
            "input": {"text": text},
            "retrieveAndGenerateConfiguration": {
                "type": "KNOWLEDGE_BASE",
                "knowledgeBaseConfiguration": {
                    "knowledgeBaseId": self.knowledge_base_id,
                    "modelArn": self.model_arn,
                },
            },
        }
        if session_id:
            request["sessionId"] = session_id

        try:
            response = await asyncio.to_thread(self._client.retrieve_and_generate, **request)
        except (ClientError, BotoCoreError) as e:
            logger.error("knowledge_base_query_failed", error=str(e))
            raise KnowledgeBaseError(str(e)) from e

        citations = response.get("citations")
        enriched = await self.enrich_citations(citations) if citations else citations
        logger.info(
            "knowledge_base_query_completed",
            session_id=response.get("sessionId"),
            citation_count=len(citations or []),
        )
        return {
            "output": response.get("output"),
            "citations": enriched,
            "sessionId": response.get("sessionId"),
        }

    async def enrich_citations(self, citations: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Attach ``sourceUrl`` to every reference with an S3 location.

        Each distinct URI is resolved once per call.
        """
        uris = {
            uri
            for citation in citations
            for reference in citation.get("retrievedReferences") or []
            if (uri := reference_uri(reference))
        }
        ordered = sorted(uris)
        resolved = await asyncio.gather(*(self.resolve_source_url(uri) for uri in ordered))
        cache: dict[str, Optional[str]] = dict(zip(ordered, resolved))

        enriched: list[dict[str, Any]] = []
        for citation in citations:
            references = citation.get("retrievedReferences")
            if not references:
                enriched.append(citation)
                continue
            updated = []
            for reference in references:
                uri = reference_uri(reference)
                if uri is None:
                    updated.append(reference)
                else:
                    updated.append({**reference, "sourceUrl": cache.get(uri)})
            enriched.append({**citation, "retrievedReferences": updated})
        return enriched

    async def resolve_source_url(self, uri: str) -> Optional[str]:
        """Read the permalink stored on the object behind ``uri``."""
        parsed = parse_s3_uri(uri)
        if parsed is None:
            return None
        bucket, key = parsed
        try:
            metadata = await self._content.head_metadata(bucket, key)
        except StorageError as e:
            logger.warning("citation_metadata_lookup_failed", uri=uri, error=e.message)
            return None
        return metadata.get(PERMALINK_METADATA_KEY) or metadata.get(LEGACY_PERMALINK_METADATA_KEY)
