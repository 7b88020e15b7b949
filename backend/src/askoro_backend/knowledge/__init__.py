"""Knowledge-base query client."""

from .bedrock import KnowledgeBaseClient, create_bedrock_client, parse_s3_uri

__all__ = [
    "KnowledgeBaseClient",
    "create_bedrock_client",
    "parse_s3_uri",
]
