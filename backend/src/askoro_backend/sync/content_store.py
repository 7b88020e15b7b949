"""Content store gateway over the knowledge-base S3 bucket.

Object existence under a key is the sync dedupe signal, so keys must be
derived with ``build_object_key`` on every run.
"""

import asyncio
from typing import Any, Optional
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError
import structlog

from ..core.errors import StorageError

logger = structlog.get_logger(__name__)

# Metadata field holding the provider permalink for every stored object
PERMALINK_METADATA_KEY = "quip-url"
LEGACY_PERMALINK_METADATA_KEY = "source-url"

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def build_object_key(user_id: str, segment: str, identity: str) -> str:
    """Return ``{user_id}/{segment}/{identity}``."""
    return f"{user_id}/{segment}/{identity}"


def encode_metadata(metadata: dict[str, Any]) -> dict[str, str]:
    """Coerce metadata to the ASCII strings S3 accepts.

    None values are dropped and non-ASCII values are percent-encoded.
    """
    encoded: dict[str, str] = {}
    for name, value in metadata.items():
        if value is None:
            continue
        text = str(value)
        if not text.isascii():
            text = quote(text, safe=" /:?&=#%+-_.,~()'")
        encoded[name] = text
    return encoded


def create_s3_client(
    region_name: str,
    aws_access_key_id: Optional[str] = None,
    aws_secret_access_key: Optional[str] = None,
):
    """Build a boto3 S3 client, using static credentials only when both are set."""
    kwargs: dict[str, Any] = {"region_name": region_name}
    if aws_access_key_id and aws_secret_access_key:
        kwargs["aws_access_key_id"] = aws_access_key_id
        kwargs["aws_secret_access_key"] = aws_secret_access_key
    return boto3.client("s3", **kwargs)


class ContentStore:
    """Put/head access to the knowledge-base bucket.

    boto3 is synchronous, so every call runs in a worker thread.
    """

    def __init__(self, client: Any, bucket: str) -> None:
        self._client = client
        self._bucket = bucket

    @property
    def bucket(self) -> str:
        return self._bucket

    async def object_exists(self, key: str) -> bool:
        """Return True when ``key`` is already stored.

        Any failure other than a clean miss is logged and treated as absent,
        so the document is fetched and uploaded again.
        """
        try:
            await asyncio.to_thread(self._client.head_object, Bucket=self._bucket, Key=key)
            return True
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code not in _NOT_FOUND_CODES:
                logger.warning("content_store_head_failed", key=key, error=str(e))
            return False
        except BotoCoreError as e:
            logger.warning("content_store_head_failed", key=key, error=str(e))
            return False

    async def upload(
        self,
        key: str,
        body: bytes,
        content_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Store ``body`` under ``key``.

        Raises:
            StorageError: If the put is rejected
        """
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                Metadata=encode_metadata(metadata or {}),
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError("upload", str(e), key=key) from e

        logger.debug(
            "content_store_uploaded",
            key=key,
            content_type=content_type,
            size_bytes=len(body),
        )

    async def head_metadata(self, bucket: str, key: str) -> dict[str, str]:
        """Return the user metadata of any object, for citation resolution.

        Raises:
            StorageError: If the head request fails
        """
        try:
            response = await asyncio.to_thread(
                self._client.head_object, Bucket=bucket, Key=key
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError("head", str(e), key=key) from e
        return dict(response.get("Metadata") or {})
