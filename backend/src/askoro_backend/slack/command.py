"""Slack slash-command handling for knowledge-base questions.

Slack gives a command three seconds to answer, so when a ``response_url``
is present the request is acknowledged at once and the answer is posted
to that URL later.
"""

import time
from typing import Any, Optional

import httpx
from slack_sdk.signature import Clock, SignatureVerifier
import structlog

from ..core.errors import SlackSignatureError
from ..knowledge.bedrock import KnowledgeBaseClient, reference_uri

logger = structlog.get_logger(__name__)

MAX_REQUEST_AGE_SECONDS = 60 * 5

USAGE_TEXT = (
    "Please provide a question after the command. "
    "Example: `/askoro How do I restore the DynamoDB backup?`"
)
NO_ANSWER_TEXT = "No answer found."
SOURCE_SEPARATOR = " • "


class FixedClock(Clock):
    """Clock pinned to one instant."""

    def __init__(self, now: float) -> None:
        self._now = now

    def now(self) -> float:
        return self._now


def compute_signature(signing_secret: str, timestamp: str, body: bytes) -> str:
    """Return the ``v0=`` hex HMAC-SHA256 of ``v0:{timestamp}:{body}``."""
    return SignatureVerifier(signing_secret).generate_signature(timestamp=timestamp, body=body)


def verify_signature(
    signing_secret: str,
    timestamp: Optional[str],
    signature: Optional[str],
    body: bytes,
    now: Optional[float] = None,
) -> None:
    """
    Check a request against Slack's signing secret.

    Raises:
        SlackSignatureError: If headers are missing, the timestamp is outside
            the five-minute window, or the signature does not match
    """
    if not timestamp or not signature:
        raise SlackSignatureError("Missing Slack signature headers")

    current = time.time() if now is None else now
    try:
        age = abs(int(current) - int(timestamp))
    except ValueError:
        raise SlackSignatureError("Slack request timestamp expired") from None
    if age > MAX_REQUEST_AGE_SECONDS:
        raise SlackSignatureError("Slack request timestamp expired")

    verifier = SignatureVerifier(signing_secret, clock=FixedClock(current))
    if not verifier.is_valid(body=body, timestamp=timestamp, signature=signature):
        raise SlackSignatureError("Invalid Slack signature")


def usage_message() -> dict[str, Any]:
    return {"response_type": "ephemeral", "text": USAGE_TEXT}


def acknowledgement_message(text: str) -> dict[str, Any]:
    return {
        "response_type": "ephemeral",
        "text": f"Searching the knowledge base for “{text}”…",
    }


def error_message(error: str) -> dict[str, Any]:
    return {
        "response_type": "ephemeral",
        "text": f"Sorry, I couldn't look up that answer: {error}",
    }


def format_source(source: str) -> str:
    if source.startswith("http"):
        return f"<{source}|Source>"
    return f"Source: {source.replace('s3://', '', 1)}"


def source_links(citations: Optional[list[dict[str, Any]]]) -> list[str]:
    """Return one formatted source per retrieved reference, in answer order."""
    links: list[str] = []
    for citation in citations or []:
        for reference in citation.get("retrievedReferences") or []:
            source = reference.get("sourceUrl") or reference_uri(reference)
            if source:
                links.append(format_source(source))
    return links


def answer_message(
    answer_text: str,
    citations: Optional[list[dict[str, Any]]],
    user_id: Optional[str] = None,
    channel_id: Optional[str] = None,
) -> dict[str, Any]:
    """Build the Block Kit message for an answer and its sources."""
    header = f"<@{user_id}> asked:" if user_id else "Knowledge base answer:"
    blocks: list[dict[str, Any]] = [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"{header}\n>{answer_text}"},
        }
    ]

    links = source_links(citations)
    if links:
        blocks.append({
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": SOURCE_SEPARATOR.join(links)}],
        })

    return {
        "response_type": "in_channel" if channel_id else "ephemeral",
        "text": answer_text,
        "blocks": blocks,
    }


class SlackCommandHandler:
    """Answers slash commands from the knowledge base."""

    def __init__(
        self,
        knowledge_base: KnowledgeBaseClient,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._knowledge_base = knowledge_base
        self._http_client = http_client

    async def build_reply(
        self,
        text: str,
        user_id: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Query the knowledge base and return the Slack message to send.

        Query failures become an ephemeral apology instead of an error.
        """
        try:
            response = await self._knowledge_base.query(text)
        except Exception as e:
            logger.error("slack_knowledge_base_query_failed", error=str(e))
            return error_message(str(e) or "Unknown error")

        answer_text = (response.get("output") or {}).get("text") or NO_ANSWER_TEXT
        return answer_message(answer_text, response.get("citations"), user_id, channel_id)

    async def post_response(self, response_url: str, message: dict[str, Any]) -> None:
        """POST a message to a command's ``response_url``; failures are logged only."""
        try:
            if self._http_client is not None:
                response = await self._http_client.post(response_url, json=message)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(response_url, json=message)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("slack_response_post_failed", error=str(e))

    async def answer_deferred(
        self,
        response_url: str,
        text: str,
        user_id: Optional[str],
        channel_id: Optional[str],
    ) -> None:
        message = await self.build_reply(text, user_id, channel_id)
        await self.post_response(response_url, message)
