"""Notion workspace sync connector.

Lists pages shared with the integration (a database's rows, a page and every
page nested under it, or the whole workspace) and stores each page as
markdown-like text rendered from its block tree.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

from .base import BaseConnector
from .models import (
    FetchedDocument,
    NotionAuth,
    NotionTokens,
    ProviderTag,
    RemoteDocument,
)
from .oauth import post_token_request

NOTION_API_URL = "https://api.notion.com/v1"
NOTION_TOKEN_ENDPOINT = f"{NOTION_API_URL}/oauth/token"
NOTION_VERSION = "2022-06-28"

# Root location meaning "every page shared with the integration"
ALL_PAGES_SENTINEL = "all"

# Ids close a path segment, after the title slug
_ID_PATTERN = re.compile(r"([a-f0-9]{32})$", re.IGNORECASE)

PAGE_SEARCH_BODY: dict[str, Any] = {
    "filter": {"property": "object", "value": "page"},
    "sort": {"direction": "descending", "timestamp": "last_edited_time"},
}

BLOCK_PREFIXES = {
    "heading_1": "# ",
    "heading_2": "## ",
    "heading_3": "### ",
    "bulleted_list_item": "- ",
    "numbered_list_item": "1. ",
    "to_do": "- [ ] ",
    "toggle": "> ",
    "quote": "> ",
    "callout": "> ",
}


@dataclass(frozen=True)
class NotionLocator:
    page_id: Optional[str] = None
    database_id: Optional[str] = None


@dataclass
class NotionBlock:
    """A block reduced to its type, plain text, and fetched children."""

    id: str
    type: str
    content: str = ""
    has_children: bool = False
    children: list["NotionBlock"] = field(default_factory=list)


def format_notion_id(raw_id: str) -> str:
    """Hyphenate a 32-hex id as 8-4-4-4-12."""
    if len(raw_id) != 32:
        return raw_id
    return f"{raw_id[:8]}-{raw_id[8:12]}-{raw_id[12:16]}-{raw_id[16:20]}-{raw_id[20:]}"


def parse_notion_url(url: str) -> Optional[NotionLocator]:
    """Extract a page or database id from a Notion URL.

    URLs carrying a ``v`` query parameter are database views.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None

    match = None
    for segment in reversed([part for part in parsed.path.split("/") if part]):
        match = _ID_PATTERN.search(segment.replace("-", ""))
        if match:
            break
    if not match:
        return None

    notion_id = format_notion_id(match.group(1))
    if "v" in parse_qs(parsed.query, keep_blank_values=True):
        return NotionLocator(database_id=notion_id)
    return NotionLocator(page_id=notion_id)


def page_title(page: dict[str, Any]) -> str:
    """Return the plain text of the page's title property, or "Untitled"."""
    for prop in (page.get("properties") or {}).values():
        if isinstance(prop, dict) and prop.get("type") == "title":
            return "".join(part.get("plain_text", "") for part in prop.get("title") or [])
    return "Untitled"


def descendant_pages(pages: list[dict[str, Any]], root_id: str) -> list[dict[str, Any]]:
    """Pages nested under ``root_id`` at any depth, parents before children.

    Only ``page_id`` parents count; database rows belong to their database.
    """
    children: dict[str, list[dict[str, Any]]] = {}
    for page in pages:
        parent = page.get("parent") or {}
        if parent.get("type") == "page_id" and parent.get("page_id"):
            children.setdefault(parent["page_id"], []).append(page)

    found: list[dict[str, Any]] = []
    seen = {root_id}
    queue = [root_id]
    while queue:
        for page in children.get(queue.pop(0), []):
            page_id = page.get("id")
            if not page_id or page_id in seen:
                continue
            seen.add(page_id)
            found.append(page)
            queue.append(page_id)
    return found


def extract_block_content(block: dict[str, Any]) -> str:
    """Return block text from ``rich_text``, else ``caption``, else ``name``."""
    body = block.get(block.get("type", ""))
    if not isinstance(body, dict):
        return ""
    for key in ("rich_text", "caption", "name"):
        runs = body.get(key)
        if isinstance(runs, list):
            return "".join(run.get("plain_text", "") for run in runs)
    return ""


def _trim_blank_lines(lines: list[str]) -> list[str]:
    start, end = 0, len(lines)
    while start < end and lines[start] == "":
        start += 1
    while end > start and lines[end - 1] == "":
        end -= 1
    return lines[start:end]


def render_blocks(blocks: list[NotionBlock]) -> str:
    """Render a block tree as markdown-like text.

    Blocks are separated by a blank line and children are indented two
    spaces per level. Traversal uses an explicit stack.
    """
    lines: list[str] = []
    # (block, depth, children_start); children_start is set once the block has been entered
    stack: list[tuple[NotionBlock, int, Optional[int]]] = [
        (block, 0, None) for block in reversed(blocks)
    ]

    while stack:
        block, depth, children_start = stack.pop()

        if children_start is not None:
            lines[children_start:] = _trim_blank_lines(lines[children_start:])
            lines.append("")
            continue

        if block.content:
            prefix = BLOCK_PREFIXES.get(block.type, "")
            lines.append(f"{'  ' * depth}{prefix}{block.content}")

        stack.append((block, depth, len(lines)))
        for child in reversed(block.children):
            stack.append((child, depth + 1, None))

    return "\n".join(lines).strip()


class NotionConnector(BaseConnector[NotionAuth, NotionLocator]):
    """Sync connector for Notion.

    An unparseable root URL falls back to syncing every shared page.
    """

    provider = ProviderTag.NOTION
    display_name = "Notion"
    oauth_key = "notion"
    locator_required = False

    def parse_locator(self, root_url: str) -> Optional[NotionLocator]:
        if root_url == ALL_PAGES_SENTINEL:
            return None
        return parse_notion_url(root_url)

    @staticmethod
    def _headers(auth: NotionAuth) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {auth.tokens.access_token if auth.tokens else ''}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }

    async def exchange_code_for_tokens(self, code: str) -> NotionTokens:
        client = await self._get_client()
        payload = await post_token_request(
            client,
            self.display_name,
            NOTION_TOKEN_ENDPOINT,
            json={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._oauth_app.redirect_uri,
            },
            auth=(self._oauth_app.client_id or "", self._oauth_app.client_secret or ""),
        )
        self._logger.info("notion_token_exchanged", workspace_name=payload.get("workspace_name"))
        return NotionTokens(
            access_token=payload["access_token"],
            token_type=payload.get("token_type") or "bearer",
            bot_id=payload.get("bot_id"),
            workspace_id=payload.get("workspace_id"),
            workspace_name=payload.get("workspace_name"),
            workspace_icon=payload.get("workspace_icon"),
            owner=payload.get("owner"),
        )

    async def _request(
        self,
        auth: NotionAuth,
        method: str,
        path: str,
        operation: str,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.request(
            method,
            f"{NOTION_API_URL}{path}",
            headers=self._headers(auth),
            json=json,
            params=params,
        )
        self._raise_for_list_status(response, operation)
        return response.json()

    async def _paged_post(self, auth: NotionAuth, path: str, body: dict[str, Any], operation: str) -> list[dict]:
        results: list[dict] = []
        cursor: Optional[str] = None
        while True:
            request_body = dict(body)
            if cursor:
                request_body["start_cursor"] = cursor
            data = await self._request(auth, "POST", path, operation, json=request_body)
            results.extend(data.get("results", []))
            cursor = data.get("next_cursor")
            if not cursor:
                return results

    @staticmethod
    def _to_document(page: dict[str, Any]) -> RemoteDocument:
        return RemoteDocument(
            id=page["id"],
            name=page_title(page),
            permalink=page.get("url"),
            metadata={
                "last_edited_time": page.get("last_edited_time"),
                "parent": page.get("parent"),
            },
        )

    async def list_documents(
        self,
        auth: NotionAuth,
        locator: Optional[NotionLocator],
    ) -> list[RemoteDocument]:
        """List database rows, a page plus its descendant pages, or every shared page."""
        if locator and locator.database_id:
            pages = await self._paged_post(
                auth, f"/databases/{locator.database_id}/query", {}, "query database"
            )
        elif locator and locator.page_id:
            root = await self._request(auth, "GET", f"/pages/{locator.page_id}", "get page")
            # Search is the only way to discover child pages
            candidates = await self._paged_post(auth, "/search", PAGE_SEARCH_BODY, "search pages")
            pages = [root] + descendant_pages(candidates, locator.page_id)
        else:
            pages = await self._paged_post(auth, "/search", PAGE_SEARCH_BODY, "search pages")

        documents = [self._to_document(page) for page in pages if page.get("id")]
        self._logger.info(
            "notion_pages_listed",
            page_id=locator.page_id if locator else None,
            database_id=locator.database_id if locator else None,
            count=len(documents),
        )
        return documents

    async def _block_children(self, auth: NotionAuth, block_id: str) -> list[NotionBlock]:
        client = await self._get_client()
        blocks: list[NotionBlock] = []
        cursor: Optional[str] = None
        while True:
            response = await client.get(
                f"{NOTION_API_URL}/blocks/{block_id}/children",
                headers=self._headers(auth),
                params={"start_cursor": cursor} if cursor else None,
            )
            response.raise_for_status()
            data = response.json()
            for raw in data.get("results", []):
                blocks.append(
                    NotionBlock(
                        id=raw["id"],
                        type=raw.get("type", ""),
                        content=extract_block_content(raw),
                        has_children=bool(raw.get("has_children")),
                    )
                )
            cursor = data.get("next_cursor")
            if not cursor:
                return blocks

    async def fetch_block_tree(self, auth: NotionAuth, page_id: str) -> list[NotionBlock]:
        """Fetch a page's blocks with all nested children attached."""
        roots = await self._block_children(auth, page_id)
        pending = [block for block in roots if block.has_children]
        while pending:
            block = pending.pop()
            block.children = await self._block_children(auth, block.id)
            pending.extend(child for child in block.children if child.has_children)
        return roots

    async def fetch_document(
        self,
        auth: NotionAuth,
        document: RemoteDocument,
        locator: Optional[NotionLocator],
    ) -> FetchedDocument:
        blocks = await self.fetch_block_tree(auth, document.id)
        return FetchedDocument(
            body=render_blocks(blocks).encode("utf-8"),
            content_type="text/markdown",
            permalink=document.permalink,
        )

    def object_identity(self, document: RemoteDocument) -> str:
        return f"{document.id}.md"

    def build_metadata(
        self,
        document: RemoteDocument,
        fetched: FetchedDocument,
        auth: NotionAuth,
        locator: Optional[NotionLocator],
    ) -> dict[str, Any]:
        return self._metadata(
            document.permalink,
            **{
                "page-id": document.id,
                "page-title": document.name,
                "last-edited": document.metadata.get("last_edited_time"),
            },
        )
