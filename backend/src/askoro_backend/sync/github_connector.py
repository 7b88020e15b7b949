"""GitHub repository sync connector.

Lists every file of a repository tree (optionally scoped to a directory) and
downloads file contents through the REST contents API.
"""

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote, urlparse

from ..core.errors import DocumentSyncFailedError
from .base import BaseConnector
from .content_types import content_type_for_path
from .models import (
    FetchedDocument,
    GitHubAuth,
    GitHubTokens,
    ProviderTag,
    RemoteDocument,
)
from .oauth import post_token_request

GITHUB_API_URL = "https://api.github.com"
GITHUB_TOKEN_ENDPOINT = "https://github.com/login/oauth/access_token"
GITHUB_API_VERSION = "2022-11-28"

# /{owner}/{repo}[.git][/(tree|blob)/{branch}[/{path}]]
_REPO_PATH_PATTERN = re.compile(
    r"^/([^/]+)/([^/]+?)(?:\.git)?(?:/(tree|blob)/([^/]+)(?:/(.+))?)?$"
)


@dataclass(frozen=True)
class GitHubLocator:
    owner: str
    repo: str
    path: Optional[str] = None
    branch: Optional[str] = None


def parse_github_url(url: str) -> Optional[GitHubLocator]:
    """Parse a repository, tree, or blob URL.

    Blob URLs resolve to the file's directory; tree paths lose any trailing
    slash. Returns None for anything else.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None

    match = _REPO_PATH_PATTERN.match(parsed.path)
    if not match:
        return None

    owner, repo, kind, branch, path = match.groups()

    if kind == "blob" and branch and path:
        directory = "/".join(path.split("/")[:-1])
        return GitHubLocator(owner=owner, repo=repo, branch=branch, path=directory or None)

    if kind == "tree" and branch:
        trimmed = path[:-1] if path and path.endswith("/") else path
        return GitHubLocator(owner=owner, repo=repo, branch=branch, path=trimmed or None)

    return GitHubLocator(owner=owner, repo=repo)


class GitHubConnector(BaseConnector[GitHubAuth, GitHubLocator]):
    """Sync connector for GitHub repositories.

    GitHub OAuth app tokens do not expire, so there is no refresh path.
    """

    provider = ProviderTag.GITHUB
    display_name = "GitHub"
    oauth_key = "github"

    def parse_locator(self, root_url: str) -> Optional[GitHubLocator]:
        return parse_github_url(root_url)

    @staticmethod
    def _headers(auth: GitHubAuth) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {auth.tokens.access_token if auth.tokens else ''}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

    async def exchange_code_for_tokens(self, code: str) -> GitHubTokens:
        client = await self._get_client()
        payload = await post_token_request(
            client,
            self.display_name,
            GITHUB_TOKEN_ENDPOINT,
            json={
                "client_id": self._oauth_app.client_id,
                "client_secret": self._oauth_app.client_secret,
                "code": code,
                "redirect_uri": self._oauth_app.redirect_uri,
            },
        )
        self._logger.info("github_token_exchanged", scope=payload.get("scope"))
        return GitHubTokens(
            access_token=payload["access_token"],
            token_type=payload.get("token_type"),
            scope=payload.get("scope"),
        )

    async def _get_json(self, auth: GitHubAuth, path: str, operation: str, **params: Any) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.get(
            f"{GITHUB_API_URL}{path}",
            headers=self._headers(auth),
            params=params or None,
        )
        self._raise_for_list_status(response, operation)
        return response.json()

    async def _resolve_branch(self, auth: GitHubAuth, locator: GitHubLocator) -> str:
        if locator.branch:
            return locator.branch
        repo = await self._get_json(auth, f"/repos/{locator.owner}/{locator.repo}", "get repository")
        return repo["default_branch"]

    async def list_documents(
        self,
        auth: GitHubAuth,
        locator: Optional[GitHubLocator],
    ) -> list[RemoteDocument]:
        """List files in the resolved branch's tree under the locator path."""
        if locator is None:
            return []

        repo_path = f"/repos/{locator.owner}/{locator.repo}"
        branch = await self._resolve_branch(auth, locator)
        branch_data = await self._get_json(
            auth, f"{repo_path}/branches/{quote(branch, safe='')}", "get branch"
        )
        commit = await self._get_json(
            auth, f"{repo_path}/git/commits/{branch_data['commit']['sha']}", "get commit"
        )
        tree = await self._get_json(
            auth,
            f"{repo_path}/git/trees/{commit['tree']['sha']}",
            "get tree",
            recursive="1",
        )

        if tree.get("truncated"):
            self._logger.warning(
                "github_tree_truncated",
                owner=locator.owner,
                repo=locator.repo,
                branch=branch,
            )

        prefix = None
        if locator.path:
            prefix = locator.path if locator.path.endswith("/") else f"{locator.path}/"

        documents = []
        for entry in tree.get("tree", []):
            path = entry.get("path")
            if entry.get("type") != "blob" or not isinstance(path, str):
                continue
            if not isinstance(entry.get("sha"), str) or not isinstance(entry.get("mode"), str):
                continue
            if prefix and not path.startswith(prefix):
                continue
            documents.append(
                RemoteDocument(
                    id=path,
                    name=path.rsplit("/", 1)[-1],
                    metadata={
                        "owner": locator.owner,
                        "repo": locator.repo,
                        "sha": entry["sha"],
                        "size": entry.get("size"),
                    },
                )
            )

        self._logger.info(
            "github_files_listed",
            owner=locator.owner,
            repo=locator.repo,
            branch=branch,
            count=len(documents),
        )
        return documents

    async def fetch_document(
        self,
        auth: GitHubAuth,
        document: RemoteDocument,
        locator: Optional[GitHubLocator],
    ) -> FetchedDocument:
        """Download one file through the contents API."""
        if locator is None:
            raise DocumentSyncFailedError(self.display_name, document.id, "missing repository locator")

        client = await self._get_client()
        params = {"ref": locator.branch} if locator.branch else None
        response = await client.get(
            f"{GITHUB_API_URL}/repos/{locator.owner}/{locator.repo}/contents/{quote(document.id)}",
            headers=self._headers(auth),
            params=params,
        )
        response.raise_for_status()
        data = response.json()

        if isinstance(data, list):
            raise DocumentSyncFailedError(
                self.display_name, document.id, "Path must point to a file, not a directory"
            )
        if data.get("type") != "file":
            raise DocumentSyncFailedError(self.display_name, document.id, "Path must point to a file")
        if data.get("encoding") != "base64" or not data.get("content"):
            raise DocumentSyncFailedError(self.display_name, document.id, "Unsupported file encoding")

        try:
            body = base64.b64decode(data["content"])
        except (binascii.Error, ValueError) as e:
            raise DocumentSyncFailedError(self.display_name, document.id, str(e)) from e

        return FetchedDocument(
            body=body,
            content_type=content_type_for_path(document.id),
            permalink=self._permalink(locator, document.id),
        )

    @staticmethod
    def _permalink(locator: GitHubLocator, path: str) -> str:
        branch = locator.branch or "main"
        return f"https://github.com/{locator.owner}/{locator.repo}/blob/{branch}/{path}"

    def object_identity(self, document: RemoteDocument) -> str:
        owner = document.metadata.get("owner", "")
        repo = document.metadata.get("repo", "")
        return f"{owner}/{repo}/{document.id}"

    def build_metadata(
        self,
        document: RemoteDocument,
        fetched: FetchedDocument,
        auth: GitHubAuth,
        locator: Optional[GitHubLocator],
    ) -> dict[str, Any]:
        return self._metadata(
            fetched.permalink,
            owner=locator.owner if locator else document.metadata.get("owner", ""),
            repo=locator.repo if locator else document.metadata.get("repo", ""),
            path=document.id,
            sha=document.metadata.get("sha") or "",
        )
