"""API tests for the OAuth, sync, data-source, Google Drive, knowledge and Slack routes."""

import dataclasses
import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from askoro_backend.api.dependencies import (
    get_app_settings,
    get_connection_store,
    get_connector_factory,
    get_knowledge_base,
    get_orchestrator_factory,
    get_slack_handler,
)
from askoro_backend.core.errors import (
    DatabaseError,
    ForbiddenError,
    OAuthExchangeFailedError,
    RequiresAuthenticationError,
)
from askoro_backend.knowledge.bedrock import KnowledgeBaseClient
from askoro_backend.main import create_app
from askoro_backend.slack.command import SlackCommandHandler, compute_signature
from askoro_backend.sync.confluence_connector import AccessibleResource, ConfluenceConnector
from askoro_backend.sync.github_connector import GitHubConnector
from askoro_backend.sync.google_drive_connector import DriveFolder, GoogleDriveConnector
from askoro_backend.sync.manager import SyncOrchestrator
from askoro_backend.sync.models import (
    ConfluenceAuth,
    ConfluenceTokens,
    Connection,
    GitHubAuth,
    GitHubTokens,
    GoogleDriveAuth,
    GoogleTokens,
    ProviderTag,
    SyncResult,
)
from askoro_backend.sync.state import StatePayload, decode_state, encode_state

GITHUB_URL = "https://github.com/acme/docs"
CONFLUENCE_URL = "https://acme.atlassian.net/wiki/spaces/ENG"


@pytest.fixture
def connectors():
    """Connector mocks keyed by provider, handed out by the connector factory."""
    github = MagicMock(spec=GitHubConnector)
    github.exchange_code_for_tokens = AsyncMock(return_value=GitHubTokens(access_token="gh-token"))

    confluence = MagicMock(spec=ConfluenceConnector)
    confluence.exchange_code_for_tokens = AsyncMock(
        return_value=ConfluenceTokens(access_token="atl-token", refresh_token="atl-refresh")
    )
    confluence.get_accessible_resources = AsyncMock(
        return_value=[AccessibleResource(id="cloud-1", url="https://acme.atlassian.net")]
    )

    google = MagicMock(spec=GoogleDriveConnector)
    return {
        ProviderTag.GITHUB: github,
        ProviderTag.CONFLUENCE: confluence,
        ProviderTag.GOOGLE_DRIVE: google,
    }


@pytest.fixture
def orchestrator():
    orchestrator = MagicMock(spec=SyncOrchestrator)
    orchestrator.sync = AsyncMock(return_value=SyncResult(synced=2, skipped=1, errors=0))
    return orchestrator


@pytest.fixture
def knowledge_base():
    kb = MagicMock(spec=KnowledgeBaseClient)
    kb.query = AsyncMock(
        return_value={"output": {"text": "Use the runbook."}, "citations": [], "sessionId": "session-1"}
    )
    return kb


@pytest.fixture
def slack_handler():
    handler = MagicMock(spec=SlackCommandHandler)
    handler.build_reply = AsyncMock(return_value={"response_type": "ephemeral", "text": "Use the runbook."})
    handler.answer_deferred = AsyncMock()
    handler.post_response = AsyncMock()
    return handler


@pytest.fixture
def app(settings, mock_connection_store, connectors, orchestrator, knowledge_base, slack_handler):
    """App with every dependency overridden; the lifespan is not run."""
    app = create_app()
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_connection_store] = lambda: mock_connection_store
    app.dependency_overrides[get_connector_factory] = lambda: connectors.__getitem__
    app.dependency_overrides[get_orchestrator_factory] = lambda: (lambda provider: orchestrator)
    app.dependency_overrides[get_knowledge_base] = lambda: knowledge_base
    app.dependency_overrides[get_slack_handler] = lambda: slack_handler
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def headers(user_id):
    return {"X-User-Id": user_id}


def _redirect_query(response) -> dict[str, str]:
    location = urlparse(response.headers["location"])
    assert f"{location.scheme}://{location.netloc}{location.path}" == "http://localhost:3000/data"
    return {key: values[0] for key, values in parse_qs(location.query).items()}


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestOAuthStart:
    def test_start_returns_authorize_url_with_state(self, client, headers, mock_connection_store):
        response = client.post(
            "/api/v1/github/oauth/start",
            json={"rootFolderUrl": GITHUB_URL},
            headers=headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["authorizeUrl"].startswith("https://github.com/login/oauth/authorize?")
        assert decode_state(data["state"]) == StatePayload(nonce=data["nonce"], root_folder_url=GITHUB_URL)
        assert parse_qs(urlparse(data["authorizeUrl"]).query)["state"] == [data["state"]]
        mock_connection_store.record_connection.assert_not_awaited()

    def test_start_records_pending_connection(self, client, headers, user_id, mock_connection_store):
        response = client.post(
            "/api/v1/google/oauth/start",
            json={"rootFolderUrl": "https://drive.google.com/drive/folders/abc"},
            headers=headers,
        )

        assert response.status_code == 200
        args = mock_connection_store.record_connection.await_args.args
        assert args[0] == user_id
        assert args[1] == ProviderTag.GOOGLE_DRIVE
        assert isinstance(args[2], GoogleDriveAuth)
        assert args[2].state == response.json()["state"]
        assert args[2].root_folder_url == "https://drive.google.com/drive/folders/abc"

    def test_start_only_providers_record_pending(self, client, headers, mock_connection_store):
        response = client.post(
            "/api/v1/quip/oauth/start",
            json={"rootFolderUrl": "https://quip.com/folder"},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["authorizeUrl"].startswith("https://platform.quip.com/1/oauth/login?")
        assert mock_connection_store.record_connection.await_args.args[1] == ProviderTag.QUIP

    def test_pending_persist_failure(self, client, headers, mock_connection_store):
        mock_connection_store.record_connection.side_effect = DatabaseError("record_connection", "down")

        response = client.post(
            "/api/v1/onedrive/oauth/start",
            json={"rootFolderUrl": "https://onedrive.live.com/folder"},
            headers=headers,
        )

        assert response.status_code == 500
        assert response.json()["detail"] == "Failed to persist data source metadata"

    def test_unconfigured_provider(self, app, client, headers, settings):
        app.dependency_overrides[get_app_settings] = lambda: dataclasses.replace(settings, oauth_apps={})

        response = client.post(
            "/api/v1/github/oauth/start",
            json={"rootFolderUrl": GITHUB_URL},
            headers=headers,
        )

        assert response.status_code == 500
        assert response.json()["detail"] == "Server not configured for GitHub OAuth"

    def test_invalid_body(self, client, headers):
        response = client.post(
            "/api/v1/github/oauth/start",
            json={"rootFolderUrl": "docs"},
            headers=headers,
        )

        assert response.status_code == 400
        body = response.json()
        assert body["detail"] == "Invalid request body"
        assert body["errors"]["fields"][0]["loc"] == ["rootFolderUrl"]

    def test_requires_user(self, client):
        response = client.post("/api/v1/github/oauth/start", json={"rootFolderUrl": GITHUB_URL})

        assert response.status_code == 401
        assert response.json()["detail"] == "Unauthorized"

    def test_unknown_provider(self, client, headers):
        response = client.post(
            "/api/v1/dropbox/oauth/start",
            json={"rootFolderUrl": GITHUB_URL},
            headers=headers,
        )

        assert response.status_code == 404


class TestOAuthCallback:
    @pytest.fixture
    def github_state(self):
        return encode_state(StatePayload(nonce="n1", root_folder_url=GITHUB_URL))

    def _callback(self, client, provider, headers=None, **params):
        return client.get(
            f"/api/v1/{provider}/oauth/callback",
            params=params,
            headers=headers or {},
            follow_redirects=False,
        )

    def test_provider_error(self, client, headers):
        response = self._callback(client, "github", headers, error="access_denied")

        assert response.status_code == 307
        assert _redirect_query(response) == {"status": "github_error"}

    def test_missing_params(self, client, headers):
        response = self._callback(client, "notion", headers, code="abc")

        assert _redirect_query(response) == {"status": "notion_missing_params"}

    def test_missing_user(self, client, github_state):
        response = self._callback(client, "github", code="abc", state=github_state)

        assert _redirect_query(response) == {"status": "github_missing_user"}

    def test_success_stores_connection_and_syncs(
        self, client, headers, user_id, github_state, connectors, mock_connection_store, orchestrator
    ):
        mock_connection_store.upsert_connection.return_value = Connection(
            id="conn-1", user_id=user_id, provider=ProviderTag.GITHUB
        )

        response = self._callback(client, "github", headers, code="abc", state=github_state)

        assert _redirect_query(response) == {"status": "github_success"}
        connectors[ProviderTag.GITHUB].exchange_code_for_tokens.assert_awaited_once_with("abc")
        call = mock_connection_store.upsert_connection.await_args
        assert call.args[:2] == (user_id, ProviderTag.GITHUB)
        auth = call.args[2]
        assert isinstance(auth, GitHubAuth)
        assert auth.tokens.access_token == "gh-token"
        assert auth.root_folder_url == GITHUB_URL
        assert auth.nonce == "n1"
        assert auth.last_sync_status == "success"
        assert isinstance(call.kwargs["last_sync_time"], datetime)
        orchestrator.sync.assert_awaited_once_with(user_id, GITHUB_URL)

    def test_confluence_records_cloud_site(self, client, headers, user_id, mock_connection_store):
        mock_connection_store.upsert_connection.return_value = Connection(
            id="conn-2", user_id=user_id, provider=ProviderTag.CONFLUENCE
        )
        state = encode_state(StatePayload(nonce="n2", root_folder_url=CONFLUENCE_URL))

        response = self._callback(client, "confluence", headers, code="abc", state=state)

        assert _redirect_query(response) == {"status": "confluence_success"}
        auth = mock_connection_store.upsert_connection.await_args.args[2]
        assert isinstance(auth, ConfluenceAuth)
        assert auth.cloud_id == "cloud-1"
        assert auth.site_base_url == "https://acme.atlassian.net"
        assert auth.tokens.refresh_token == "atl-refresh"

    def test_background_sync_failure_marks_confluence_connection(
        self, client, headers, user_id, mock_connection_store, orchestrator
    ):
        connection = Connection(
            id="conn-2",
            user_id=user_id,
            provider=ProviderTag.CONFLUENCE,
            auth=ConfluenceAuth(root_folder_url=CONFLUENCE_URL),
        )
        mock_connection_store.upsert_connection.return_value = connection
        mock_connection_store.get_connection.return_value = connection
        orchestrator.connector = MagicMock(provider=ProviderTag.CONFLUENCE)
        orchestrator.sync.side_effect = RequiresAuthenticationError("Confluence", "/api/v1/confluence/oauth/start")
        state = encode_state(StatePayload(nonce="n2", root_folder_url=CONFLUENCE_URL))

        response = self._callback(client, "confluence", headers, code="abc", state=state)

        assert _redirect_query(response) == {"status": "confluence_success"}
        mock_connection_store.mark_sync_failed.assert_awaited_once_with(connection, "Requires Authentication")

    def test_exchange_failure(self, client, headers, github_state, connectors, mock_connection_store):
        connectors[ProviderTag.GITHUB].exchange_code_for_tokens.side_effect = OAuthExchangeFailedError(
            "GitHub", "bad_verification_code"
        )

        response = self._callback(client, "github", headers, code="stale", state=github_state)

        assert _redirect_query(response) == {
            "status": "github_exchange_failed",
            "message": "GitHub token exchange failed: bad_verification_code",
        }
        assert "%20" in response.headers["location"]
        mock_connection_store.upsert_connection.assert_not_awaited()

    def test_invalid_state(self, client, headers):
        response = self._callback(client, "github", headers, code="abc", state="%%%")

        assert _redirect_query(response) == {
            "status": "github_exchange_failed",
            "message": "Invalid state parameter",
        }

    def test_start_only_provider_has_no_callback(self, client, headers):
        response = self._callback(client, "quip", headers, code="abc", state="s")

        assert response.status_code == 404


class TestSync:
    def test_sync_returns_counts(self, client, headers, user_id, orchestrator):
        response = client.post("/api/v1/sync/github", json={"rootFolderUrl": GITHUB_URL}, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"success": True, "synced": 2, "skipped": 1, "errors": 0}
        orchestrator.sync.assert_awaited_once_with(user_id, GITHUB_URL)

    @pytest.mark.parametrize("body", [{}, {"rootFolderUrl": ""}, {"rootFolderUrl": 42}, ["x"]])
    def test_root_folder_url_required(self, client, headers, body):
        response = client.post("/api/v1/sync/google-drive", json=body, headers=headers)

        assert response.status_code == 400
        assert response.json()["detail"] == "rootFolderUrl is required"

    def test_requires_authentication_problem(self, client, headers, orchestrator):
        orchestrator.sync.side_effect = RequiresAuthenticationError("Confluence", "/api/v1/confluence/oauth/start")

        response = client.post("/api/v1/sync/confluence", json={"rootFolderUrl": CONFLUENCE_URL}, headers=headers)

        assert response.status_code == 401
        body = response.json()
        assert body["detail"] == "Requires Authentication"
        assert body["errors"]["reauth"] is True
        assert body["errors"]["startEndpoint"] == "/api/v1/confluence/oauth/start"

    def test_unexpected_error(self, client, headers, orchestrator):
        orchestrator.sync.side_effect = RuntimeError("boom")

        response = client.post("/api/v1/sync/notion", json={"rootFolderUrl": "all"}, headers=headers)

        assert response.status_code == 500
        assert response.json()["detail"] == "boom"

    def test_unknown_segment(self, client, headers):
        response = client.post("/api/v1/sync/quip", json={"rootFolderUrl": "x"}, headers=headers)

        assert response.status_code == 404


class TestDataSources:
    def test_list_data_sources(self, client, headers, user_id, mock_connection_store):
        synced_at = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        mock_connection_store.list_connections.return_value = [
            Connection(
                id="conn-1",
                user_id=user_id,
                provider=ProviderTag.GITHUB,
                auth=GitHubAuth(
                    tokens=GitHubTokens(access_token="secret"),
                    root_folder_url=GITHUB_URL,
                    last_sync_status="success",
                ),
                last_sync_time=synced_at,
            ),
            Connection(id="conn-2", user_id=user_id, provider=ProviderTag.QUIP),
        ]

        response = client.get("/api/v1/data-sources", headers=headers)

        assert response.status_code == 200
        assert response.json() == {
            "dataSources": [
                {
                    "id": "conn-1",
                    "dataSourceType": "GITHUB",
                    "lastSyncTime": "2024-06-01T12:00:00+00:00",
                    "rootFolderUrl": GITHUB_URL,
                    "lastSyncStatus": "success",
                    "lastSyncMessage": None,
                },
                {
                    "id": "conn-2",
                    "dataSourceType": "QUIP",
                    "lastSyncTime": None,
                    "rootFolderUrl": None,
                    "lastSyncStatus": None,
                    "lastSyncMessage": None,
                },
            ]
        }
        assert "secret" not in response.text

    def test_delete_data_source(self, client, headers, user_id, mock_connection_store):
        response = client.delete("/api/v1/data-sources/conn-1", headers=headers)

        assert response.status_code == 200
        assert response.json() == {"success": True}
        mock_connection_store.delete_connection.assert_awaited_once_with(user_id, "conn-1")

    def test_delete_foreign_data_source(self, client, headers, mock_connection_store):
        mock_connection_store.delete_connection.side_effect = ForbiddenError(
            "Unauthorized: Data source does not belong to user"
        )

        response = client.delete("/api/v1/data-sources/conn-1", headers=headers)

        assert response.status_code == 403


class TestGoogleDrive:
    @pytest.fixture
    def drive_connection(self, user_id, mock_connection_store):
        connection = Connection(
            id="conn-g",
            user_id=user_id,
            provider=ProviderTag.GOOGLE_DRIVE,
            auth=GoogleDriveAuth(
                tokens=GoogleTokens(access_token="g-token", refresh_token="r"),
                root_folder_url="https://drive.google.com/drive/folders/old",
                needs_folder_selection=True,
            ),
        )
        mock_connection_store.get_first_connection.return_value = connection
        return connection

    def test_select_folder(self, client, headers, drive_connection, mock_connection_store):
        response = client.post(
            "/api/v1/google/select-folder",
            json={"folderId": "abc", "folderName": "Specs"},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "rootFolderUrl": "https://drive.google.com/drive/folders/abc",
            "folderName": "Specs",
        }
        call = mock_connection_store.update_connection.await_args
        assert call.args == ("conn-g",)
        auth = call.kwargs["auth"]
        assert auth.needs_folder_selection is False
        assert auth.folder_name == "Specs"
        assert auth.tokens.access_token == "g-token"

    def test_select_all_folders_with_empty_body(self, client, headers, drive_connection):
        response = client.post("/api/v1/google/select-folder", headers=headers)

        assert response.status_code == 200
        assert response.json() == {"success": True, "rootFolderUrl": "root", "folderName": "All Folders"}

    def test_select_folder_without_connection(self, client, headers):
        response = client.post("/api/v1/google/select-folder", json={"folderId": "all"}, headers=headers)

        assert response.status_code == 404
        assert response.json()["detail"] == "Google Drive data source not found"

    def test_list_folders(self, client, headers, drive_connection, connectors):
        google = connectors[ProviderTag.GOOGLE_DRIVE]
        google.ensure_credentials = AsyncMock(return_value=drive_connection.auth)
        google.list_folders = AsyncMock(return_value=[DriveFolder(id="d1", name="Docs", web_view_link="https://x")])

        response = client.get("/api/v1/google/folders", headers=headers)

        assert response.status_code == 200
        assert response.json() == {"folders": [{"id": "d1", "name": "Docs", "webViewLink": "https://x"}]}
        google.list_folders.assert_awaited_once_with(drive_connection.auth)

    def test_list_folders_without_connection(self, client, headers):
        response = client.get("/api/v1/google/folders", headers=headers)

        assert response.status_code == 404
        assert response.json()["detail"] == "Google Drive not authenticated"

    def test_list_folders_without_tokens(self, client, headers, user_id, mock_connection_store):
        mock_connection_store.get_first_connection.return_value = Connection(
            id="conn-g",
            user_id=user_id,
            provider=ProviderTag.GOOGLE_DRIVE,
            auth=GoogleDriveAuth(state="pending", root_folder_url="root"),
        )

        response = client.get("/api/v1/google/folders", headers=headers)

        assert response.status_code == 404
        assert response.json()["detail"] == "No Google Drive tokens found"


class TestKnowledgeBaseQuery:
    def test_query(self, client, knowledge_base):
        response = client.post(
            "/api/v1/knowledge-base-query",
            json={"query": "How do I deploy?", "sessionId": "session-1"},
        )

        assert response.status_code == 200
        assert response.json()["output"] == {"text": "Use the runbook."}
        knowledge_base.query.assert_awaited_once_with("How do I deploy?", "session-1")

    def test_empty_query_rejected(self, client, knowledge_base):
        response = client.post("/api/v1/knowledge-base-query", json={"query": ""})

        assert response.status_code == 400
        knowledge_base.query.assert_not_awaited()


class TestSlackCommand:
    def _post(self, client, body: bytes, secret="slack-secret", timestamp=None):
        timestamp = timestamp or str(int(time.time()))
        return client.post(
            "/api/v1/slack/command",
            content=body,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "X-Slack-Request-Timestamp": timestamp,
                "X-Slack-Signature": compute_signature(secret, timestamp, body),
            },
        )

    def test_deferred_answer(self, client, slack_handler):
        body = b"text=how+to+deploy&user_id=U1&channel_id=C1&response_url=https%3A%2F%2Fhooks.slack.com%2Fx"

        response = self._post(client, body)

        assert response.status_code == 200
        assert response.json() == {
            "response_type": "ephemeral",
            "text": "Searching the knowledge base for “how to deploy”…",
        }
        slack_handler.answer_deferred.assert_awaited_once_with("https://hooks.slack.com/x", "how to deploy", "U1", "C1")

    def test_inline_answer(self, client, slack_handler):
        response = self._post(client, b"text=how+to+deploy&user_id=U1&channel_id=C1")

        assert response.json() == {"response_type": "ephemeral", "text": "Use the runbook."}
        slack_handler.build_reply.assert_awaited_once_with("how to deploy", "U1")

    def test_empty_text_returns_usage(self, client, slack_handler):
        response = self._post(client, b"text=&user_id=U1")

        assert response.status_code == 200
        assert response.json()["text"].startswith("Please provide a question")
        slack_handler.build_reply.assert_not_awaited()

    def test_empty_text_with_response_url_posts_usage(self, client, slack_handler):
        response = self._post(client, b"text=++&response_url=https%3A%2F%2Fhooks.slack.com%2Fx")

        assert response.status_code == 200
        assert response.content == b""
        url, message = slack_handler.post_response.await_args.args
        assert url == "https://hooks.slack.com/x"
        assert message["response_type"] == "ephemeral"

    def test_ssl_check(self, client):
        response = self._post(client, b"ssl_check=1&token=x")

        assert response.json() == {"ok": True}

    def test_bad_signature(self, client, slack_handler):
        response = self._post(client, b"text=hi", secret="wrong-secret")

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid Slack signature"
        slack_handler.build_reply.assert_not_awaited()

    def test_expired_timestamp(self, client):
        response = self._post(client, b"text=hi", timestamp=str(int(time.time()) - 3600))

        assert response.status_code == 401
        assert response.json()["detail"] == "Slack request timestamp expired"

    def test_not_configured(self, app, client, settings):
        app.dependency_overrides[get_app_settings] = lambda: dataclasses.replace(settings, slack_signing_secret=None)

        response = self._post(client, b"text=hi")

        assert response.status_code == 500
        assert response.json()["detail"] == "Slack integration not configured"
