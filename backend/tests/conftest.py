"""pytest fixtures for Askoro Backend tests."""

import os

# Set environment variables BEFORE any imports
os.environ.setdefault("DATABASE_URL", "postgresql://localhost/test")
os.environ.setdefault("AWS_REGION", "us-east-1")
os.environ.setdefault("BEDROCK_KNOWLEDGE_BASE_ID", "kb-test")
os.environ.setdefault("BEDROCK_MODEL_ARN", "arn:aws:bedrock:us-east-1::foundation-model/test-model")

from unittest.mock import AsyncMock, MagicMock

import pytest

from askoro_backend.config import OAuthApp, Settings


@pytest.fixture
def user_id():
    """Provide a sample user ID."""
    return "user-123"


@pytest.fixture
def oauth_app():
    """OAuth registration used by connector tests."""
    return OAuthApp(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="https://app.example.com/callback",
        scopes="read",
    )


@pytest.fixture
def settings(oauth_app):
    """Settings with every provider registered."""
    return Settings(
        app_env="test",
        database_url="postgresql://localhost/test",
        aws_region="us-east-1",
        aws_access_key_id=None,
        aws_secret_access_key=None,
        knowledge_base_bucket="kb-bucket",
        bedrock_knowledge_base_id="kb-test",
        bedrock_model_arn="arn:aws:bedrock:us-east-1::foundation-model/test-model",
        slack_signing_secret="slack-secret",
        notion_owner="user",
        sync_max_concurrency=1,
        http_timeout_seconds=30.0,
        rate_limit_per_minute=60,
        frontend_url="http://localhost:3000",
        backend_host="127.0.0.1",
        backend_port=8000,
        oauth_apps={
            key: oauth_app
            for key in ("github", "confluence", "google", "notion", "onedrive", "quip")
        },
    )


@pytest.fixture
def mock_connection_store():
    """Mock ConnectionStore."""
    from askoro_backend.db.postgres import ConnectionStore

    store = MagicMock(spec=ConnectionStore)
    store.get_connection = AsyncMock(return_value=None)
    store.get_first_connection = AsyncMock(return_value=None)
    store.list_connections = AsyncMock(return_value=[])
    store.record_connection = AsyncMock()
    store.upsert_connection = AsyncMock()
    store.update_connection = AsyncMock(return_value=True)
    store.mark_sync_failed = AsyncMock()
    store.touch_last_sync_time = AsyncMock()
    store.delete_connection = AsyncMock()
    return store


@pytest.fixture
def mock_content_store():
    """Mock ContentStore where nothing has been uploaded yet."""
    from askoro_backend.sync.content_store import ContentStore

    store = MagicMock(spec=ContentStore)
    store.bucket = "kb-bucket"
    store.object_exists = AsyncMock(return_value=False)
    store.upload = AsyncMock()
    store.head_metadata = AsyncMock(return_value={})
    return store
