"""Configuration management for the Askoro backend."""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional, cast

from dotenv import load_dotenv
import structlog


DEFAULT_KNOWLEDGE_BASE_BUCKET = "filipjov-knowledge-base-app"

# Default OAuth scopes per provider, used when {PROVIDER}_SCOPES is unset
DEFAULT_OAUTH_SCOPES = {
    "github": "repo read:org",
    "confluence": "read:confluence-content.all offline_access",
    "google": "https://www.googleapis.com/auth/drive.readonly",
    "notion": "",
    "onedrive": "offline_access Files.Read.All",
    "quip": "read-all write-all",
}

# Environment variable prefix per provider app registration
OAUTH_ENV_PREFIXES = {
    "github": "GITHUB",
    "confluence": "CONFLUENCE",
    "google": "GOOGLE",
    "notion": "NOTION",
    "onedrive": "ONEDRIVE",
    "quip": "QUIP",
}

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OAuthApp:
    """OAuth application registration for one provider."""

    client_id: Optional[str]
    client_secret: Optional[str]
    redirect_uri: Optional[str]
    scopes: str

    @property
    def configured(self) -> bool:
        """Return True when the authorize flow can be started."""
        return bool(self.client_id and self.redirect_uri)


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment variables."""

    app_env: str
    database_url: str
    aws_region: str
    aws_access_key_id: Optional[str]
    aws_secret_access_key: Optional[str]
    knowledge_base_bucket: str
    bedrock_knowledge_base_id: str
    bedrock_model_arn: str
    slack_signing_secret: Optional[str]
    notion_owner: str
    sync_max_concurrency: int
    http_timeout_seconds: float
    rate_limit_per_minute: int
    frontend_url: str
    backend_host: str
    backend_port: int
    oauth_apps: dict[str, OAuthApp] = field(default_factory=dict)

    def oauth_app(self, provider: str) -> OAuthApp:
        """Return the OAuth registration for a provider key (e.g. ``"github"``)."""
        app = self.oauth_apps.get(provider)
        if app is None:
            return OAuthApp(
                client_id=None,
                client_secret=None,
                redirect_uri=None,
                scopes=DEFAULT_OAUTH_SCOPES.get(provider, ""),
            )
        return app


def _load_oauth_apps() -> dict[str, OAuthApp]:
    apps: dict[str, OAuthApp] = {}
    for provider, prefix in OAUTH_ENV_PREFIXES.items():
        apps[provider] = OAuthApp(
            client_id=os.getenv(f"{prefix}_CLIENT_ID") or None,
            client_secret=os.getenv(f"{prefix}_CLIENT_SECRET") or None,
            redirect_uri=os.getenv(f"{prefix}_REDIRECT_URI") or None,
            scopes=os.getenv(f"{prefix}_SCOPES", DEFAULT_OAUTH_SCOPES[provider]),
        )
    return apps


def load_settings() -> Settings:
    """
    Load settings from environment variables.

    Returns:
        Settings instance with all configuration values

    Raises:
        ValueError: If required environment variables are missing or invalid
    """
    load_dotenv()

    app_env = os.getenv("APP_ENV", "development").strip().lower()

    try:
        backend_port = int(os.getenv("BACKEND_PORT", "8000"))
    except ValueError as exc:
        raise ValueError(
            "BACKEND_PORT must be a valid integer. Check your .env file."
        ) from exc
    try:
        sync_max_concurrency = int(os.getenv("SYNC_MAX_CONCURRENCY", "1"))
        rate_limit_per_minute = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))
    except ValueError as exc:
        raise ValueError(
            "SYNC_MAX_CONCURRENCY and RATE_LIMIT_PER_MINUTE must be valid integers. "
            "Check your .env file."
        ) from exc
    if sync_max_concurrency < 1:
        raise ValueError("SYNC_MAX_CONCURRENCY must be >= 1.")
    if rate_limit_per_minute < 1:
        raise ValueError("RATE_LIMIT_PER_MINUTE must be >= 1.")

    try:
        http_timeout_seconds = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
    except ValueError:
        http_timeout_seconds = 30.0
    if http_timeout_seconds <= 0:
        http_timeout_seconds = 30.0

    required = [
        "DATABASE_URL",
        "AWS_REGION",
        "BEDROCK_KNOWLEDGE_BASE_ID",
        "BEDROCK_MODEL_ARN",
    ]
    values = {key: os.getenv(key) for key in required}
    missing = [key for key, value in values.items() if not value]
    if missing:
        missing_list = ", ".join(sorted(missing))
        raise ValueError(
            "Missing required environment variables: "
            f"{missing_list}. Copy .env.example to .env and fill values."
        )

    aws_access_key_id = os.getenv("AWS_ACCESS_KEY_ID") or None
    aws_secret_access_key = os.getenv("AWS_SECRET_ACCESS_KEY") or None
    if bool(aws_access_key_id) != bool(aws_secret_access_key):
        logger.warning("aws_static_credentials_incomplete")
        aws_access_key_id = None
        aws_secret_access_key = None

    return Settings(
        app_env=app_env,
        database_url=cast(str, values["DATABASE_URL"]),
        aws_region=cast(str, values["AWS_REGION"]),
        aws_access_key_id=aws_access_key_id,
        aws_secret_access_key=aws_secret_access_key,
        knowledge_base_bucket=os.getenv("KNOWLEDGE_BASE_BUCKET", DEFAULT_KNOWLEDGE_BASE_BUCKET),
        bedrock_knowledge_base_id=cast(str, values["BEDROCK_KNOWLEDGE_BASE_ID"]),
        bedrock_model_arn=cast(str, values["BEDROCK_MODEL_ARN"]),
        slack_signing_secret=os.getenv("SLACK_SIGNING_SECRET") or None,
        notion_owner=os.getenv("NOTION_OWNER", "user"),
        sync_max_concurrency=sync_max_concurrency,
        http_timeout_seconds=http_timeout_seconds,
        rate_limit_per_minute=rate_limit_per_minute,
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/"),
        backend_host=os.getenv("BACKEND_HOST", "0.0.0.0"),
        backend_port=backend_port,
        oauth_apps=_load_oauth_apps(),
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once
    from environment variables.

    Returns:
        Cached Settings instance
    """
    return load_settings()
