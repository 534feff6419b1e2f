"""Application configuration with environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.1.0"

    # Database
    DATABASE_URL: str = "sqlite:///./replyready.db"

    # Token Encryption (Fernet key for OAuth tokens at rest)
    FERNET_KEY: str = ""

    # Internal scheduled endpoints (cron jobs, operator actions)
    INTERNAL_SECRET: str = ""

    # Public base URL of this service (used as default push audience)
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Gmail OAuth + push
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GMAIL_REDIRECT_URI: str = "http://localhost:8000/integrations/gmail/callback"
    GMAIL_PUSH_TOPIC: str = ""  # projects/<project>/topics/<topic>
    GMAIL_PUSH_AUDIENCE: str = ""  # Overrides the endpoint URL as OIDC audience
    GMAIL_PUSH_SERVICE_ACCOUNT: str = ""  # Expected `email` claim of the push token

    # Outlook (Microsoft Graph)
    MICROSOFT_CLIENT_ID: str = ""
    MICROSOFT_CLIENT_SECRET: str = ""
    MICROSOFT_TENANT: str = "common"
    OUTLOOK_REDIRECT_URI: str = "http://localhost:8000/integrations/outlook/callback"
    OUTLOOK_CLIENT_STATE: str = ""
    OUTLOOK_NOTIFICATION_URL: str = ""

    # Model access (classifier, writer, QA)
    AI_PROVIDER: str = "openai"  # openai | azure
    AI_API_KEY: str = ""
    AI_MODEL: str = "gpt-4o-mini"
    AZURE_OPENAI_ENDPOINT: str = ""
    AZURE_OPENAI_DEPLOYMENT: str = ""
    AZURE_OPENAI_API_VERSION: str = "2024-06-01"

    # Timeouts (seconds)
    CLASSIFIER_TIMEOUT_SECONDS: float = 12.0
    QA_TIMEOUT_SECONDS: float = 25.0
    WRITER_TIMEOUT_SECONDS: float = 25.0
    PROVIDER_TIMEOUT_SECONDS: float = 30.0

    # Bounds
    CLASSIFIER_MAX_RETRIES: int = 2
    STAGE_BATCH_SIZE: int = 25
    QA_BATCH_SIZE: int = 50
    BACKFILL_WINDOW_DAYS: int = 3
    BACKFILL_MAX_MESSAGES: int = 25
    MAX_REWRITES: int = 1
    TOKEN_REFRESH_MARGIN_SECONDS: int = 120
    SEND_ERROR_MAX_CHARS: int = 5000
    STUCK_SEND_MINUTES: int = 15

    # Attachments (fetched from external storage URLs)
    ATTACHMENT_MAX_COUNT: int = 10
    ATTACHMENT_MAX_BYTES: int = 12 * 1024 * 1024
    ATTACHMENT_MAX_TOTAL_BYTES: int = 20 * 1024 * 1024

    # Best-effort audit webhook for outbound sends (optional)
    AUDIT_WEBHOOK_URL: str = ""

    # Worker
    WORKER_POLL_INTERVAL: int = 10
    WORKER_BATCH_SIZE: int = 10

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute); Redis storage when REDIS_URL is set
    RATE_LIMIT_WEBHOOK: int = 300
    REDIS_URL: str = ""

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    def gmail_push_audience_for(self, request_url: str) -> str:
        """Expected OIDC audience: explicit override, else the endpoint URL."""
        return self.GMAIL_PUSH_AUDIENCE or request_url

    @property
    def ai_configured(self) -> bool:
        if not self.AI_API_KEY:
            return False
        if self.AI_PROVIDER == "azure":
            return bool(self.AZURE_OPENAI_ENDPOINT and self.AZURE_OPENAI_DEPLOYMENT)
        return self.AI_PROVIDER == "openai"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
