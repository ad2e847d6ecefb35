"""Configuration management for b2session."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    ENV: str = "local"
    SERVICE_NAME: str = "b2session"
    SERVICE_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Credentials
    B2_APPLICATION_KEY_ID: str = ""
    B2_APPLICATION_KEY: str = ""

    # Endpoints
    B2_AUTHORIZE_URL: str = "https://api.backblazeb2.com"
    B2_API_VERSION: str = "v3"
    B2_USER_AGENT: str = "b2session/0.1.0"

    # Authorization lifetime
    AUTH_TOKEN_TTL_SECONDS: int = 86400  # tokens are valid for 24 hours
    AUTH_REFRESH_MARGIN_SECONDS: int = 300  # refresh this long before expiry

    # Upload URL pooling
    UPLOAD_URL_POOL_ENABLED: bool = True
    UPLOAD_URL_POOL_MAX_PER_BUCKET: int = 4
    PART_URL_POOL_MAX_PER_FILE: int = 4

    # Retry
    RETRY_MAX_ATTEMPTS: int = 5
    RETRY_INITIAL_BACKOFF_SECONDS: float = 1.0
    RETRY_MAX_BACKOFF_SECONDS: float = 64.0

    # Circuit breaker
    BREAKER_FAILURE_THRESHOLD: int = 5
    BREAKER_COOLDOWN_SECONDS: float = 30.0
    BREAKER_COOLDOWN_MULTIPLIER: float = 2.0
    BREAKER_MAX_COOLDOWN_SECONDS: float = 300.0

    # Timeouts
    REQUEST_TIMEOUT_SECONDS: float = 60.0
    UPLOAD_TIMEOUT_SECONDS: float = 300.0

    # Large files
    VERIFY_FINISHED_PARTS: bool = True  # compare server part list before finishing
    MAX_CONCURRENT_PART_UPLOADS: int = 4

    @property
    def api_prefix(self) -> str:
        """Path prefix shared by every native API call."""
        return f"b2api/{self.B2_API_VERSION}"

    @property
    def authorize_endpoint(self) -> str:
        """Full URL of the account authorization call."""
        return f"{self.B2_AUTHORIZE_URL.rstrip('/')}/{self.api_prefix}/b2_authorize_account"

    @property
    def has_credentials(self) -> bool:
        """Whether both halves of the application key are configured."""
        return bool(self.B2_APPLICATION_KEY_ID and self.B2_APPLICATION_KEY)


# Singleton instance
settings = Settings()
