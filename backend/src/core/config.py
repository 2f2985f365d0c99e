"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Database
    database_url: str
    db_pool_size: int = Field(default=5, validation_alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=10, validation_alias="DB_MAX_OVERFLOW")

    # Auth0
    auth0_domain: str = Field(default="", validation_alias="AUTH0_DOMAIN")
    auth0_audience: str = Field(default="", validation_alias="AUTH0_AUDIENCE")

    # Development mode - bypasses auth for local development
    dev_mode: bool = Field(default=False, validation_alias="DEV_MODE")

    # CORS - comma-separated list of allowed origins (stored as string, parsed via property)
    cors_origins_str: str = Field(
        default="http://localhost:5173",
        validation_alias="CORS_ORIGINS",
    )

    # Link checker - server-wide defaults; users may override interval and batch size
    link_check_enabled: bool = Field(default=True, validation_alias="LINK_CHECK_ENABLED")
    link_check_interval_minutes: int = Field(
        default=30, ge=1, validation_alias="LINK_CHECK_INTERVAL_MINUTES",
    )
    link_check_batch_size: int = Field(default=25, ge=1, validation_alias="LINK_CHECK_BATCH_SIZE")
    link_check_max_concurrent: int = Field(
        default=5, ge=1, validation_alias="LINK_CHECK_MAX_CONCURRENT",
    )
    link_check_timeout: float = Field(default=10.0, gt=0, validation_alias="LINK_CHECK_TIMEOUT")
    link_check_max_redirects: int = Field(
        default=5, ge=0, validation_alias="LINK_CHECK_MAX_REDIRECTS",
    )
    link_check_backoff_threshold: int = Field(
        default=3, ge=1, validation_alias="LINK_CHECK_BACKOFF_THRESHOLD",
    )
    link_check_max_backoff_minutes: int = Field(
        default=24 * 60, ge=1, validation_alias="LINK_CHECK_MAX_BACKOFF_MINUTES",
    )
    link_check_initial_delay_seconds: float = Field(
        default=60.0, ge=0, validation_alias="LINK_CHECK_INITIAL_DELAY_SECONDS",
    )

    # Screenshots - rendered by an external thum.io-compatible service
    screenshot_service_url: str = Field(
        default="https://image.thum.io/get",
        validation_alias="SCREENSHOT_SERVICE_URL",
    )
    screenshot_service_token: str = Field(default="", validation_alias="SCREENSHOT_SERVICE_TOKEN")
    screenshot_width: int = Field(default=800, ge=1, validation_alias="SCREENSHOT_WIDTH")
    screenshot_viewport_width: int = Field(
        default=1024, ge=1, validation_alias="SCREENSHOT_VIEWPORT_WIDTH",
    )
    screenshot_viewport_height: int = Field(
        default=640, ge=1, validation_alias="SCREENSHOT_VIEWPORT_HEIGHT",
    )
    screenshot_timeout: float = Field(default=30.0, gt=0, validation_alias="SCREENSHOT_TIMEOUT")
    screenshot_max_bytes: int = Field(
        default=10 * 1024 * 1024, ge=1, validation_alias="SCREENSHOT_MAX_BYTES",
    )
    screenshot_storage_dir: Path = Field(
        default=Path("data/screenshots"),
        validation_alias="SCREENSHOT_STORAGE_DIR",
    )
    screenshot_public_path: str = Field(
        default="/screenshots",
        validation_alias="SCREENSHOT_PUBLIC_PATH",
    )
    screenshot_pending_timeout_seconds: int = Field(
        default=120, ge=1, validation_alias="SCREENSHOT_PENDING_TIMEOUT_SECONDS",
    )

    @model_validator(mode="after")
    def validate_dev_mode_security(self) -> "Settings":
        """
        Prevent DEV_MODE from being enabled with a production database.

        DEV_MODE completely bypasses authentication, so it may only be used with
        a database running on the local machine.
        """
        if not self.dev_mode:
            return self

        try:
            parsed = urlparse(self.database_url)
            hostname = parsed.hostname or ""
        except ValueError:
            hostname = ""

        local_hosts = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}
        if hostname.lower() not in local_hosts:
            raise ValueError(
                f"DEV_MODE cannot be enabled with a non-local database. "
                f"Database host '{hostname}' appears to be a production database. "
                f"DEV_MODE bypasses all authentication and must only be used locally.",
            )

        return self

    @model_validator(mode="after")
    def validate_screenshot_timing(self) -> "Settings":
        """A pending screenshot must not be recovered while its capture can still finish."""
        if self.screenshot_pending_timeout_seconds <= self.screenshot_timeout:
            raise ValueError(
                "SCREENSHOT_PENDING_TIMEOUT_SECONDS must be greater than SCREENSHOT_TIMEOUT",
            )
        return self

    @property
    def cors_origins(self) -> list[str]:
        """Parse comma-separated CORS origins string into a list."""
        if not self.cors_origins_str:
            return []
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    @property
    def auth0_issuer(self) -> str:
        """Get the Auth0 issuer URL."""
        return f"https://{self.auth0_domain}/"

    @property
    def auth0_jwks_url(self) -> str:
        """Get the Auth0 JWKS URL for fetching public keys."""
        return f"https://{self.auth0_domain}/.well-known/jwks.json"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
