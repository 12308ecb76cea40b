"""Application configuration using Pydantic settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = False
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"

    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_storage_bucket: str = "media"

    # Facebook
    facebook_app_id: str = ""
    facebook_app_secret: str = ""
    facebook_graph_version: str = "v19.0"
    facebook_scopes: list[str] = Field(
        default_factory=lambda: [
            "email",
            "public_profile",
            "pages_show_list",
            "pages_read_engagement",
            "pages_manage_metadata",
            "pages_messaging",
            "business_management",
        ]
    )
    facebook_long_lived_token_days: int = 60
    facebook_request_timeout: float = 30.0
    webhook_verify_token: str = ""

    # Security
    session_secret: str = Field(default="development-secret-key-change-in-production")
    session_max_age_days: int = 30
    cron_secret: str = ""

    # LLM Providers
    openai_api_key: str = ""
    google_api_key: str = ""
    anthropic_api_key: str = ""
    litellm_primary_model: str = "gemini/gemini-1.5-flash"
    litellm_fallback_model: str = "gpt-4o-mini"

    # Dispatch
    batch_size: int = 100
    message_delay_seconds: float = 0.1
    batch_delay_seconds: float = 1.0
    cancellation_check_interval: int = 10
    progress_checkpoint_interval: int = 5
    max_retry_attempts: int = 3
    scheduled_dispatch_limit: int = 10
    page_rate_limit_calls: int = 200
    page_rate_limit_period_seconds: float = 60.0

    # Uploads
    upload_max_bytes: int = 25 * 1024 * 1024
    upload_allowed_types: list[str] = Field(
        default_factory=lambda: [
            "image/jpeg",
            "image/png",
            "image/gif",
            "image/webp",
            "video/mp4",
            "video/quicktime",
            "video/webm",
            "audio/mpeg",
            "audio/wav",
            "audio/mp4",
            "audio/aac",
            "application/pdf",
            "text/plain",
        ]
    )

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"

    @property
    def graph_api_url(self) -> str:
        return f"https://graph.facebook.com/{self.facebook_graph_version}"

    @property
    def oauth_redirect_uri(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/auth/facebook/callback"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
