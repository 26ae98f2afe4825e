"""
Configuration management using Pydantic settings.
Loads Shopify app credentials, storage backend selection and retry tuning
from environment variables or a .env file.
"""
from typing import Literal, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Shopify app credentials (required, the service refuses to start without them)
    shopify_api_key: str
    shopify_api_secret: str
    app_url: str

    # OAuth handshake
    shopify_scopes: str = "read_products"  # Comma-separated
    shopify_api_version: str = "2024-04"
    shop_domain_suffix: str = "myshopify.com"
    nonce_ttl_seconds: int = 300
    access_mode: Literal["offline", "per-user"] = "offline"

    # Outbound API calls
    retry_base_delay_seconds: float = 0.5
    retry_max_attempts: int = 3
    http_timeout_seconds: float = 30.0

    # Storage
    storage_backend: Literal["file", "supabase", "memory"] = "file"
    data_dir: str = "data"
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    supabase_table: str = "bridge_store"
    token_encryption_key: Optional[str] = None  # Fernet key; encrypts stored access tokens

    # Application Configuration
    app_environment: str = "development"
    log_level: str = "INFO"
    allowed_origins: str = "*"  # Comma-separated CORS origins

    @model_validator(mode="after")
    def _check_required(self) -> "Settings":
        for name in ("shopify_api_key", "shopify_api_secret", "app_url"):
            if not getattr(self, name).strip():
                raise ValueError(f"{name.upper()} must be set")
        if self.storage_backend == "supabase" and not (
            self.supabase_url and self.supabase_service_key
        ):
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY are required for the supabase backend"
            )
        if self.retry_max_attempts < 1:
            raise ValueError("RETRY_MAX_ATTEMPTS must be at least 1")
        self.app_url = self.app_url.rstrip("/")
        return self

    @property
    def scopes(self) -> list[str]:
        """Requested OAuth scopes as a list."""
        return [s.strip() for s in self.shopify_scopes.split(",") if s.strip()]

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


# Global settings instance
settings = Settings()
