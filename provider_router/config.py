"""Application configuration."""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = "sqlite:///./data/provider_router.db"

    # Encryption (validated at startup by EncryptionService)
    encryption_key: Optional[str] = None

    # Legacy single-provider fallback, used only when an organization has no enabled providers
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    fast_llm: str = "gpt-4o-mini"
    smart_llm: str = "gpt-4.1"

    # Routing: round-robin, random, weighted or failover
    rotation_strategy: str = "round-robin"

    # Prober
    probe_timeout_seconds: float = 10.0
    discovery_model_limit: int = 50

    # Application
    log_level: str = "INFO"
    app_host: str = "0.0.0.0"
    app_port: int = 8000


settings = Settings()
