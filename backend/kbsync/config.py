"""
Knowledge Base Sync — Configuration
====================================
Pydantic-based settings loaded from environment variables.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application configuration."""

    # ---- Application ----
    app_name: str = "Knowledge Base Sync"
    app_version: str = "1.0.0"
    log_level: str = "INFO"
    debug: bool = False

    # ---- PostgreSQL ----
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "kb_sync"
    postgres_user: str = "kbsync_admin"
    postgres_password: str = "changeme"
    database_url_override: Optional[str] = None

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def database_url_sync(self) -> str:
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ---- Azure OpenAI (Completions) ----
    azure_openai_endpoint: Optional[str] = None
    azure_openai_api_key: Optional[str] = None
    azure_openai_api_version: str = "2024-02-01"
    azure_openai_chat_deployment: str = "gpt-4o-mini"

    # ---- Azure AI Language (Entity recognition) ----
    azure_language_endpoint: Optional[str] = None
    azure_language_api_key: Optional[str] = None

    # ---- Microsoft Graph ----
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    microsoft_tenant_id: str = "common"
    microsoft_client_id: Optional[str] = None
    microsoft_client_secret: Optional[str] = None

    # ---- Google Drive ----
    google_credentials_json: Optional[str] = None

    # ---- Temporal ----
    temporal_host: str = "localhost:7233"
    temporal_namespace: str = "default"
    temporal_task_queue: str = "kb-sync-queue"

    # ---- Scheduling ----
    check_interval_minutes: int = 5
    default_sync_frequency_minutes: int = 15
    auto_sync_enabled: bool = True
    stale_operation_minutes: int = 60
    scan_cycles_per_workflow: int = 288

    # ---- Enrichment ----
    enrichment_max_concurrency: int = 3
    enrichment_batch_cooldown_seconds: float = 1.0
    ai_timeout_seconds: float = 30.0
    ai_max_retries: int = 2

    # ---- PII ----
    pii_confidence_threshold: float = 0.8
    pii_cache_ttl_seconds: float = 300.0
    pii_cache_max_entries: int = 256
    pii_masking_style: str = "stars"

    # ---- Providers ----
    provider_max_retries: int = 3
    provider_retry_base_seconds: float = 0.5
    first_scan_lookback_hours: int = 24

    model_config = {"env_file": ".env", "case_sensitive": False}


settings = Settings()
