# =============================================================================
# Application Configuration: Pydantic Settings
# =============================================================================
#
# All runtime knobs live on one `Settings` class. Values load in this
# priority order (highest first):
#   1. Environment variables (e.g., `DATABASE_URL=...`)
#   2. Values from the .env file
#   3. Default values defined below
#
# Components never read the environment themselves. Each accepts explicit
# overrides (store, LLM provider, limits) and falls back to `settings`.
#
# USAGE:
#   from docflow.config import settings
#   print(settings.database_url)
# =============================================================================

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Defaults target a single-process local deployment backed by SQLite.
    """

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    app_name: str = "docflow"
    app_version: str = "0.1.0"
    debug: bool = False

    # -------------------------------------------------------------------------
    # Durable Store
    # -------------------------------------------------------------------------
    # Any SQLAlchemy async URL works. SQLite (aiosqlite driver) is the default
    # because the whole system runs in one process.
    # Format: sqlite+aiosqlite:///relative/path.db
    # -------------------------------------------------------------------------
    database_url: str = "sqlite+aiosqlite:///./data/docflow.db"

    # -------------------------------------------------------------------------
    # File Locations
    # -------------------------------------------------------------------------
    # upload_dir:          raw uploads, prefixed with their task id
    # extracted_text_dir:  markdown text extracted from each document
    # articles_dir:        final narratives written by deep-research runs
    # -------------------------------------------------------------------------
    upload_dir: str = "data/uploads"
    extracted_text_dir: str = "data/extracted"
    articles_dir: str = "data/research-articles"

    # -------------------------------------------------------------------------
    # Ingestion Queue
    # -------------------------------------------------------------------------
    # Worker pool size for document processing. Agent queues are always
    # sequential; this is the only place with true parallelism.
    # -------------------------------------------------------------------------
    ingest_concurrency: int = Field(default=1, ge=1, le=10)
    supported_extensions: list[str] = [".pdf"]

    # -------------------------------------------------------------------------
    # LLM Configuration: Multi-Provider
    # -------------------------------------------------------------------------
    # Two roles share one provider:
    #   - reasoning (llm_model): intent, scoring, research, compression
    #   - writing (llm_writing_model): the long-form research article
    #
    # llm_timeout_seconds is the deadline attached to every external call.
    # Expiry surfaces as UpstreamTimeoutError, not as a generic failure.
    #
    # Example configs:
    #   DeepSeek V3: provider=openai_compatible, base_url=https://api.deepseek.com/v1, model=deepseek-chat
    #   Claude:      provider=anthropic, model=claude-sonnet-4-6
    # -------------------------------------------------------------------------
    llm_provider: str = "anthropic"  # "anthropic" or "openai_compatible"
    llm_base_url: str | None = None  # Only needed for openai_compatible
    llm_api_key: str | None = None   # Overrides provider-specific key if set
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    llm_model: str = "claude-sonnet-4-6"
    llm_writing_model: str | None = None  # Falls back to llm_model
    llm_temperature: float = 0.1
    llm_max_tokens: int = 4096
    llm_timeout_seconds: float = 120.0

    # -------------------------------------------------------------------------
    # Rolling Memory
    # -------------------------------------------------------------------------
    # memory_max_length: hard cap on context characters after every append
    # memory_shrink_mode: "truncate" drops the oldest text, "compress" asks
    #   the reasoning model for a summary of roughly half the cap and then
    #   truncates as a backstop
    # memory_result_preview_chars: how much of a worker's JSON result is
    #   appended to memory after each task
    # -------------------------------------------------------------------------
    memory_max_length: int = Field(default=1000, gt=0)
    memory_shrink_mode: Literal["truncate", "compress"] = "compress"
    memory_result_preview_chars: int = 500

    # -------------------------------------------------------------------------
    # Agents
    # -------------------------------------------------------------------------
    # Scoring tasks receive up to this many earlier scores of the same index
    # (recorded by other runs) as historical context.
    # -------------------------------------------------------------------------
    history_limit: int = 20
    save_articles: bool = True

    # -------------------------------------------------------------------------
    # Pydantic Settings Configuration
    # -------------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Create and cache a Settings instance.

    In tests, override via FastAPI's dependency_overrides or pass
    explicit values to the components under test.
    """
    return Settings()


# ---------------------------------------------------------------------------
# Module-level convenience instance
# ---------------------------------------------------------------------------
settings = get_settings()
