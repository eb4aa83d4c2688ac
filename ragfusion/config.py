from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Process-level settings for ragfusion.

    All settings can be configured via environment variables or .env file.
    Per-knowledge-base retrieval tuning lives in RAGConfig (rag_config.py),
    not here.
    """

    # Read from .env and ignore unknown vars
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # OpenAI settings
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_embedding_model: str = Field(
        default="text-embedding-3-small",
        alias="OPENAI_EMBEDDING_MODEL",
    )
    openai_chat_model: str = Field(
        default="gpt-4o-mini",
        alias="OPENAI_CHAT_MODEL",
    )
    llm_max_retries: int = Field(
        default=3,
        alias="LLM_MAX_RETRIES",
        description="Attempts per embedding/LLM call before raising ProviderError",
    )

    # Qdrant settings
    qdrant_url: str = Field(
        default="http://localhost:6333",
        alias="QDRANT_URL",
    )
    qdrant_api_key: str | None = Field(
        default=None,
        alias="QDRANT_API_KEY",
    )
    qdrant_kb_collection: str = Field(
        default="knowledge_base",
        alias="QDRANT_KB_COLLECTION",
    )
    qdrant_email_collection: str = Field(
        default="emails",
        alias="QDRANT_EMAIL_COLLECTION",
    )

    # Postgres (keyword search + stored per-KB RAG config)
    database_url: str | None = Field(
        default=None,
        alias="DATABASE_URL",
        description="Postgres connection string for FTS and rag_config lookups",
    )
    fts_schema: str = Field(default="public", alias="FTS_SCHEMA")
    fts_kb_table: str = Field(default="kb_chunks", alias="FTS_KB_TABLE")
    fts_email_table: str = Field(default="email_chunks", alias="FTS_EMAIL_TABLE")
    rag_config_table: str = Field(
        default="knowledge_bases",
        alias="RAG_CONFIG_TABLE",
        description="Table holding the per-KB rag_config JSONB column",
    )
    keyword_timeout_seconds: float = Field(
        default=5.0,
        alias="KEYWORD_TIMEOUT_SECONDS",
        description="Per-corpus timeout for keyword search (fail-open)",
    )

    # Pipeline
    pipeline_timeout_seconds: float = Field(
        default=30.0,
        alias="PIPELINE_TIMEOUT_SECONDS",
        description="Overall retrieve_and_rank budget; on expiry an empty list is returned",
    )

    # API Security
    api_key: str | None = Field(
        default=None,
        alias="API_KEY",
        description="API key for authenticating /retrieve",
    )
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:8000"],
        alias="CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins",
    )
    rate_limit_retrieve: str = Field(
        default="30/minute",
        alias="RATE_LIMIT_RETRIEVE",
        description="Rate limit for /retrieve endpoint (e.g., 30/minute)",
    )

    # Observability
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_stages: bool = Field(default=False, alias="LOG_STAGES")
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")
    sentry_environment: str = Field(default="dev", alias="SENTRY_ENVIRONMENT")
    sentry_traces_sample_rate: float = Field(default=0.0, alias="SENTRY_TRACES_SAMPLE_RATE")


settings = Settings()
