"""Configuration for the assistant backend using pydantic-settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PACKAGE_DIR = Path(__file__).resolve().parent
_PROJECT_ROOT = _PACKAGE_DIR.parent.parent  # src/marketplace_assistant/ → project root

DEFAULT_TOOLS = ("apply_filters", "navigate", "add_to_cart")


class Settings(BaseSettings):
    """All backend settings, loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Azure OpenAI: chat model
    # ------------------------------------------------------------------
    azure_openai_api_key: str = ""
    azure_openai_endpoint: str = ""
    azure_openai_api_version: str = "2025-01-01-preview"
    azure_openai_chat_deployment: str = "gpt-4o-mini"
    azure_openai_tool_deployment: str | None = None
    generation_timeout_seconds: float = 60.0

    # ------------------------------------------------------------------
    # Azure OpenAI: embedding model
    # Falls back to the chat-model values when not set explicitly.
    # ------------------------------------------------------------------
    azure_openai_embedding_endpoint: str | None = None
    azure_openai_embedding_api_version: str | None = None
    azure_openai_embedding_deployment: str = "text-embedding-3-small"
    azure_openai_embedding_api_key: str | None = None
    embedding_dimensions: int = 1536
    embedding_timeout_seconds: float = 10.0
    embedding_cache_size: int = 1000
    embedding_cache_ttl_seconds: float = 300.0

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------
    retrieval_limit: int = 8
    similarity_floor: float = 0.25
    retrieval_timeout_seconds: float = 2.0

    # ------------------------------------------------------------------
    # Response cache
    # Semantic matching is off unless a threshold is configured.
    # ------------------------------------------------------------------
    cache_ttl_seconds: int = 1800
    semantic_cache_threshold: float | None = None

    # ------------------------------------------------------------------
    # Conversation value analysis
    # ------------------------------------------------------------------
    min_message_length: int = 10
    min_useful_answer_length: int = 100
    value_classifier_enabled: bool = False
    retention_days: int = 90

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------
    enabled_tools: list[str] = list(DEFAULT_TOOLS)

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------
    knowledge_db_path: Path = _PROJECT_ROOT / "database" / "knowledge.sqlite"
    cache_db_path: Path = _PROJECT_ROOT / "database" / "response_cache.sqlite"

    # ------------------------------------------------------------------
    # Auth (JWT). Set AUTH_ENABLED=false to disable for development.
    # Tokens are issued by the marketplace; this service only verifies them.
    # ------------------------------------------------------------------
    auth_enabled: bool = True
    jwt_secret: str = "dev-secret-change-in-production!!"

    # ------------------------------------------------------------------
    # Logging / observability
    # OBSERVABILITY is one of "off", "logfire", "otel".
    # ------------------------------------------------------------------
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Path | None = None
    observability: str = "off"
    otel_service_name: str = "marketplace-assistant"
    otel_exporter_otlp_endpoint: str = "http://localhost:4318"
    otel_console_exporter: bool = False

    # ------------------------------------------------------------------
    # Computed defaults (embedding falls back to chat values)
    # ------------------------------------------------------------------
    @model_validator(mode="after")
    def _apply_fallbacks(self) -> "Settings":
        if not self.azure_openai_embedding_endpoint:
            self.azure_openai_embedding_endpoint = self.azure_openai_endpoint
        if not self.azure_openai_embedding_api_version:
            self.azure_openai_embedding_api_version = self.azure_openai_api_version
        if not self.azure_openai_embedding_api_key:
            self.azure_openai_embedding_api_key = self.azure_openai_api_key
        if not self.azure_openai_tool_deployment:
            self.azure_openai_tool_deployment = self.azure_openai_chat_deployment
        return self

    @property
    def offline_embeddings(self) -> bool:
        """True when the embedding deployment is blank (local hashing vectors are used)."""
        return not self.azure_openai_embedding_deployment

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------
    def validate_runtime(self) -> None:
        """Check that all required values are present and sane.

        Call this at application startup (not at import time) so that
        tests can override settings before validation runs.
        """
        if not self.azure_openai_api_key:
            raise ValueError("AZURE_OPENAI_API_KEY not set. Add it to .env")
        if not self.azure_openai_endpoint:
            raise ValueError("AZURE_OPENAI_ENDPOINT not set. Add it to .env")
        if not 0.0 <= self.similarity_floor < 1.0:
            raise ValueError("SIMILARITY_FLOOR must be within [0, 1).")
        if self.retrieval_limit < 1:
            raise ValueError("RETRIEVAL_LIMIT must be at least 1.")
        if self.cache_ttl_seconds <= 0:
            raise ValueError("CACHE_TTL_SECONDS must be positive.")
        unknown = set(self.enabled_tools) - set(DEFAULT_TOOLS)
        if unknown:
            raise ValueError(f"Unknown tools in ENABLED_TOOLS: {sorted(unknown)}")


@lru_cache
def get_settings() -> Settings:
    """Return the cached Settings singleton."""
    return Settings()
