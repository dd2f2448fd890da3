"""Application settings loaded from environment variables.

Environment Configuration:
    MARGINALIA_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: SQLAlchemy connection string (SQLite file by default)
    MARGINALIA_INTERNAL_SECRET: Internal API secret (required in staging/prod)

LLM Provider Configuration:
    ANTHROPIC_API_KEY / OPENAI_API_KEY: Platform keys for suggestion runs
    ENABLE_ANTHROPIC / ENABLE_OPENAI: Provider feature flags

Suggestion Run Configuration:
    SUGGESTION_PROVIDER, SUGGESTION_MODEL: Which model proposes suggestions
    SUGGESTION_MAX_BODY_CHARS: Longest suggestion body kept (longer bodies are truncated)
    SUGGESTION_MIN_SELECTED_TEXT_CHARS: Shortest span the model may anchor to
    SUGGESTION_MAX_ATTEMPTS: Anchoring attempts per suggestion, first try included
    SUGGESTION_MAX_PER_RUN: Hard cap on suggestions processed per run

Anchor Tracking Configuration:
    STALE_SIMILARITY_THRESHOLD: Similarity below which an anchor is stale
    ANCHOR_PERSIST_DEBOUNCE_MS: Coalescing window for live-edit anchor writes
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application configuration.

    Settings are loaded from environment variables.
    Validation rules:
    - MARGINALIA_INTERNAL_SECRET is required in staging and prod only
    - Suggestion limits must be positive
    - STALE_SIMILARITY_THRESHOLD must lie in [0, 1]
    """

    marginalia_env: Environment = Field(default=Environment.LOCAL, alias="MARGINALIA_ENV")
    database_url: str = Field(default="sqlite+pysqlite:///./marginalia.db", alias="DATABASE_URL")
    marginalia_internal_secret: str | None = Field(
        default=None, alias="MARGINALIA_INTERNAL_SECRET"
    )

    # Platform API keys for LLM providers (optional)
    anthropic_api_key: str | None = Field(default=None, alias="ANTHROPIC_API_KEY")
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    enable_anthropic: bool = Field(default=True, alias="ENABLE_ANTHROPIC")
    enable_openai: bool = Field(default=True, alias="ENABLE_OPENAI")

    # Suggestion run model
    suggestion_provider: str = Field(default="anthropic", alias="SUGGESTION_PROVIDER")
    suggestion_model: str = Field(default="claude-haiku-4-5-20251001", alias="SUGGESTION_MODEL")
    suggestion_max_tokens: int = Field(default=4096, alias="SUGGESTION_MAX_TOKENS")
    suggestion_temperature: float = Field(default=0.7, alias="SUGGESTION_TEMPERATURE")
    suggestion_timeout_s: int = Field(default=45, alias="SUGGESTION_TIMEOUT_S")

    # Suggestion limits
    suggestion_max_body_chars: int = Field(default=200, alias="SUGGESTION_MAX_BODY_CHARS")
    suggestion_min_selected_text_chars: int = Field(
        default=5, alias="SUGGESTION_MIN_SELECTED_TEXT_CHARS"
    )
    suggestion_max_attempts: int = Field(default=3, alias="SUGGESTION_MAX_ATTEMPTS")
    suggestion_max_per_run: int = Field(default=20, alias="SUGGESTION_MAX_PER_RUN")
    # Only auxiliary metadata is shortened; notes text is always sent whole
    suggestion_metadata_value_max_chars: int = Field(
        default=500, alias="SUGGESTION_METADATA_VALUE_MAX_CHARS"
    )

    # Anchor tracking
    stale_similarity_threshold: float = Field(default=0.5, alias="STALE_SIMILARITY_THRESHOLD")
    anchor_persist_debounce_ms: int = Field(default=2000, alias="ANCHOR_PERSIST_DEBOUNCE_MS")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure limits are sane and required secrets are set."""
        if not 0.0 <= self.stale_similarity_threshold <= 1.0:
            raise ValueError("STALE_SIMILARITY_THRESHOLD must be between 0 and 1")

        too_small = [
            name
            for name, value in (
                ("SUGGESTION_MAX_BODY_CHARS", self.suggestion_max_body_chars),
                ("SUGGESTION_MIN_SELECTED_TEXT_CHARS", self.suggestion_min_selected_text_chars),
                ("SUGGESTION_MAX_ATTEMPTS", self.suggestion_max_attempts),
                ("SUGGESTION_MAX_PER_RUN", self.suggestion_max_per_run),
            )
            if value < 1
        ]
        if too_small:
            raise ValueError(f"Settings must be at least 1: {', '.join(too_small)}")

        # Truncation appends "..." so the body limit must leave room for it
        if self.suggestion_max_body_chars < 4:
            raise ValueError("SUGGESTION_MAX_BODY_CHARS must be at least 4")

        if self.anchor_persist_debounce_ms < 0:
            raise ValueError("ANCHOR_PERSIST_DEBOUNCE_MS must not be negative")

        # MARGINALIA_INTERNAL_SECRET is required only in staging/prod
        if self.marginalia_env in (Environment.STAGING, Environment.PROD):
            if not self.marginalia_internal_secret:
                raise ValueError(
                    "MARGINALIA_INTERNAL_SECRET is required for "
                    f"MARGINALIA_ENV={self.marginalia_env.value}"
                )

        return self

    @property
    def requires_internal_header(self) -> bool:
        """Whether requests must include the internal secret header."""
        return self.marginalia_env in (Environment.STAGING, Environment.PROD)

    @property
    def anchor_persist_debounce_s(self) -> float:
        """Debounce window in seconds."""
        return self.anchor_persist_debounce_ms / 1000

    def api_key_for(self, provider: str) -> str | None:
        """Return the platform API key configured for a provider."""
        return {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
        }.get(provider)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
