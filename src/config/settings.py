"""
Application Settings - Pydantic Settings for configuration management.

Supports environment variables and .env file loading.
"""

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import BeforeValidator, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


def normalize_to_lowercase(v: str) -> str:
    """Normalize string to lowercase."""
    if isinstance(v, str):
        return v.lower()
    return v


class Neo4jSettings(BaseSettings):
    """Neo4j database connection settings."""

    model_config = SettingsConfigDict(env_prefix="NEO4J_")

    uri: str = Field(default="bolt://localhost:7687", description="Neo4j connection URI")
    username: str = Field(default="neo4j", description="Neo4j username")
    password: SecretStr = Field(default=SecretStr("password"), description="Neo4j password")
    database: str = Field(default="neo4j", description="Neo4j database name")
    max_connection_pool_size: int = Field(default=50, description="Connection pool size")


class LLMSettings(BaseSettings):
    """LLM provider settings with multi-provider failover support."""

    model_config = SettingsConfigDict(env_prefix="LLM_")

    # Primary provider (case-insensitive via BeforeValidator)
    provider: Annotated[
        Literal["openai", "anthropic", "local"],
        BeforeValidator(normalize_to_lowercase),
    ] = Field(default="openai", description="Primary LLM provider")

    # API Keys
    openai_api_key: SecretStr | None = Field(default=None, description="OpenAI API key")
    anthropic_api_key: SecretStr | None = Field(default=None, description="Anthropic API key")

    # Local LLM settings (Ollama)
    local_llm_base_url: str = Field(default="http://localhost:11434", description="Local LLM base URL")
    local_llm_model: str = Field(default="llama3.2", description="Local LLM model name")

    openai_model: str = Field(default="gpt-4o-mini", description="OpenAI model name")
    anthropic_model: str = Field(
        default="claude-3-5-sonnet-20241022", description="Anthropic model name"
    )

    temperature: float = Field(default=0.0, description="LLM temperature")
    max_tokens: int = Field(default=4096, description="Max tokens for response")
    timeout_seconds: float = Field(default=60.0, description="Default request timeout")

    # Failover settings
    enable_failover: bool = Field(default=True, description="Enable automatic provider failover")


class ExtractionSettings(BaseSettings):
    """Knowledge extraction pipeline settings."""

    model_config = SettingsConfigDict(env_prefix="EXTRACTION_")

    llm_enabled: bool = Field(default=False, description="Enable LLM-assisted extraction")

    # Entity linking
    fuzzy_threshold: float = Field(
        default=0.8, ge=0.0, le=1.0, description="Minimum similarity for a fuzzy match"
    )
    min_token_length: int = Field(default=3, ge=1, description="Shortest token the linker will match")

    # Confidence defaults
    default_confidence: float = Field(
        default=0.8, ge=0.0, le=1.0, description="Confidence used when a candidate has none"
    )
    auto_entity_confidence: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Confidence for entities auto-created while resolving fact subjects/objects",
    )

    # LLM gating
    llm_min_content_length: int = Field(
        default=50, description="Title+description length the card must exceed to use the LLM"
    )
    llm_max_pattern_yield: int = Field(
        default=3, description="Pattern yield below which the LLM is consulted"
    )
    llm_timeout_seconds: float = Field(default=30.0, description="Timeout for the extraction LLM call")
    prompt_entity_limit: int = Field(default=30, description="Existing entities listed in the prompt")
    prompt_domain_limit: int = Field(default=50, description="Existing domains listed in the prompt")

    # Default domain
    default_domain_name: str = Field(default="General", description="Name of the auto-created domain")
    default_domain_color: str = Field(default="#6B7280", description="Color of the auto-created domain")


class ObservabilitySettings(BaseSettings):
    """Observability and monitoring settings."""

    model_config = SettingsConfigDict(env_prefix="OBSERVABILITY_")

    # Logging
    log_format: Literal["json", "console"] = Field(
        default="json", description="Log format (json for production, console for development)"
    )


class Settings(BaseSettings):
    """Main application settings aggregating all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application metadata
    app_name: str = Field(default="Card Knowledge Extraction", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )

    # Sub-settings
    neo4j: Neo4jSettings = Field(default_factory=Neo4jSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    extraction: ExtractionSettings = Field(default_factory=ExtractionSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
