"""
Application configuration with environment-based settings.
All configuration is explicit, validated, and logged at startup.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings have sensible defaults for development but require
    explicit configuration in production environments.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
    )

    # Application
    app_name: str = Field(default="Patient Intake Triage", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # CORS
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins"
    )

    # Text generation (OpenAI-compatible endpoint)
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openai_base_url: str | None = Field(
        default=None,
        description="Override base URL for any OpenAI-compatible provider"
    )
    llm_model: str = Field(default="gpt-4o-mini", description="LLM model to use")
    llm_timeout_seconds: float = Field(
        default=8.0, gt=0, description="Timeout per generation call"
    )

    # Per call-site generation budgets
    extraction_temperature: float = Field(default=0.1, description="Fact extraction temperature")
    extraction_max_tokens: int = Field(default=1000, description="Fact extraction token budget")
    handoff_temperature: float = Field(default=0.2, description="Handoff generation temperature")
    handoff_max_tokens: int = Field(default=2000, description="Handoff generation token budget")
    dialogue_temperature: float = Field(default=0.7, description="Question phrasing temperature")
    dialogue_max_tokens: int = Field(default=300, description="Question phrasing token budget")
    followup_max_tokens: int = Field(default=150, description="Follow-up question token budget")

    # Versions stamped on submissions
    rules_version: str = Field(default="0.1.0", description="Rules engine version")
    model_version: str = Field(default="chat-v1", description="Chat model pipeline version")

    # Storage
    storage_backend: Literal["memory", "arango"] = Field(
        default="memory",
        description="Session/submission store"
    )
    arango_host: str = Field(default="http://localhost:8529", description="ArangoDB host URL")
    arango_username: str = Field(default="root", description="ArangoDB username")
    arango_password: str = Field(default="", description="ArangoDB password")
    arango_database: str = Field(default="triage", description="ArangoDB database name")

    # Retrieval
    retrieval_top_k: int = Field(default=5, ge=1, description="Chunks returned for handoff context")
    followup_context_chunks: int = Field(
        default=3, ge=1, description="Chunks used to phrase follow-up questions"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format"
    )
    log_extraction_divergence: bool = Field(
        default=False,
        description="Emit a warning log line for every extraction divergence"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    def get_safe_config_dict(self) -> dict:
        """Return configuration dict with secrets redacted for logging."""
        config = self.model_dump()
        if config.get("openai_api_key"):
            config["openai_api_key"] = "***REDACTED***"
        if config.get("arango_password"):
            config["arango_password"] = "***REDACTED***"
        return config


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Settings are loaded once and cached for the application lifetime.
    Use dependency injection in FastAPI routes for testability.
    """
    return Settings()
