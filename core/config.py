"""Configuration management using pydantic-settings."""
from typing import Literal
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Configuration priority (highest to lowest):
    1. Runtime environment variables
    2. .env file
    3. Defaults in this class

    Categories:
    - Secrets: Optional from environment, never hardcoded
    - Model: Inference and transcription parameters
    - Storage: Where incident records and workflow step logs live
    - Pipeline: Retry and delayed verification behaviour
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================
    # SECRETS
    # ============================================
    google_api_key: SecretStr | None = Field(
        default=None,
        description="[REQUIRED for live inference] Google API key for Gemini."
    )

    # ============================================
    # MODEL CONFIGURATION
    # ============================================
    llm_model: str = Field(
        default="gemini-2.5-flash-lite",
        description="Google Gemini model identifier used for chat and analysis"
    )
    transcription_model: str = Field(
        default="gemini-2.5-flash-lite",
        description="Google Gemini model identifier used for speech-to-text"
    )
    llm_request_timeout: float = Field(
        default=60.0,
        description="Per-request timeout in seconds for model calls"
    )
    chat_temperature: float = Field(
        default=0.5,
        description="Temperature for conversation turns"
    )
    chat_max_tokens: int = Field(
        default=2048,
        description="Maximum output tokens for conversation turns"
    )

    # ============================================
    # STORAGE
    # ============================================
    storage_backend: Literal["file", "memory"] = Field(
        default="file",
        description="Incident record and workflow log backend: 'file' (JSON documents) or 'memory'"
    )
    incidents_path: str = Field(
        default="data/incidents",
        description="Directory holding one JSON document per incident"
    )
    workflows_path: str = Field(
        default="data/workflows",
        description="Directory holding one JSON step log per analysis run"
    )

    # ============================================
    # PIPELINE
    # ============================================
    pipeline_step_attempts: int = Field(
        default=3,
        description="Attempts per analysis step before the run halts",
        ge=1
    )
    pipeline_retry_min_wait: float = Field(
        default=2.0,
        description="Minimum backoff between step attempts (seconds)"
    )
    pipeline_retry_max_wait: float = Field(
        default=30.0,
        description="Maximum backoff between step attempts (seconds)"
    )
    verification_delay_seconds: float = Field(
        default=300.0,
        description="Delay before the critical-severity mitigation check is posted"
    )
    verification_skip_if_resolved: bool = Field(
        default=True,
        description="Skip the mitigation check when the incident is already resolved or monitoring"
    )

    # ============================================
    # REPORTS
    # ============================================
    report_history_limit: int = Field(
        default=10,
        description="Number of conversation messages fed into the executive summary prompt"
    )
    report_excerpt_chars: int = Field(
        default=200,
        description="Characters kept per message in the executive summary prompt"
    )

    # Application Configuration
    app_name: str = Field(
        default="Incident Response Assistant",
        description="Application name"
    )
    app_version: str = Field(
        default="0.1.0",
        description="Application version"
    )
    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level"
    )
    cors_origins: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins"
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def get_google_api_key(self) -> str | None:
        """Extract the Gemini API key, or None when unset or blank."""
        if self.google_api_key is None:
            return None
        value = self.google_api_key.get_secret_value().strip()
        return value or None


# Global settings instance
settings = Settings()
