"""Configuration management for the customs portal submission engine."""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Decision service (error recovery advisor)
    groq_api_key: Optional[str] = Field(None, description="Groq API key for the recovery advisor")
    openai_api_key: Optional[str] = Field(None, description="OpenAI API key for the recovery advisor")
    advisor_enabled: bool = Field(True, description="Globally allow AI-assisted recovery")
    advisor_model: str = Field("llama-3.1-70b-versatile", description="Recovery advisor model")
    advisor_fallback_model: str = Field("gpt-4o-mini", description="Advisor model when only OpenAI is configured")
    advisor_timeout_seconds: float = Field(20.0, description="Timeout for one advisor call")
    advisor_max_wait_ms: int = Field(30000, description="Upper bound for an advised wait")

    # Browser Configuration
    browser_headless: bool = Field(True, description="Run browser in headless mode")
    browser_action_timeout_ms: int = Field(10000, description="Timeout for clicks, fills and lookups")
    browser_navigation_timeout_ms: int = Field(30000, description="Timeout for page loads")
    browser_viewport_width: int = Field(1920, description="Browser viewport width")
    browser_viewport_height: int = Field(1080, description="Browser viewport height")
    selector_probe_timeout_ms: int = Field(1500, description="Time to wait for one selector candidate")

    # Workflow Configuration
    max_retries: int = Field(3, description="Retry budget per workflow step (and per field)")
    retry_backoff_ms: int = Field(1000, description="Base backoff for deterministic retries")
    max_submission_retries: int = Field(3, description="How many times a failed submission may be retried")

    # Storage
    screenshot_dir: str = Field("./data/screenshots", description="Directory for workflow screenshots")
    submissions_dir: str = Field("./data/submissions", description="Directory for submission records")
    targets_dir: str = Field("./data/targets", description="Directory of target configuration JSON files")

    # Application Configuration
    debug: bool = Field(False, description="Enable debug mode")
    log_level: str = Field("INFO", description="Logging level")

    # Server Configuration
    host: str = Field("0.0.0.0", description="Server host")
    port: int = Field(8000, description="Server port")
    reload: bool = Field(False, description="Enable auto-reload")
    allowed_origins: list[str] = Field(["*"], description="CORS allowed origins")


# Global settings instance
settings = Settings()
