"""Configuration management for the Studio Pipeline service."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # Anthropic configuration (required)
    ANTHROPIC_API_KEY: str = Field(..., description="Anthropic API key")

    # Environment
    PIPELINE_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")

    # Generation
    PIPELINE_MODEL: str = Field(
        default="claude-sonnet-4-20250514", description="Model used for every LLM stage"
    )
    GENERATION_MAX_RETRIES: int = Field(
        default=3, ge=1, description="Total attempts per generation request"
    )
    GENERATION_RETRY_BASE_DELAY: float = Field(
        default=1.0, ge=0, description="Initial backoff delay in seconds, doubled per attempt"
    )

    # Persistence
    PROJECTS_TABLE: str = Field(default="projects", description="Pipeline projects table")
    STORAGE_BUCKET: str = Field(default="project-files", description="Stage artifact bucket")

    # Operator access to the pipeline API
    ADMIN_API_KEY: str | None = Field(default=None, description="Key expected in X-API-Key")

    # Document branding
    STUDIO_NAME: str = Field(default="Electric Studio", description="Name on the PDF guide")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
