"""Application settings from environment variables."""

from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Load environment variables
load_dotenv()


class Settings(BaseSettings):
    """Application settings from environment."""

    # API Keys
    anthropic_api_key: str = ""
    image_api_key: str = ""

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""

    # Deployment
    environment: str = "development"
    service_secret: str = ""
    operator_token: Optional[str] = None
    app_base_url: str = "http://localhost:3000"

    # Configuration
    log_level: str = "INFO"
    max_retry_attempts: int = 3
    base_delay_seconds: float = 1.0

    # Generation providers
    language_model: str = "anthropic:claude-sonnet-4-20250514"
    image_api_url: str = "https://api.openai.com/v1/images/generations"
    image_model: str = "gpt-image-1"

    # Queue / worker
    run_worker: bool = True
    worker_concurrency: int = 1
    worker_poll_interval_seconds: float = 1.0
    lease_duration_seconds: int = 300
    stalled_interval_seconds: int = 60
    max_deliveries: int = 5

    # Recovery
    stale_timeout_minutes: int = 5
    max_auto_resume_attempts: int = 20
    max_jobs_per_run: int = 10
    sweep_interval_seconds: int = 300
    cleanup_timeout_minutes: int = 60

    model_config = {"env_file": ".env", "env_prefix": "CHRONICLE_", "extra": "ignore"}

    @property
    def is_production(self) -> bool:
        """Whether operator-only endpoints must be locked down."""
        return self.environment.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
