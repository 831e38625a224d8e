"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Project Automation Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./automation.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30

    # Redis Settings (Celery broker + domain event bus)
    REDIS_URL: str = "redis://localhost:6379/0"
    EVENT_BUS_CHANNEL: str = "domain_events"
    EVENT_BUS_ENABLED: bool = False

    # Execution Settings
    EXECUTION_MODE: str = "celery"  # celery or inline
    WORKER_ID: str = "worker-local"
    WORKFLOW_MAX_STEPS: int = 500
    DEFAULT_MAX_RETRIES: int = 3
    RETRY_BASE_DELAY: float = 30.0
    RETRY_MAX_DELAY: float = 3600.0
    RETRY_JITTER: bool = False
    ACTION_TIMEOUT_SECONDS: float = 30.0
    APPROVAL_DEFAULT_TIMEOUT_SECONDS: int = 86400  # 24 hours
    SCHEDULER_POLL_INTERVAL: int = 15
    SCHEDULER_ENABLED: bool = False
    # A running execution not checkpointed for this long has lost its worker.
    # Keep it above the Celery hard time limit.
    EXECUTION_LEASE_SECONDS: int = 900

    # Condition limits
    CONDITION_MAX_DEPTH: int = 10
    CONDITION_MAX_NODES: int = 200

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:8080"
    ALLOW_CREDENTIALS: bool = True
    ALLOW_METHODS: list = ["*"]
    ALLOW_HEADERS: list = ["*"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def uses_celery(self) -> bool:
        """Whether queue items are handed to Celery workers."""
        return self.EXECUTION_MODE == "celery"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
