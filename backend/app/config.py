"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Service
    APP_NAME: str = "Flow Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, production

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./flowengine.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Lock backend
    REDIS_URL: str = "redis://localhost:6379/0"
    LOCK_BACKEND: str = "redis"  # redis or memory (single process only)
    EXECUTION_LOCK_TTL_SECONDS: int = 30
    TIMER_LOCK_TTL_SECONDS: int = 120
    TIMER_LOCK_RETRY_DELAY_SECONDS: float = 2.0
    TIMER_REARM_DELAY_SECONDS: float = 5.0

    # Execution limits
    STALE_EXECUTION_MINUTES: int = 30
    MAX_NODE_ITERATIONS: int = 100
    MAX_INTERACTIONS: int = 100
    EXECUTION_TTL_HOURS: int = 24
    WAIT_REPLY_DEFAULT_TIMEOUT_SECONDS: int = 300

    # Outbound sends
    SEND_MAX_ATTEMPTS: int = 3
    SEND_RETRY_BASE_DELAY: float = 2.0

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
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    def validate_backends(self) -> None:
        """Refuse configurations that break mutual exclusion in production.

        Raises:
            RuntimeError: If production runs with the process-local lock backend
        """
        if self.LOCK_BACKEND not in ("redis", "memory"):
            raise RuntimeError(f"Unsupported LOCK_BACKEND: {self.LOCK_BACKEND}")
        if self.is_production and self.LOCK_BACKEND == "memory":
            raise RuntimeError(
                "CRITICAL: LOCK_BACKEND=memory only guards a single process. "
                "Use the redis backend in production."
            )

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
