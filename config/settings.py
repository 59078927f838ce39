from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List, Optional


class Settings(BaseSettings):
    """Execution engine settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Flow Execution Engine"
    DEBUG: bool = Field(default=False)
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")

    # Node execution
    NODE_TIMEOUT_MS: int = Field(default=300000)
    EXECUTION_TIMEOUT_MS: int = Field(default=300000)
    MAX_EXECUTION_RETRIES: int = Field(default=3)
    PAUSE_POLL_INTERVAL_MS: int = Field(default=1000)

    # Circuit breaker
    CIRCUIT_BREAKER_THRESHOLD: int = Field(default=5)
    CIRCUIT_BREAKER_COOLDOWN_MS: int = Field(default=60000)
    CIRCUIT_BREAKER_BACKEND: str = Field(default="memory")  # memory, redis
    CIRCUIT_BREAKER_KEY_PREFIX: str = Field(default="flowengine:circuit:")

    # Retry defaults
    RETRY_MAX_ATTEMPTS: int = Field(default=3)
    RETRY_BACKOFF_STRATEGY: str = Field(default="exponential")
    RETRY_BASE_DELAY_MS: int = Field(default=1000)
    RETRY_MAX_DELAY_MS: int = Field(default=30000)
    RETRY_JITTER: bool = Field(default=True)

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # Execution context
    CONTEXT_ENV_ALLOWLIST: List[str] = Field(
        default=[
            "NODE_ENV",
            "DB_HOST",
            "DB_PORT",
            "REDIS_HOST",
            "REDIS_PORT",
            "APP_VERSION",
            "BUILD_ID",
        ]
    )
    VAULT_ENV_PREFIX: str = Field(default="VAULT_")
    AWS_SECRET_ENV_PREFIX: str = Field(default="AWS_SECRET_")

    # Optional default owner for executions started without a user
    DEFAULT_USER_ID: Optional[str] = Field(default=None)

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


# Global settings instance
settings = Settings()
