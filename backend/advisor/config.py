"""Application configuration from environment variables."""
from typing import Dict

from pydantic import Field
from pydantic_settings import BaseSettings

from advisor.services.retry import RetryConfig


class Settings(BaseSettings):
    """All config comes from env vars or .env.backend file."""

    DATABASE_URL: str = "sqlite+aiosqlite:///./advisor.db"
    PERSIST_JOBS: bool = True
    API_PORT: int = 8721
    CORS_ORIGINS: str = "http://localhost:3000"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Ollama backend
    OLLAMA_API_URL: str = "http://localhost:11434"
    DEFAULT_MODELS: str = "deepseek-r1:1.5b"
    CHAT_MODELS: str = ""  # models served through /api/chat
    MODEL_SYSTEM_PROMPTS: Dict[str, str] = {}

    # Job queue
    MAX_CONCURRENT_JOBS: int = Field(default=2, ge=1)
    DEFAULT_JOB_ESTIMATE_MS: float = Field(default=300_000, gt=0)
    JOB_RETENTION_HOURS: float = Field(default=24, gt=0)
    CLEANUP_INTERVAL_SECONDS: float = Field(default=3600, gt=0)
    RESTORE_INCOMPLETE_JOBS: bool = False
    # POST /api/jobs/query with waitForCompletion
    JOB_WAIT_POLL_SECONDS: float = Field(default=1.0, gt=0)
    JOB_WAIT_TIMEOUT_SECONDS: float = Field(default=600, gt=0)

    # Retry / circuit breaker
    RETRY_MAX_ATTEMPTS: int = Field(default=4, ge=1, le=10)
    RETRY_INITIAL_DELAY_MS: int = Field(default=3000, ge=0)
    RETRY_MAX_DELAY_MS: int = Field(default=10000, ge=0)
    RETRY_MULTIPLIER: float = Field(default=2.0, ge=1.0)
    RETRY_TIMEOUT_MS: int = Field(default=30000, gt=0)
    BREAKER_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    BREAKER_RESET_TIMEOUT_MS: int = Field(default=60000, ge=0)

    @property
    def model_list(self) -> list[str]:
        return [m.strip() for m in self.DEFAULT_MODELS.split(",") if m.strip()]

    @property
    def chat_model_list(self) -> list[str]:
        return [m.strip() for m in self.CHAT_MODELS.split(",") if m.strip()]

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.RETRY_MAX_ATTEMPTS,
            initial_delay=self.RETRY_INITIAL_DELAY_MS / 1000,
            max_delay=self.RETRY_MAX_DELAY_MS / 1000,
            multiplier=self.RETRY_MULTIPLIER,
            per_attempt_timeout=self.RETRY_TIMEOUT_MS / 1000,
        )

    class Config:
        env_file = ".env.backend"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
