from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Node settings loaded from environment variables.
    Each chat node runs its own process with its own port, database and peer.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Storage
    DATABASE_URL: str = "sqlite:///./messages.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Listening address
    HOST: str = "0.0.0.0"
    PORT: int = 5001

    # Paired node, e.g. http://localhost:5000 (unset disables forwarding)
    PEER_URL: Optional[str] = None
    PEER_TIMEOUT_SECONDS: float = 5.0

    # Limits
    MAX_MESSAGE_LENGTH: int = 500
    SUBSCRIBER_QUEUE_SIZE: int = 100

    # Comma separated list of allowed origins
    CORS_ORIGINS: str = "*"

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
