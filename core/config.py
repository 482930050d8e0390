"""
Application configuration using Pydantic Settings
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # State store (delta sync hashes, execution records)
    DATABASE_URL: str = "sqlite+aiosqlite:///./reef_import.db"

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Import defaults (profiles may override)
    COMMAND_TIMEOUT: int = 120
    DELETE_CHUNK_SIZE: int = 500
    MAX_RECORDED_ERRORS: int = 1000

    # Source retry backoff
    RETRY_BASE_DELAY: float = 1.0

    # Remote sources
    HTTP_TIMEOUT: float = 300.0
    SFTP_CONNECT_TIMEOUT: float = 30.0
    SFTP_KNOWN_HOSTS: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
