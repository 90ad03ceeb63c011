from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    DATABASE_URL: str
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["*"]

    FILES_DIR: str = "./files"
    FILES_MAX_MB: int = 25

    MESSAGE_EDIT_WINDOW_MINUTES: int = 15
    MESSAGE_MAX_LENGTH: int = 2000
    DEFAULT_MEMBER_LIMIT: int = 500
    MESSAGES_PAGE_SIZE: int = 50
    MESSAGES_MAX_PAGE_SIZE: int = 100

    # Seconds a disconnected user stays "online" waiting for a reconnect
    PRESENCE_GRACE_SECONDS: float = 30.0

    # Per-sender cap on new messages, REST and socket sends combined
    MESSAGE_RATE_LIMIT: int = 30
    MESSAGE_RATE_WINDOW_SECONDS: int = 60

    class Config:
        env_file = ".env"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


@lru_cache()
def get_settings():
    return Settings()
