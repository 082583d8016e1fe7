from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Canteen Notifications"
    APP_PORT: int = 8080
    DEBUG: bool = False
    DEFAULT_TIMEZONE: str = "Asia/Kolkata"

    # Database
    DATABASE_URL_OVERRIDE: Optional[str] = None
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "canteen"
    POSTGRES_PORT: int = 5432

    # Database resilience
    DB_QUERY_TIMEOUT_SECONDS: float = 30.0
    DB_MAX_RETRIES: int = 5
    DB_RETRY_BASE_DELAY_SECONDS: float = 2.0
    DB_RETRY_MAX_DELAY_SECONDS: float = 8.0
    DB_READY_MAX_WAIT_SECONDS: float = 40.0
    DB_RECONNECT_BASE_DELAY_SECONDS: float = 5.0
    DB_RECONNECT_MAX_ATTEMPTS: int = 5

    # Storage
    STORAGE_ROOT: str = "/var/www/html/uploads"
    STORAGE_BASE_URL: str = "http://localhost:8080"
    LOCAL_UPLOADS_ROOT: str = "uploads"
    FRONTEND_BASE_URL: str = "http://localhost:3000"

    # POS stream
    POS_HEARTBEAT_SECONDS: float = 30.0
    POS_WRITE_TIMEOUT_SECONDS: float = 2.0
    POS_QUEUE_SIZE: int = 100

    # Logging
    LOGS_PATH: str = "logs"
    LOG_LEVEL: str = "INFO"

    @property
    def DATABASE_URL(self) -> str:
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE
        return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
